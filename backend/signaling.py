import asyncio
import itertools
import logging
import secrets
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from pydantic import ValidationError

from errors import RoutingFailure
from schemas import (
    ANSWER_CALL,
    CALL_ACCEPTED,
    CALL_ENDED,
    CALL_USER,
    ME,
    USER_UNAVAILABLE,
    AnswerCallRequest,
    CallUserRequest,
    Envelope,
    IncomingCall,
    PeerNotice,
)


class Connection:
    """One participant's socket plus the queue of events waiting to be written to it.

    Events are written by a single writer task in the order they were
    delivered, so routing never waits on a slow recipient.
    """

    def __init__(self, websocket: WebSocket, outbox_size: int = 64):
        self.websocket = websocket
        self.identity: Optional[str] = None
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None

    def start(self):
        self._writer = asyncio.create_task(self._write_loop())

    def deliver(self, event: str, data: Any = None) -> bool:
        if self.closed:
            logging.debug(f"Dropped {event} for closed connection {self.identity}")
            return False
        try:
            self._outbox.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            logging.warning(f"Outbox full for {self.identity}, dropped {event}")
            return False
        return True

    async def drain(self):
        """Wait until every queued event has been written or discarded."""
        await self._outbox.join()

    async def close(self):
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._discard_pending()

    async def _write_loop(self):
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logging.error(f"Failed to send {message['event']} to {self.identity}: {e}")
                self.closed = True
                self._outbox.task_done()
                self._discard_pending()
                return
            self._outbox.task_done()

    def _discard_pending(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()


class ConnectionRegistry:
    """Identity -> connection table shared by all routes."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._counter = itertools.count(1)
        self._lock = asyncio.Lock()

    def _new_identity(self) -> str:
        # The counter makes identities unique for this registry's lifetime
        return f"{next(self._counter):x}-{secrets.token_urlsafe(8)}"

    async def add(self, connection: Connection) -> str:
        async with self._lock:
            identity = self._new_identity()
            connection.identity = identity
            self._connections[identity] = connection
        return identity

    async def remove(self, identity: str) -> Optional[Connection]:
        async with self._lock:
            return self._connections.pop(identity, None)

    def get(self, identity: str) -> Optional[Connection]:
        return self._connections.get(identity)

    def others(self, identity: str) -> List[Connection]:
        return [c for i, c in self._connections.items() if i != identity]

    def __contains__(self, identity: str) -> bool:
        return identity in self._connections

    def __len__(self) -> int:
        return len(self._connections)


class CallRelay:
    """Routes call signaling between connected identities.

    Payloads are forwarded untouched. The relay keeps no call state beyond
    which identities have signaled each other, used when callEnded is scoped
    to peers.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        notify_unavailable: bool = True,
        end_call_scope: str = "broadcast",
        outbox_size: int = 64,
    ):
        if end_call_scope not in ("broadcast", "peer"):
            raise ValueError(f"Unknown end_call_scope: {end_call_scope}")
        self.registry = registry
        self.notify_unavailable = notify_unavailable
        self.end_call_scope = end_call_scope
        self.outbox_size = outbox_size
        self._sessions: Dict[str, Set[str]] = {}

    @property
    def connection_count(self) -> int:
        return len(self.registry)

    def is_connected(self, identity: str) -> bool:
        return identity in self.registry

    async def connect(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket, self.outbox_size)
        identity = await self.registry.add(connection)
        connection.start()
        connection.deliver(ME, identity)
        logging.info(f"Identity {identity} connected ({len(self.registry)} online)")
        return connection

    async def dispatch(self, connection: Connection, raw: str):
        """Handle one frame received from ``connection``."""
        origin = connection.identity
        try:
            envelope = Envelope.model_validate_json(raw)
            if envelope.event == CALL_USER:
                request = CallUserRequest.model_validate(envelope.data)
                if request.from_user and request.from_user != origin:
                    logging.warning(f"{origin} sent callUser claiming to be {request.from_user}")
                self.route_call(origin, request.user_to_call, request.signal_data, request.name)
            elif envelope.event == ANSWER_CALL:
                answer = AnswerCallRequest.model_validate(envelope.data)
                self.route_answer(origin, answer.to, answer.signal)
            else:
                logging.warning(f"Ignoring unknown event {envelope.event!r} from {origin}")
        except ValidationError as e:
            logging.error(f"Malformed message from {origin}: {e.errors(include_url=False)}")

    def route_call(self, origin: str, target: str, payload: Any, display_name: str) -> bool:
        logging.info(f"From User: {origin}")
        logging.info(f"From Name: {display_name}")
        logging.info(f"User to Call: {target}")
        try:
            recipient = self._recipient(origin, target, CALL_USER)
        except RoutingFailure as e:
            self._unavailable(e)
            return False
        event = IncomingCall(signal=payload, from_user=origin, name=display_name)
        if not recipient.deliver(CALL_USER, event.model_dump(by_alias=True)):
            return False
        self._pair(origin, target)
        return True

    def route_answer(self, origin: str, target: str, payload: Any) -> bool:
        try:
            recipient = self._recipient(origin, target, ANSWER_CALL)
        except RoutingFailure as e:
            self._unavailable(e)
            return False
        if not recipient.deliver(CALL_ACCEPTED, payload):
            return False
        logging.info(f"Relayed answer from {origin} to {target}")
        self._pair(origin, target)
        return True

    async def disconnect(self, identity: Optional[str]):
        if identity is None:
            return
        connection = await self.registry.remove(identity)
        if connection is None:
            return
        await connection.close()

        peers = self._sessions.pop(identity, set())
        for peer in peers:
            linked = self._sessions.get(peer)
            if linked is not None:
                linked.discard(identity)
                if not linked:
                    del self._sessions[peer]

        if self.end_call_scope == "peer":
            recipients = [c for c in (self.registry.get(p) for p in peers) if c is not None]
        else:
            recipients = self.registry.others(identity)
        notice = PeerNotice(identity=identity).model_dump()
        for recipient in recipients:
            recipient.deliver(CALL_ENDED, notice)
        logging.info(f"Identity {identity} disconnected, notified {len(recipients)} participant(s)")

    def _recipient(self, origin: str, target: str, event: str) -> Connection:
        recipient = self.registry.get(target)
        if recipient is None:
            raise RoutingFailure(
                f"Could not relay {event} from {origin} to {target}: User not connected.",
                {"origin": origin, "target": target},
            )
        return recipient

    def _unavailable(self, failure: RoutingFailure):
        logging.warning(failure.message)
        if not self.notify_unavailable:
            return
        sender = self.registry.get(failure.details["origin"])
        if sender is not None:
            sender.deliver(USER_UNAVAILABLE, PeerNotice(identity=failure.details["target"]).model_dump())

    def _pair(self, a: str, b: str):
        if a == b:
            return
        self._sessions.setdefault(a, set()).add(b)
        self._sessions.setdefault(b, set()).add(a)
