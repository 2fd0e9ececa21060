"""Participant side of the call signaling protocol.

The client registers with the relay, dials or answers by identity and
forwards negotiation payloads produced by a peer-connection primitive.
Media capture and peer negotiation are supplied by the caller:

    client = SessionClient("ws://localhost:5000/ws", capture, make_peer,
                           on_incoming_call=ring)
    me = await client.register()
    await client.place_call(other_id, "Alice")
    ...
    await client.end_call()
"""
import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from pydantic import ValidationError

from errors import CallCancelledError, InvalidStateError, TransportLost
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
    IncomingCall as IncomingCallMessage,
    PeerNotice,
)

CAMERA = "camera"
MICROPHONE = "microphone"
SCREEN = "screen"


class MediaCapture(Protocol):
    async def request_capture(self, kind: str) -> Any:
        """Return a media stream; may raise PermissionDenied or DeviceNotFound."""

    async def release(self, stream: Any) -> None:
        ...


class PeerNegotiator(Protocol):
    async def create_offer(self) -> Any:
        ...

    async def create_answer(self) -> Any:
        ...

    async def apply_remote_payload(self, payload: Any) -> None:
        ...

    async def close(self) -> None:
        ...


class CallState(str, Enum):
    UNREGISTERED = "unregistered"
    IDLE = "idle"
    CALLING = "calling"
    IN_CALL = "in_call"
    CLOSED = "closed"


@dataclass
class IncomingCall:
    origin: str
    display_name: str
    payload: Any


class SessionClient:
    def __init__(
        self,
        url: str,
        capture: MediaCapture,
        peer_factory: Callable[[Any], PeerNegotiator],
        *,
        on_incoming_call: Optional[Callable] = None,
        on_call_ended: Optional[Callable] = None,
        on_call_accepted: Optional[Callable] = None,
        on_user_unavailable: Optional[Callable] = None,
        connect: Callable = websockets.connect,
    ):
        self.url = url
        self.identity: Optional[str] = None
        self.peer_identity: Optional[str] = None
        self.on_incoming_call = on_incoming_call
        self.on_call_ended = on_call_ended
        self.on_call_accepted = on_call_accepted
        self.on_user_unavailable = on_user_unavailable
        self._capture = capture
        self._peer_factory = peer_factory
        self._connect = connect
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._state = CallState.UNREGISTERED
        self._pending: Dict[str, IncomingCall] = {}
        self._stream: Any = None
        self._peer: Optional[PeerNegotiator] = None
        # Bumped on every teardown so in-flight setup can tell it was ended
        self._generation = 0

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def in_session(self) -> bool:
        return self._state in (CallState.CALLING, CallState.IN_CALL)

    @property
    def pending_calls(self) -> Dict[str, IncomingCall]:
        return dict(self._pending)

    # ------------- public API -------------

    async def register(self) -> str:
        """Connect to the relay and return the identity it assigned."""
        if self._state is not CallState.UNREGISTERED:
            raise InvalidStateError("register() may only be called once", {"state": self._state.value})
        try:
            self._ws = await self._connect(self.url)
            raw = await self._ws.recv()
        except (OSError, WebSocketException) as e:
            self._state = CallState.CLOSED
            raise TransportLost(f"Could not register with relay at {self.url}: {e}") from e

        try:
            envelope = Envelope.model_validate_json(raw)
        except ValidationError:
            envelope = None
        if envelope is None or envelope.event != ME or not isinstance(envelope.data, str):
            await self._close_socket()
            self._state = CallState.CLOSED
            raise TransportLost("Relay did not send an identity", {"received": raw})

        self.identity = envelope.data
        self._state = CallState.IDLE
        self._reader = asyncio.create_task(self._read_loop())
        logging.info(f"Registered with relay as {self.identity}")
        return self.identity

    async def place_call(self, target: str, display_name: str, kind: str = CAMERA):
        if self._state is not CallState.IDLE:
            raise InvalidStateError(f"Cannot place a call while {self._state.value}", {"target": target})
        self._state = CallState.CALLING
        self.peer_identity = target
        generation = self._generation

        offer = await self._negotiate(generation, kind)
        try:
            await self._send(CALL_USER, CallUserRequest(
                user_to_call=target, signal_data=offer, from_user=self.identity, name=display_name,
            ).model_dump(by_alias=True))
        except TransportLost:
            await self._abandon(generation)
            raise
        logging.info(f"Calling {target}")

    async def accept_call(self, payload: Any, origin: str, kind: str = CAMERA):
        call = self._pending.get(origin)
        if call is None:
            raise InvalidStateError(f"No pending call from {origin}", {"origin": origin})
        if call.payload != payload:
            raise InvalidStateError("Payload does not match the pending call", {"origin": origin})
        if self._state is not CallState.IDLE:
            raise InvalidStateError(f"Cannot accept a call while {self._state.value}", {"origin": origin})
        del self._pending[origin]
        self._state = CallState.IN_CALL
        self.peer_identity = origin
        generation = self._generation

        answer = await self._negotiate(generation, kind, remote_offer=payload)
        try:
            await self._send(ANSWER_CALL, AnswerCallRequest(to=origin, signal=answer).model_dump())
        except TransportLost:
            await self._abandon(generation)
            raise
        logging.info(f"Answered call from {origin}")

    def reject_call(self, origin: str):
        """Forget a pending call. Nothing is sent to the caller."""
        self._pending.pop(origin, None)

    async def end_call(self):
        """Hang up. Disconnecting from the relay tells the other side."""
        if not self.in_session:
            return
        await self.close()

    async def close(self):
        if self._state is CallState.CLOSED:
            return
        self._state = CallState.CLOSED
        await self._teardown()
        self._pending.clear()
        await self._close_socket()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        logging.info(f"Left relay as {self.identity}")

    # ------------- setup -------------

    async def _negotiate(self, generation: int, kind: str, remote_offer: Any = None) -> Any:
        try:
            stream = await self._capture.request_capture(kind)
            if generation != self._generation:
                # Ended before teardown could see the stream
                await self._capture.release(stream)
                raise CallCancelledError("Call ended during capture")
            self._stream = stream
            peer = self._peer = self._peer_factory(stream)
            if remote_offer is None:
                payload = await peer.create_offer()
            else:
                await peer.apply_remote_payload(remote_offer)
                payload = await peer.create_answer()
            if generation != self._generation:
                raise CallCancelledError("Call ended during negotiation")
            return payload
        except CallCancelledError:
            raise
        except Exception:
            await self._abandon(generation)
            raise

    async def _abandon(self, generation: int):
        if generation != self._generation:
            return
        await self._teardown()
        if self._state is not CallState.CLOSED:
            self._state = CallState.IDLE

    async def _teardown(self):
        self._generation += 1
        peer, self._peer = self._peer, None
        stream, self._stream = self._stream, None
        self.peer_identity = None
        try:
            if peer is not None:
                await peer.close()
        finally:
            if stream is not None:
                await self._capture.release(stream)

    # ------------- relay traffic -------------

    async def _send(self, event: str, data: Any):
        if self._ws is None or self._state is CallState.CLOSED:
            raise TransportLost(f"Not connected to relay, cannot send {event}")
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except ConnectionClosed as e:
            raise TransportLost(f"Relay connection lost while sending {event}") from e

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                await self._handle(raw)
        except ConnectionClosed as e:
            logging.warning(f"Relay connection lost: {e}")
        if self._state is not CallState.CLOSED:
            await self._transport_lost()

    async def _transport_lost(self):
        was_in_session = self.in_session
        self._state = CallState.CLOSED
        await self._teardown()
        self._pending.clear()
        logging.error(f"Relay connection for {self.identity} closed unexpectedly")
        if was_in_session:
            await self._fire(self.on_call_ended)

    async def _handle(self, raw):
        try:
            envelope = Envelope.model_validate_json(raw)
            if envelope.event == CALL_USER:
                await self._on_call_user(IncomingCallMessage.model_validate(envelope.data))
            elif envelope.event == CALL_ACCEPTED:
                await self._on_call_accepted(envelope.data)
            elif envelope.event == CALL_ENDED:
                await self._on_call_ended(PeerNotice.model_validate(envelope.data or {}))
            elif envelope.event == USER_UNAVAILABLE:
                await self._on_user_unavailable(PeerNotice.model_validate(envelope.data or {}))
            else:
                logging.debug(f"Ignoring relay event {envelope.event!r}")
        except ValidationError as e:
            logging.error(f"Malformed message from relay: {e.errors(include_url=False)}")
        except Exception:
            logging.exception("Error handling relay message")

    async def _on_call_user(self, message: IncomingCallMessage):
        call = IncomingCall(origin=message.from_user, display_name=message.name, payload=message.signal)
        self._pending[call.origin] = call
        logging.info(f"Incoming call from {call.origin} ({call.display_name})")
        await self._fire(self.on_incoming_call, call)

    async def _on_call_accepted(self, payload: Any):
        if self._state is not CallState.CALLING or self._peer is None:
            logging.debug(f"Dropped answer while {self._state.value}")
            return
        generation = self._generation
        try:
            await self._peer.apply_remote_payload(payload)
        except Exception as e:
            logging.error(f"Could not apply answer from {self.peer_identity}: {e}")
            if generation == self._generation:
                await self._end_session(self.on_call_ended)
            return
        if generation != self._generation:
            return
        self._state = CallState.IN_CALL
        logging.info(f"Call with {self.peer_identity} accepted")
        await self._fire(self.on_call_accepted, payload)

    async def _on_call_ended(self, notice: PeerNotice):
        if notice.identity is not None:
            self._pending.pop(notice.identity, None)
        if not self.in_session:
            return
        if notice.identity is not None and notice.identity != self.peer_identity:
            return
        logging.info(f"Call with {self.peer_identity} ended by peer")
        await self._end_session(self.on_call_ended)

    async def _on_user_unavailable(self, notice: PeerNotice):
        if self._state is not CallState.CALLING or notice.identity != self.peer_identity:
            return
        logging.warning(f"{notice.identity} is not connected to the relay")
        await self._end_session(self.on_user_unavailable, notice.identity)

    async def _end_session(self, callback: Optional[Callable], *args):
        """Tear down the current call and go back to idle unless the client was closed meanwhile."""
        generation = self._generation
        await self._teardown()
        if self._state is CallState.CLOSED or self._generation != generation + 1:
            return
        self._state = CallState.IDLE
        await self._fire(callback, *args)

    async def _fire(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def _close_socket(self):
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
