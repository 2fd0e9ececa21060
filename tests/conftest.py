import asyncio
import json

import pytest

from signaling import CallRelay, ConnectionRegistry


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeServerSocket:
    """Stands in for a FastAPI WebSocket on the relay side."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(message)

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture
def make_relay():
    def factory(**kwargs):
        return CallRelay(ConnectionRegistry(), **kwargs)
    return factory


async def settle(*connections):
    for connection in connections:
        await connection.drain()


class FakeClientSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, identity="abc"):
        self.sent = []
        self.closed = False
        self.close_gate = None
        self.fail_send = False
        self._incoming = asyncio.Queue()
        if identity is not None:
            self.push("me", identity)

    def push(self, event, data=None):
        self._incoming.put_nowait(json.dumps({"event": event, "data": data}))

    def push_raw(self, raw):
        self._incoming.put_nowait(raw)

    async def send(self, raw):
        if self.fail_send:
            from websockets.exceptions import ConnectionClosedError
            raise ConnectionClosedError(None, None)
        self.sent.append(json.loads(raw))

    async def recv(self):
        item = await self._incoming.get()
        if item is None:
            from websockets.exceptions import ConnectionClosedError
            raise ConnectionClosedError(None, None)
        return item

    def drop(self):
        """Simulate the relay going away."""
        self._incoming.put_nowait(None)

    async def close(self):
        if self.close_gate is not None:
            await self.close_gate.wait()
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            if self.closed:
                raise StopAsyncIteration
            from websockets.exceptions import ConnectionClosedError
            raise ConnectionClosedError(None, None)
        return item


class FakeCapture:
    def __init__(self, error=None):
        self.error = error
        self.requested = []
        self.released = []
        self.gate = None

    async def request_capture(self, kind):
        self.requested.append(kind)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return f"stream-{len(self.requested)}"

    async def release(self, stream):
        self.released.append(stream)


class FakePeer:
    def __init__(self, stream, offer="offer-sdp", answer="answer-sdp"):
        self.stream = stream
        self.offer = offer
        self.answer = answer
        self.applied = []
        self.closed = 0
        self.gate = None
        self.close_gate = None

    async def create_offer(self):
        if self.gate is not None:
            await self.gate.wait()
        return self.offer

    async def create_answer(self):
        return self.answer

    async def apply_remote_payload(self, payload):
        self.applied.append(payload)

    async def close(self):
        self.closed += 1
        if self.close_gate is not None:
            await self.close_gate.wait()
