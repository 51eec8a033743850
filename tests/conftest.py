"""Shared fakes for the gateway tests.

FakeGateway is injected as the connection's connector. Each connection
attempt gets a FakeWebSocket whose inbound frames are queued by the test
(or by the gateway's scripted replies) and whose outbound frames are
recorded.
"""

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from clawlink.connection import ConnectionOptions, ConnectionState, GatewayConnection
from clawlink.identity import generate_device_identity

_CLOSED = object()


class FakeWebSocket:
    """In-memory WebSocket: push() feeds the client, sent records its frames."""

    def __init__(self, block_time: float = 0):
        self.block_time = block_time
        self.sent: list[dict] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.on_send: Optional[Callable[[dict], None]] = None
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str):
        if self.block_time > 0:
            await asyncio.sleep(self.block_time)
        if self.close_code is not None:
            raise RuntimeError("socket is closed")
        frame = json.loads(message)
        self.sent.append(frame)
        if self.on_send:
            self.on_send(frame)

    def push(self, frame: Any) -> None:
        """Deliver a frame (dict, or raw text) to the client."""
        self._inbox.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    async def close(self, code: int = 1000, reason: str = ""):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self._inbox.put_nowait(_CLOSED)

    def drop(self) -> None:
        """Server side goes away without a close handshake."""
        if self.close_code is None:
            self.close_code = 1006
            self._inbox.put_nowait(_CLOSED)

    def requests(self, method: str) -> list[dict]:
        return [f for f in self.sent if f.get("method") == method]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeGateway:
    """Connector that hands out FakeWebSockets and answers RPCs."""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.failures = 0
        self.send_challenge = True
        self.nonce = "nonce-abc"
        self.hello: dict = {"policy": {"tickIntervalMs": 30000}}
        self.connect_error: Optional[dict] = None
        self.handlers: dict[str, Callable[[Any], Any]] = {}
        self.errors: dict[str, dict] = {}

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")

        ws = FakeWebSocket()
        ws.on_send = lambda frame, ws=ws: self._answer(ws, frame)
        self.sockets.append(ws)
        if self.send_challenge:
            ws.push({"event": "connect.challenge", "payload": {"nonce": self.nonce}})
        return ws

    @property
    def ws(self) -> FakeWebSocket:
        return self.sockets[-1]

    def _answer(self, ws: FakeWebSocket, frame: dict) -> None:
        method = frame.get("method")
        if method == "connect":
            if self.connect_error:
                ws.push({"id": frame["id"], "ok": False, "error": self.connect_error})
            else:
                ws.push({"id": frame["id"], "ok": True, "payload": self.hello})
            return
        if method in self.errors:
            ws.push({"id": frame["id"], "ok": False, "error": self.errors[method]})
            return
        handler = self.handlers.get(method)
        if handler is not None:
            ws.push({"id": frame["id"], "ok": True, "payload": handler(frame.get("params"))})


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def make_connection(gateway: FakeGateway, **overrides) -> tuple[GatewayConnection, list[ConnectionState]]:
    """Connection wired to a fake gateway, recording its state changes."""
    states: list[ConnectionState] = []
    options = ConnectionOptions(
        get_url=lambda: "http://gateway.test:18789",
        get_token=lambda: "operator-token",
        on_state_change=states.append,
        connector=gateway,
    )
    for key, value in overrides.items():
        setattr(options, key, value)
    return GatewayConnection(options), states


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return generate_device_identity()
