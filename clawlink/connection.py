"""WebSocket connection to the OpenClaw gateway.

This is the core of the client. It:
1. Opens a persistent WebSocket to the gateway
2. Answers the connect.challenge with a signed `connect` request
3. Correlates RPC requests with their responses
4. Watches the gateway's tick events to detect a dead connection
5. Reconnects with exponential backoff when the socket drops

Protocol overview:
    client opens ws://host:port (or wss://)
    gateway -> {"event": "connect.challenge", "payload": {"nonce": ...}}
    client  -> {"type": "req", "method": "connect", ...}
    gateway -> {"id": ..., "ok": true, "payload": {...}}  (or PAIRING_REQUIRED)
    gateway -> periodic {"event": "tick"} keep-alives
"""

import asyncio
import contextlib
import logging
import platform
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets

from .config import get_version
from .frames import EventFrame, RequestFrame, ResponseFrame, decode_frame, encode_frame
from .identity import DeviceAuthToken, DeviceIdentity, build_device_auth_payload, sign_payload
from .rpc import (
    DEFAULT_RPC_TIMEOUT,
    ConnectionClosedError,
    GatewayError,
    NotConnectedError,
    PendingRequests,
    is_pairing_required,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 3
CLIENT_ID = "webchat-ui"
CLIENT_MODE = "webchat"
CLIENT_DISPLAY_NAME = "clawlink"
ROLE = "operator"
SCOPES = ["operator.read", "operator.write"]

HANDSHAKE_TIMEOUT = 5.0
CONNECT_RPC_TIMEOUT = 15.0
SEND_TIMEOUT = 5.0
DEFAULT_TICK_INTERVAL = 30.0
MIN_TICK_CHECK_INTERVAL = 1.0
TICK_TIMEOUT_FACTOR = 2.5
BACKOFF_INITIAL = 1.0
BACKOFF_MAX = 30.0

CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011
CLOSE_CONNECT_FAILED = 3008
CLOSE_TICK_TIMEOUT = 4000


class ConnectionState(str, Enum):
    """Lifecycle state of the gateway connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    PAIRING_REQUIRED = "pairing_required"


class Backoff:
    """Exponential reconnect delay: doubles per failure, capped, reset on success."""

    def __init__(self, initial: float = BACKOFF_INITIAL, maximum: float = BACKOFF_MAX):
        self.initial = initial
        self.maximum = maximum
        self._delay = initial

    @property
    def current(self) -> float:
        return self._delay

    def next_delay(self) -> float:
        """Return the delay to use now and double the next one."""
        delay = self._delay
        self._delay = min(self._delay * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self._delay = self.initial


Connector = Callable[[str], Awaitable[Any]]


async def open_websocket(url: str) -> Any:
    """Default connector: open a client WebSocket."""
    return await websockets.connect(url, ping_interval=30, ping_timeout=10)


def resolve_ws_url(raw: str) -> str:
    """Normalize a configured gateway URL into a WebSocket URL."""
    url = raw.strip().rstrip("/")
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith(("ws://", "wss://")):
        return url
    return f"ws://{url}"


@dataclass
class ConnectionOptions:
    """Accessors and callbacks wiring the connection to its host.

    Accessors are called every time a value is needed, so the connection
    always sees the latest settings.
    """
    get_url: Callable[[], str]
    get_token: Callable[[], str]
    get_device_identity: Callable[[], Optional[DeviceIdentity]] = lambda: None
    get_device_auth_token: Callable[[], Optional[DeviceAuthToken]] = lambda: None
    on_state_change: Optional[Callable[[ConnectionState], None]] = None
    on_chat_event: Optional[Callable[[dict], None]] = None
    on_device_token: Optional[Callable[[DeviceAuthToken], None]] = None
    on_pairing_required: Optional[Callable[[], None]] = None
    on_connect_error: Optional[Callable[[Exception], None]] = None
    connector: Connector = open_websocket
    clock: Callable[[], float] = time.monotonic


class GatewayConnection:
    """
    Manages the WebSocket connection to the gateway.

    Implements the device pairing handshake: signs the connect challenge
    with the device key, stops retrying when the gateway reports that
    pairing is required, and hands newly issued device tokens to the host.
    All methods must be called from the event loop thread.
    """

    def __init__(self, options: ConnectionOptions, backoff: Optional[Backoff] = None):
        self._opts = options
        self._pending = PendingRequests()
        self._backoff = backoff or Backoff()
        self._state = ConnectionState.DISCONNECTED

        self._ws: Any = None
        self._run_task: Optional[asyncio.Task] = None
        self._handshake_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._connect_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task] = set()

        self._connect_nonce: Optional[str] = None
        self._connect_sent = False
        self._awaiting_pairing = False
        self._closed = False
        self._last_tick: Optional[float] = None

        self.tick_interval = DEFAULT_TICK_INTERVAL
        self.last_reconnect_delay: Optional[float] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Connect unless a connection is already open or in progress."""
        self._closed = False
        if self._run_task is not None or self._reconnect_timer is not None:
            return
        self._connect()

    def stop(self) -> None:
        """Close the connection and stay disconnected until start()/restart()."""
        self._closed = True
        self._teardown(ConnectionClosedError("client stopped"), CLOSE_NORMAL, "client stopped")
        self._set_state(ConnectionState.DISCONNECTED)

    def restart(self) -> None:
        """Drop the current connection and reconnect immediately."""
        self._closed = False
        self._teardown(ConnectionClosedError("client restarting"), CLOSE_NORMAL, "client restarting")
        self._connect()

    async def wait_closed(self) -> None:
        """Wait for sockets closed by stop()/restart() to finish closing."""
        tasks = [t for t in self._background if not t.done()]
        if self._run_task is not None and self._closed:
            tasks.append(self._run_task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # RPC
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Any = None, timeout: float = DEFAULT_RPC_TIMEOUT) -> Any:
        """Send an RPC request and wait for its response payload.

        Raises:
            NotConnectedError: no open transport
            GatewayRequestError: the gateway answered ok=false
            RpcTimeoutError: no answer within `timeout` seconds
            ConnectionClosedError: the connection closed or restarted first
        """
        if self._ws is None:
            raise NotConnectedError("WebSocket not connected")

        request_id, future = self._pending.create(method, timeout)
        frame = RequestFrame(id=request_id, method=method, params=params)
        if not await self._send(encode_frame(frame)):
            self._pending.reject(request_id, ConnectionClosedError(f"Failed to send {method}"))
        return await future

    async def _send(self, text: str, timeout: float = SEND_TIMEOUT) -> bool:
        """Send raw text with a timeout.

        A send that blocks past `timeout` means the socket is wedged; the
        transport is closed so the reconnect logic takes over.
        """
        ws = self._ws
        if ws is None:
            logger.warning("Cannot send - not connected")
            return False

        try:
            await asyncio.wait_for(ws.send(text), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("WebSocket send timed out after %ss - connection may be blocked", timeout)
            self._close_transport(CLOSE_INTERNAL_ERROR, "send timeout")
            return False
        except Exception as e:
            logger.error("Send error: %s", e)
            return False
        return True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _connect(self) -> None:
        self._connect_nonce = None
        self._connect_sent = False
        self._awaiting_pairing = False

        url = resolve_ws_url(self._opts.get_url())
        self._set_state(ConnectionState.CONNECTING)
        self._run_task = asyncio.create_task(self._run(url), name="clawlink-connection")

    async def _run(self, url: str) -> None:
        """Open one transport and pump its frames until it closes."""
        task = asyncio.current_task()
        logger.info("Connecting to %s", url)
        try:
            ws = await self._opts.connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Connection to %s failed: %s (%s)", url, e, type(e).__name__)
            self._on_transport_closed(task)
            return

        if self._run_task is not task:
            await ws.close()
            return

        self._ws = ws
        self._set_state(ConnectionState.AUTHENTICATING)
        self._arm_connect_timeout(ws)

        try:
            async for raw in ws:
                try:
                    self._handle_message(ws, raw)
                except Exception:
                    logger.exception("Error processing gateway frame")
        except websockets.ConnectionClosed as e:
            logger.info("Connection closed: %s", e)
        except Exception as e:
            logger.error("Connection error: %s (%s)", e, type(e).__name__)
        finally:
            self._on_transport_closed(task)

    def _on_transport_closed(self, task: Optional[asyncio.Task]) -> None:
        if task is not self._run_task:
            return  # superseded by restart()/stop()

        self._run_task = None
        self._ws = None
        self._cancel_handshake()
        self._clear_timers()
        self._pending.flush(ConnectionClosedError("WebSocket closed"))

        if self._closed:
            self._set_state(ConnectionState.DISCONNECTED)
        elif self._awaiting_pairing:
            logger.info("Waiting for device approval; not reconnecting")
        else:
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()

    def _teardown(self, error: Exception, code: int, reason: str) -> None:
        """Detach the current transport, cancel timers and fail in-flight RPCs."""
        self._clear_timers()
        self._cancel_handshake()

        task, ws = self._run_task, self._ws
        self._run_task = None
        self._ws = None
        if ws is not None:
            self._spawn(self._close_quietly(ws, code, reason))
        elif task is not None and not task.done():
            task.cancel()
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        self._pending.flush(error)

    def _close_transport(self, code: int, reason: str) -> None:
        """Close the live socket; the read loop then reports the close."""
        ws = self._ws
        if ws is not None:
            logger.debug("Closing transport (%s %s)", code, reason)
            self._spawn(self._close_quietly(ws, code, reason))

    async def _close_quietly(self, ws: Any, code: int, reason: str) -> None:
        try:
            await ws.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Error closing WebSocket: %s", e)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def _handle_message(self, ws: Any, raw: Any) -> None:
        if ws is not self._ws:
            logger.debug("Dropping frame from superseded transport")
            return
        frame = decode_frame(raw)
        if isinstance(frame, EventFrame):
            self._handle_event(ws, frame)
        elif isinstance(frame, ResponseFrame):
            self._pending.resolve(frame)

    def _handle_event(self, ws: Any, frame: EventFrame) -> None:
        payload = frame.payload if isinstance(frame.payload, dict) else {}

        if frame.event == "connect.challenge":
            nonce = payload.get("nonce")
            if not isinstance(nonce, str) or not nonce.strip():
                logger.error("Connect challenge without nonce")
                self._close_transport(CLOSE_CONNECT_FAILED, "missing nonce in connect challenge")
                return
            self._connect_nonce = nonce.strip()
            if self._connect_sent:
                logger.debug("Ignoring repeated connect challenge")
                return
            self._connect_sent = True
            self._handshake_task = self._spawn(self._send_connect(ws, self._connect_nonce))

        elif frame.event == "tick":
            self._last_tick = self._opts.clock()

        elif frame.event == "chat":
            if frame.payload and isinstance(frame.payload, dict) and self._opts.on_chat_event:
                self._opts.on_chat_event(frame.payload)

        else:
            logger.debug("Unhandled gateway event: %s", frame.event)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def build_connect_params(self, nonce: str) -> dict:
        """Build `connect` params, signing the nonce when an identity exists."""
        token = self._opts.get_token()
        identity = self._opts.get_device_identity()
        stored = self._opts.get_device_auth_token()

        # Prefer the operator token; fall back to a previously issued device token
        resolved_token = token or (stored.token if stored else "") or None

        device = None
        if identity:
            signed_at_ms = int(time.time() * 1000)
            payload = build_device_auth_payload(
                device_id=identity.device_id,
                client_id=CLIENT_ID,
                client_mode=CLIENT_MODE,
                role=ROLE,
                scopes=SCOPES,
                signed_at_ms=signed_at_ms,
                token=resolved_token,
                nonce=nonce,
            )
            try:
                signature = sign_payload(identity.private_key, payload)
            except Exception:
                logger.exception("Failed to sign device auth, continuing with token only")
            else:
                device = {
                    "id": identity.device_id,
                    "publicKey": identity.public_key,
                    "signature": signature,
                    "signedAt": signed_at_ms,
                    "nonce": nonce,
                }

        params: dict[str, Any] = {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": CLIENT_ID,
                "displayName": CLIENT_DISPLAY_NAME,
                "version": get_version(),
                "platform": platform.system().lower(),
                "mode": CLIENT_MODE,
            },
            "caps": [],
            "role": ROLE,
            "scopes": list(SCOPES),
        }
        if resolved_token:
            auth = {"token": resolved_token}
            if stored:
                auth["deviceToken"] = stored.token
            params["auth"] = auth
        if device:
            params["device"] = device
        return params

    async def _send_connect(self, ws: Any, nonce: str) -> None:
        """Send the connect RPC on `ws` and apply the gateway's hello."""
        if self._ws is not ws:
            return
        params = self.build_connect_params(nonce)

        try:
            hello = await self.request("connect", params, timeout=CONNECT_RPC_TIMEOUT)
        except GatewayError as e:
            if self._ws is not ws:
                return
            if is_pairing_required(e):
                logger.warning("Gateway requires device pairing: %s", e)
                self._awaiting_pairing = True
                self._set_state(ConnectionState.PAIRING_REQUIRED)
                if self._opts.on_pairing_required:
                    self._opts.on_pairing_required()
                self._close_transport(CLOSE_NORMAL, "pairing required")
                return

            logger.error("Gateway connect failed: %s", e)
            if self._opts.on_connect_error:
                self._opts.on_connect_error(e)
            self._close_transport(CLOSE_CONNECT_FAILED, "connect failed")
            return

        if self._ws is not ws:
            return

        self._backoff.reset()
        hello = hello if isinstance(hello, dict) else {}

        auth_info = hello.get("auth")
        if isinstance(auth_info, dict) and auth_info.get("deviceToken") and self._opts.get_device_identity():
            scopes = auth_info.get("scopes")
            token = DeviceAuthToken(
                token=str(auth_info["deviceToken"]),
                role=auth_info.get("role") or ROLE,
                scopes=list(scopes) if isinstance(scopes, list) else list(SCOPES),
                updated_at_ms=int(time.time() * 1000),
            )
            logger.info("Received device token from gateway")
            if self._opts.on_device_token:
                self._opts.on_device_token(token)

        policy = hello.get("policy")
        if isinstance(policy, dict):
            tick_ms = policy.get("tickIntervalMs")
            if isinstance(tick_ms, (int, float)) and not isinstance(tick_ms, bool) and tick_ms > 0:
                self.tick_interval = tick_ms / 1000

        self._cancel_connect_timer()
        self._last_tick = self._opts.clock()
        self._start_tick_watch()
        self._set_state(ConnectionState.CONNECTED)

    def _arm_connect_timeout(self, ws: Any) -> None:
        self._cancel_connect_timer()
        loop = asyncio.get_running_loop()
        self._connect_timer = loop.call_later(HANDSHAKE_TIMEOUT, self._on_connect_timeout, ws)

    def _on_connect_timeout(self, ws: Any) -> None:
        self._connect_timer = None
        if ws is not self._ws or self._state != ConnectionState.AUTHENTICATING:
            return
        if not self._connect_sent:
            logger.warning("No connect challenge within %.0fs", HANDSHAKE_TIMEOUT)
            self._close_transport(CLOSE_CONNECT_FAILED, "connect challenge timeout")
        elif self._handshake_task is None or self._handshake_task.done():
            # connect attempt ended without reaching CONNECTED
            logger.warning("Handshake did not complete within %.0fs", HANDSHAKE_TIMEOUT)
            self._close_transport(CLOSE_CONNECT_FAILED, "connect handshake timeout")

    def _cancel_handshake(self) -> None:
        task = self._handshake_task
        self._handshake_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Keep-alive and reconnect
    # ------------------------------------------------------------------

    def _start_tick_watch(self) -> None:
        self._stop_tick_watch()
        self._tick_task = asyncio.create_task(self._tick_watch_loop(), name="clawlink-tick-watch")

    def _stop_tick_watch(self) -> None:
        task = self._tick_task
        self._tick_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _tick_watch_loop(self) -> None:
        period = max(self.tick_interval, MIN_TICK_CHECK_INTERVAL)
        while True:
            await asyncio.sleep(period)
            if self.check_tick():
                return

    def check_tick(self) -> bool:
        """Close the transport if the gateway has gone quiet.

        Returns:
            True if the connection was closed for a missed tick
        """
        if self._closed or self._last_tick is None or self._ws is None:
            return False
        silence = self._opts.clock() - self._last_tick
        if silence > self.tick_interval * TICK_TIMEOUT_FACTOR:
            logger.warning("No tick for %.1fs (interval %.1fs), closing", silence, self.tick_interval)
            self._close_transport(CLOSE_TICK_TIMEOUT, "tick timeout")
            return True
        return False

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        self._clear_timers()
        delay = self._backoff.next_delay()
        self.last_reconnect_delay = delay
        logger.info("Reconnecting in %.0fs...", delay)
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if not self._closed:
            self._connect()

    def _cancel_connect_timer(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _clear_timers(self) -> None:
        self._cancel_connect_timer()
        self._stop_tick_watch()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _set_state(self, state: ConnectionState) -> None:
        if self._state == state:
            return
        logger.debug("Connection state: %s -> %s", self._state.value, state.value)
        self._state = state
        if self._opts.on_state_change:
            self._opts.on_state_change(state)
