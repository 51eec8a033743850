"""Gateway client facade.

Supports three transport modes for chat:
  1. websocket (recommended): persistent connection using the gateway's
     native RPC protocol, with device pairing and cumulative streaming
  2. http-sse: Server-Sent Events from the OpenAI-compatible
     /v1/chat/completions endpoint, incremental streaming
  3. off: single request/response over HTTP
"""

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Callable, Optional

import httpx

from .config import ClawlinkSettings, StreamingMode, ensure_device_identity
from .connection import ConnectionOptions, ConnectionState, Connector, GatewayConnection
from .events import Subscribers
from .http_api import HttpGateway
from .identity import DeviceAuthToken, PairingStatus, generate_device_identity
from .router import ChatRouter, ChatRunListener, ChatSendOptions
from .rpc import GatewayError, NotConnectedError

logger = logging.getLogger(__name__)

CONNECT_WAIT_TIMEOUT = 5.0
PAIR_WAIT_TIMEOUT = 3.0
DEVICE_REMOVE_TIMEOUT = 10.0
DEFAULT_HISTORY_LIMIT = 50

ChunkCallback = Callable[[str], None]
DoneCallback = Callable[[], None]
ErrorCallback = Callable[[Exception], None]


def build_context_prefix(
    share_active_file: bool,
    active_file: Optional[str],
    share_selection: bool,
    selection: Optional[str],
) -> str:
    """Context block prepended to the newest user message."""
    prefix = ""
    if share_active_file and active_file:
        prefix += f"[Active file: {active_file}]\n"
    if share_selection and selection:
        prefix += f"[Selected text:\n{selection}\n]\n"
    if prefix:
        prefix += "\n"
    return prefix


def last_user_message(messages: list[dict]) -> Optional[str]:
    """Content of the newest user message in an OpenAI-style list."""
    for message in reversed(messages):
        if message.get("role") == "user":
            return message.get("content")
    return None


class GatewayClient:
    """
    Composes the connection, chat router and HTTP client into the
    operations the host application needs.

    Settings are read through `get_settings` every time, and written back
    through `on_settings_changed` whenever the client changes them
    (device token, pairing status, session key).
    """

    def __init__(
        self,
        get_settings: Callable[[], ClawlinkSettings],
        *,
        on_settings_changed: Optional[Callable[[], None]] = None,
        connector: Optional[Connector] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._get_settings = get_settings
        self.on_settings_changed = on_settings_changed
        self._connector = connector
        self._connection: Optional[GatewayConnection] = None
        self._tasks: set[asyncio.Task] = set()

        self.router = ChatRouter(self._request)
        self.http = HttpGateway(lambda: self.base_url, lambda: self.token, transport=http_transport)
        self.last_connect_error: Optional[Exception] = None

        self._state_listeners: Subscribers[Callable[[ConnectionState], None]] = Subscribers("connection state")
        self._pairing_listeners: Subscribers[Callable[[], None]] = Subscribers("pairing required")

    @property
    def settings(self) -> ClawlinkSettings:
        return self._get_settings()

    @property
    def base_url(self) -> str:
        return self.settings.gateway_url.rstrip("/")

    @property
    def token(self) -> str:
        return self.settings.gateway_token

    @property
    def agent_id(self) -> str:
        return self.settings.agent_id or "main"

    @property
    def streaming_mode(self) -> StreamingMode:
        return self.settings.streaming_mode or StreamingMode.WEBSOCKET

    @property
    def connection(self) -> Optional[GatewayConnection]:
        return self._connection

    # ── WebSocket lifecycle ───────────────────────────────────────

    def connect_websocket(self) -> None:
        """Connect, or restart an existing connection to pick up new settings."""
        if self._connection is not None:
            self._connection.restart()
            return

        options = ConnectionOptions(
            get_url=lambda: self.base_url,
            get_token=lambda: self.token,
            get_device_identity=lambda: self.settings.device_identity,
            get_device_auth_token=lambda: self.settings.device_auth_token,
            on_state_change=self._state_listeners.emit,
            on_chat_event=self.router.dispatch,
            on_device_token=self._handle_device_token,
            on_pairing_required=self._handle_pairing_required,
            on_connect_error=self._handle_connect_error,
        )
        if self._connector is not None:
            options.connector = self._connector

        self._connection = GatewayConnection(options)
        self._connection.start()

    def disconnect_websocket(self) -> None:
        if self._connection is not None:
            self._connection.stop()
            self._connection = None

    async def aclose(self) -> None:
        """Disconnect and release network resources."""
        connection = self._connection
        self.disconnect_websocket()
        for task in list(self._tasks):
            task.cancel()
        if connection is not None:
            await connection.wait_closed()
        await self.http.close()

    @property
    def ws_connection_state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.DISCONNECTED
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_connected

    def on_connection_state_change(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        """Subscribe to connection state changes. Returns an unsubscribe function."""
        return self._state_listeners.subscribe(listener)

    def on_pairing_required(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Subscribe to pairing-required notifications. Returns an unsubscribe function."""
        return self._pairing_listeners.subscribe(listener)

    def _persist(self) -> None:
        if self.on_settings_changed is None:
            return
        try:
            self.on_settings_changed()
        except Exception:
            logger.exception("Failed to save settings")

    def _handle_device_token(self, token: DeviceAuthToken) -> None:
        settings = self.settings
        settings.device_auth_token = token
        settings.device_pairing_status = PairingStatus.PAIRED
        self._persist()

    def _handle_pairing_required(self) -> None:
        self.settings.device_pairing_status = PairingStatus.PENDING
        self._persist()
        self._pairing_listeners.emit()

    def _handle_connect_error(self, error: Exception) -> None:
        logger.debug("Recording connect error: %s", error)
        self.last_connect_error = error

    async def _request(self, method: str, params=None, timeout: float = 30.0):
        if self._connection is None:
            raise NotConnectedError("WebSocket not connected")
        return await self._connection.request(method, params, timeout=timeout)

    async def _wait_for_state(self, states: set, timeout: float) -> Optional[ConnectionState]:
        """Wait until the connection enters one of `states`, or time out (None)."""
        if self.ws_connection_state in states:
            return self.ws_connection_state

        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_state(state: ConnectionState) -> None:
            if state in states and not future.done():
                future.set_result(state)

        unsubscribe = self.on_connection_state_change(on_state)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            unsubscribe()

    async def wait_for_connection(self, timeout: float = CONNECT_WAIT_TIMEOUT) -> bool:
        state = await self._wait_for_state(
            {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.PAIRING_REQUIRED},
            timeout,
        )
        return state == ConnectionState.CONNECTED

    # ── Pairing and sessions ──────────────────────────────────────

    async def pair(self, timeout: float = PAIR_WAIT_TIMEOUT) -> PairingStatus:
        """Make an explicit pairing attempt and report the resulting status.

        The connect handshake carries the device identity; the gateway
        either accepts it (paired) or queues it for approval (pending).
        """
        if ensure_device_identity(self.settings):
            self._persist()
        self.connect_websocket()
        await self._wait_for_state({ConnectionState.CONNECTED, ConnectionState.PAIRING_REQUIRED}, timeout)
        return self.settings.device_pairing_status

    def unpair(self) -> None:
        """Forget the device token and disconnect."""
        settings = self.settings
        settings.device_auth_token = None
        settings.device_pairing_status = PairingStatus.UNPAIRED
        self._persist()
        self.disconnect_websocket()

    def regenerate_identity(self) -> None:
        """Replace the device identity; the new one must be paired again."""
        settings = self.settings
        settings.device_identity = generate_device_identity()
        settings.device_auth_token = None
        settings.device_pairing_status = PairingStatus.UNPAIRED
        self._persist()
        self.disconnect_websocket()

    def _mint_session_key(self) -> str:
        return f"{self.agent_id}:{int(time.time() * 1000)}:{uuid.uuid4()}"

    def resolve_session_key(self) -> str:
        """Reuse the persisted session key, minting and saving one if needed."""
        settings = self.settings
        if settings.current_session_key:
            return settings.current_session_key
        settings.current_session_key = self._mint_session_key()
        self._persist()
        return settings.current_session_key

    def new_session(self) -> str:
        """Start a fresh conversation thread."""
        self.settings.current_session_key = self._mint_session_key()
        self._persist()
        logger.info("Started new session %s", self.settings.current_session_key)
        return self.settings.current_session_key

    # ── Gateway operations ────────────────────────────────────────

    async def health_check(self) -> bool:
        """Check gateway health. A live websocket counts as healthy."""
        if self.streaming_mode == StreamingMode.WEBSOCKET and self.is_connected:
            return True
        return await self.http.health()

    async def chat_history(self, session_key: Optional[str] = None, limit: int = DEFAULT_HISTORY_LIMIT):
        """Fetch raw chat history over the websocket; None when not connected."""
        if not self.is_connected:
            return None
        return await self.router.history(session_key or self.resolve_session_key(), limit)

    async def abort(self, session_key: Optional[str] = None, run_id: Optional[str] = None) -> None:
        await self.router.abort(session_key or self.resolve_session_key(), run_id)

    async def remove_device(self, device_id: str) -> bool:
        """Remove a paired device from the gateway. Best-effort."""
        if not self.is_connected:
            logger.error("Device removal requires a WebSocket connection")
            return False
        try:
            await self._request("devices.remove", {"deviceId": device_id}, timeout=DEVICE_REMOVE_TIMEOUT)
        except GatewayError as e:
            logger.error("Failed to remove device: %s", e)
            return False
        return True

    async def send_message(self, messages: list[dict], session_user: Optional[str] = None) -> str:
        """Send a chat message over HTTP and return the full reply."""
        return await self.http.chat_completion(self.agent_id, messages, user=session_user)

    async def send_message_streaming(
        self,
        messages: list[dict],
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
        cancel: Optional[asyncio.Event] = None,
        session_user: Optional[str] = None,
        options: Optional[ChatSendOptions] = None,
    ) -> None:
        """Send a chat message and stream the reply through callbacks.

        In websocket mode this returns once the run is registered and the
        callbacks fire as events arrive; chunks are the full reply so far.
        In http-sse mode it returns when the stream ends; chunks are
        increments. Errors never raise; they go to `on_error`.
        """
        mode = self.streaming_mode
        try:
            if mode == StreamingMode.WEBSOCKET:
                await self._stream_websocket(messages, on_chunk, on_done, on_error, cancel, options)
            elif mode == StreamingMode.HTTP_SSE:
                await self._stream_http(messages, on_chunk, on_done, cancel, session_user)
            else:
                reply = await self.send_message(messages, session_user)
                on_chunk(reply)
                on_done()
        except (GatewayError, httpx.HTTPError) as e:
            logger.error("Chat send failed: %s", e)
            on_error(e)

    async def _stream_websocket(self, messages, on_chunk, on_done, on_error, cancel, options) -> None:
        if not self.is_connected:
            self.connect_websocket()
            if not await self.wait_for_connection(CONNECT_WAIT_TIMEOUT):
                on_error(NotConnectedError("WebSocket not connected. Check gateway URL and token."))
                return

        text = last_user_message(messages)
        if text is None:
            on_error(GatewayError("No user message found in conversation"))
            return

        session_key = self.resolve_session_key()
        if cancel is not None and cancel.is_set():
            on_done()
            return

        run_id = await self.router.send(session_key, text, options)
        watcher: Optional[asyncio.Task] = None

        def stop_watching() -> None:
            if watcher is not None and watcher is not asyncio.current_task():
                watcher.cancel()

        def done() -> None:
            stop_watching()
            on_done()

        def failed(error: Exception) -> None:
            stop_watching()
            on_error(error)

        if cancel is not None:
            watcher = asyncio.create_task(self._watch_cancel(cancel, session_key, run_id, on_done))
            self._tasks.add(watcher)
            watcher.add_done_callback(self._tasks.discard)

        self.router.register(run_id, ChatRunListener(session_key, on_chunk, done, failed))

    async def _watch_cancel(self, cancel: asyncio.Event, session_key: str, run_id: str, on_done: DoneCallback) -> None:
        await cancel.wait()
        if self.router.unregister(run_id) is None:
            return
        on_done()
        try:
            await self.router.abort(session_key, run_id)
        except GatewayError as e:
            logger.debug("chat.abort for %s failed: %s", run_id, e)

    async def _stream_http(self, messages, on_chunk, on_done, cancel, session_user) -> None:
        stream = self.http.stream_chat_completion(self.agent_id, messages, user=session_user)
        async with contextlib.aclosing(stream):
            async for piece in stream:
                if cancel is not None and cancel.is_set():
                    break
                on_chunk(piece)
        on_done()
