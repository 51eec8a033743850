"""Main clawlink TUI application using the Textual framework."""

import logging
from pathlib import Path
from typing import Callable, Optional

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Static

from ..client import GatewayClient
from ..config import ClawlinkSettings, StreamingMode, ensure_device_identity, get_config_path, get_version
from ..connection import ConnectionState
from ..identity import PairingStatus
from ..router import normalize_history
from ..rpc import GatewayError
from .styles import CLAWLINK_CSS, FG_DIM, PINK, YELLOW
from .widgets import ChatPanel, ConnectionStatus

logger = logging.getLogger(__name__)


class ClawlinkApp(App):
    """Chat with an OpenClaw agent."""

    CSS = CLAWLINK_CSS

    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("ctrl+c", "quit", "Quit", show=True, priority=True),
        Binding("ctrl+n", "new_session", "New session", show=True),
        Binding("ctrl+p", "pair", "Pair", show=True),
    ]

    def __init__(self, verbose: bool = False, config_path: Optional[Path] = None) -> None:
        super().__init__()
        self.verbose = verbose
        self.theme = "dracula"
        self.config_path = config_path or get_config_path()

        if verbose:
            self._setup_debug_logging()

        self.settings = ClawlinkSettings.load(self.config_path)
        if ensure_device_identity(self.settings):
            self.settings.save(self.config_path)

        self.client = GatewayClient(lambda: self.settings, on_settings_changed=self._save_settings)
        self._unsubscribers: list[Callable[[], None]] = []
        self._history_loaded = False

    def _setup_debug_logging(self) -> None:
        """Send debug logs to a file so they do not disturb the screen."""
        log_file = Path.cwd() / "clawlink-debug.log"
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        root_logger.addHandler(file_handler)
        root_logger.setLevel(logging.DEBUG)
        self._log_file = log_file

    def _save_settings(self) -> None:
        self.settings.save(self.config_path)

    def compose(self) -> ComposeResult:
        title = Text()
        title.append("clawlink", style=f"bold {PINK}")
        title.append(f" {get_version()}  agent ", style=FG_DIM)
        title.append(self.settings.agent_id, style="bold")
        yield Static(title, id="title")
        yield ConnectionStatus(self.settings.gateway_url, self.settings.streaming_mode.value)
        yield ChatPanel(self.client, self.settings.agent_id)

    def on_mount(self) -> None:
        self._unsubscribers.append(self.client.on_connection_state_change(self._on_state_change))
        self._unsubscribers.append(self.client.on_pairing_required(self._on_pairing_required))

        if self.settings.streaming_mode == StreamingMode.WEBSOCKET:
            self.client.connect_websocket()

    def _on_state_change(self, state: ConnectionState) -> None:
        self.query_one(ConnectionStatus).set_state(state)
        if state == ConnectionState.CONNECTED and not self._history_loaded:
            self._history_loaded = True
            self.run_worker(self._load_history())

    def _on_pairing_required(self) -> None:
        identity = self.settings.device_identity
        device = identity.device_id[:12] if identity else "this device"
        self.notify(
            f"Device {device}... is waiting for approval. Run `openclaw devices approve` "
            "on the gateway host, then press ctrl+p.",
            title="Pairing required",
            severity="warning",
            timeout=15,
        )

    async def _load_history(self) -> None:
        try:
            result = await self.client.chat_history()
        except GatewayError as e:
            logger.warning("Could not load history: %s", e)
            return
        self.query_one(ChatPanel).load_history(normalize_history(result))

    def action_new_session(self) -> None:
        key = self.client.new_session()
        self.query_one(ChatPanel).clear()
        self.notify(f"New session {key.split(':')[-1][:8]}", timeout=3)

    async def action_pair(self) -> None:
        self.notify("Connecting to gateway...", timeout=3)
        status = await self.client.pair()
        if status == PairingStatus.PAIRED:
            self.notify("Device paired", timeout=5)
        elif status != PairingStatus.PENDING:
            self.notify(
                f"Connection attempt finished ({self.client.ws_connection_state.value})",
                severity="warning",
            )
        self.query_one(ChatPanel).set_status(f"Pairing: {status.value}", YELLOW)

    async def action_quit(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        await self.client.aclose()
        self.exit()
