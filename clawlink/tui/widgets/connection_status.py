"""Status line showing the gateway connection state."""

from rich.style import Style
from rich.text import Text
from textual.widgets import Static

from ...connection import ConnectionState
from ..styles import CYAN, FG, FG_DIM, GREEN, RED, YELLOW

STATE_LABELS = {
    ConnectionState.DISCONNECTED: ("Disconnected", RED),
    ConnectionState.CONNECTING: ("Connecting...", CYAN),
    ConnectionState.AUTHENTICATING: ("Authenticating...", CYAN),
    ConnectionState.CONNECTED: ("Connected", GREEN),
    ConnectionState.RECONNECTING: ("Reconnecting...", YELLOW),
    ConnectionState.PAIRING_REQUIRED: ("Pairing required (ctrl+p to retry)", YELLOW),
}


class ConnectionStatus(Static):
    """Gateway URL, streaming mode and connection state on one line."""

    def __init__(self, gateway_url: str, mode: str) -> None:
        super().__init__()
        self._gateway_url = gateway_url
        self._mode = mode
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    def render(self) -> Text:
        label, color = STATE_LABELS.get(self._state, (self._state.value, FG))
        if self._mode != "websocket":
            label, color = f"HTTP ({self._mode})", CYAN

        text = Text()
        text.append("Gateway: ", style=Style(color=FG_DIM))
        text.append(self._gateway_url, style=Style(color=FG))
        text.append("  ")
        text.append("●", style=Style(color=color))
        text.append(f" {label}", style=Style(color=color))
        return text

    def set_state(self, state: ConnectionState) -> None:
        """Update the displayed state."""
        self._state = state
        self.refresh()
