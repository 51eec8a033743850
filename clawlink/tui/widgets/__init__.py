"""TUI widgets."""

from .chat import ChatPanel
from .connection_status import ConnectionStatus

__all__ = ["ChatPanel", "ConnectionStatus"]
