"""Chat panel - message list and input for one gateway session.

Replies stream in through GatewayClient.send_message_streaming. In
websocket mode each chunk is the whole reply so far; in http-sse mode
chunks are appended.
"""

import asyncio
from typing import TYPE_CHECKING, Optional

from rich.text import Text
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.widgets import Input, Static

from ...config import StreamingMode
from ...router import HistoryMessage
from ..styles import CYAN, FG, FG_DIM, GREEN, PINK, RED

if TYPE_CHECKING:
    from ...client import GatewayClient


class ChatPanel(Vertical):
    """Message list with streaming replies."""

    BINDINGS = [
        Binding("escape", "stop_reply", "Stop", show=True),
    ]

    DEFAULT_CSS = f"""
    ChatPanel .chat-container {{
        height: 1fr;
        padding: 0 1;
        background: transparent;
        overflow-x: hidden;
        overflow-y: auto;
    }}

    ChatPanel .chat-message {{
        padding: 0;
        margin: 0 0 1 0;
        width: 100%;
    }}

    ChatPanel Input {{
        width: 100%;
        border: none;
        background: transparent;
        padding: 0;
    }}

    ChatPanel .status-line {{
        height: 1;
        padding: 0 1;
    }}

    ChatPanel .chat-footer {{
        height: 1;
        padding: 0 1;
        color: {FG_DIM};
    }}
    """

    def __init__(self, client: "GatewayClient", agent_id: str) -> None:
        super().__init__()
        self._client = client
        self._agent_id = agent_id
        self._messages: list[dict] = []
        self._generating = False
        self._cancel: Optional[asyncio.Event] = None

    def compose(self) -> ComposeResult:
        yield VerticalScroll(id="chat-container", classes="chat-container")
        yield Static("", id="chat-status", classes="status-line")
        yield Input(placeholder=f"> Message {self._agent_id}...", id="chat-input")
        yield Static(self._render_footer(), classes="chat-footer")

    def _render_footer(self) -> Text:
        text = Text()
        for key, action in (("enter", "send"), ("esc", "stop"), ("ctrl+n", "new session"), ("ctrl+p", "pair")):
            text.append(key, style=f"bold {FG}")
            text.append(f" {action}   ", style=FG_DIM)
        return text

    def on_mount(self) -> None:
        self.query_one("#chat-input", Input).focus()

    def set_status(self, message: str, color: str = FG_DIM) -> None:
        self.query_one("#chat-status", Static).update(Text(message, style=color))

    def _render_message(self, role: str, content: str, error: bool = False) -> Text:
        text = Text()
        if role == "user":
            text.append("You: ", style=f"bold {CYAN}")
        else:
            text.append(f"{self._agent_id}: ", style=f"bold {PINK}")
        text.append(content, style=RED if error else FG)
        return text

    def _mount_message(self, role: str, content: str) -> Static:
        container = self.query_one("#chat-container", VerticalScroll)
        widget = Static(self._render_message(role, content), classes="chat-message")
        container.mount(widget)
        container.scroll_end(animate=False)
        return widget

    def clear(self) -> None:
        """Forget the conversation and clear the display."""
        self._messages = []
        self.query_one("#chat-container", VerticalScroll).remove_children()
        self.set_status("")

    def load_history(self, messages: list[HistoryMessage]) -> None:
        """Show previous turns of the session."""
        for message in messages:
            self._messages.append({"role": message.role, "content": message.content})
            self._mount_message(message.role, message.content)
        if messages:
            self.set_status(f"Loaded {len(messages)} messages", FG_DIM)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if self._generating:
            return
        message = event.input.value.strip()
        if not message:
            return

        event.input.clear()
        self._messages.append({"role": "user", "content": message})
        self._mount_message("user", message)
        self._generating = True
        self.set_status(f"{self._agent_id} is thinking...", CYAN)
        self.run_worker(self._do_send(list(self._messages)))

    async def _do_send(self, messages: list[dict]) -> None:
        """Worker: stream one reply into a message widget."""
        widget = self._mount_message("assistant", "")
        container = self.query_one("#chat-container", VerticalScroll)
        cumulative = self._client.streaming_mode == StreamingMode.WEBSOCKET
        finished = asyncio.Event()
        errors: list[Exception] = []
        reply = ""

        def on_chunk(text: str) -> None:
            nonlocal reply
            reply = text if cumulative else reply + text
            widget.update(self._render_message("assistant", reply))
            container.scroll_end(animate=False)

        def on_error(error: Exception) -> None:
            errors.append(error)
            finished.set()

        self._cancel = asyncio.Event()
        try:
            await self._client.send_message_streaming(
                messages, on_chunk, finished.set, on_error, cancel=self._cancel,
            )
            await finished.wait()
        finally:
            self._generating = False
            self._cancel = None

        if errors:
            widget.update(self._render_message("assistant", f"Error: {errors[0]}", error=True))
            self.set_status("Send failed", RED)
            return

        self._messages.append({"role": "assistant", "content": reply})
        self.set_status("Done", GREEN)

    def action_stop_reply(self) -> None:
        """Stop the reply being generated."""
        if self._cancel is not None:
            self._cancel.set()
            self.set_status("Stopped", FG_DIM)
