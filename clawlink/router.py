"""Chat run routing.

A chat.send returns a run id; the gateway then streams `chat` events for
that run. ChatRouter maps each event to the listener registered for its
run id and translates delta/final/error/aborted into callbacks.

In websocket mode each delta carries the cumulative reply so far, so
consumers replace rather than append.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .rpc import GatewayError

logger = logging.getLogger(__name__)

CHAT_SEND_TIMEOUT = 60.0
CHAT_ABORT_TIMEOUT = 10.0
CHAT_HISTORY_TIMEOUT = 15.0
DEFAULT_HISTORY_LIMIT = 200
EARLY_EVENT_BACKLOG = 32

TERMINAL_STATES = frozenset({"final", "error", "aborted"})

RequestFn = Callable[..., Awaitable[Any]]


@dataclass
class ChatSendOptions:
    """Optional chat.send fields."""
    thinking: Optional[str] = None
    timeout_ms: Optional[int] = None
    attachments: Optional[list] = None


@dataclass
class ChatRunListener:
    """Callbacks for one chat run."""
    session_key: str
    on_chunk: Callable[[str], None]
    on_done: Callable[[], None]
    on_error: Callable[[Exception], None]


@dataclass
class ChatEvent:
    """A `chat` event payload from the gateway."""
    run_id: str
    session_key: str = ""
    seq: int = 0
    state: str = ""
    message: Optional[dict] = None
    error_message: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> Optional["ChatEvent"]:
        run_id = payload.get("runId")
        if not isinstance(run_id, str) or not run_id:
            return None
        message = payload.get("message")
        seq = payload.get("seq")
        return cls(
            run_id=run_id,
            session_key=str(payload.get("sessionKey") or ""),
            seq=seq if isinstance(seq, int) else 0,
            state=str(payload.get("state") or ""),
            message=message if isinstance(message, dict) else None,
            error_message=payload.get("errorMessage"),
        )


@dataclass
class HistoryMessage:
    """One user or assistant turn from chat.history."""
    role: str
    content: str


def _text_blocks(content: Any) -> list[str]:
    if isinstance(content, dict):
        content = [content]
    if not isinstance(content, list):
        return []
    return [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
    ]


def extract_stream_text(message: Optional[dict]) -> Optional[str]:
    """Concatenate the text blocks of a streamed message.

    Returns None when the message carries no text at all.
    """
    if not message:
        return None
    parts = _text_blocks(message.get("content"))
    return "".join(parts) if parts else None


def extract_text_content(content: Any) -> str:
    """Text of a history entry's content: a string, one block or a list of blocks."""
    if isinstance(content, str):
        return content
    return "\n".join(_text_blocks(content))


def normalize_history(result: Any) -> list[HistoryMessage]:
    """Turn a chat.history payload into user/assistant messages.

    Accepts either a bare list or {"messages": [...]}.
    """
    if isinstance(result, dict):
        result = result.get("messages")
    if not isinstance(result, list):
        return []

    messages = []
    for entry in result:
        if not isinstance(entry, dict):
            continue
        role = entry.get("role")
        if role not in ("user", "assistant"):
            continue
        text = extract_text_content(entry.get("content"))
        if text:
            messages.append(HistoryMessage(role=role, content=text))
    return messages


class ChatRouter:
    """Issues chat RPCs and routes streaming events to per-run listeners."""

    def __init__(self, request: RequestFn):
        self._request = request
        self._listeners: dict[str, ChatRunListener] = {}
        self._backlog: "OrderedDict[str, list[ChatEvent]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._listeners

    async def send(
        self,
        session_key: str,
        message: str,
        options: Optional[ChatSendOptions] = None,
    ) -> str:
        """Send a chat message and return the run id to listen on.

        The run id is the gateway's, or the idempotency key if the gateway
        did not return one.
        """
        idempotency_key = str(uuid.uuid4())
        params: dict[str, Any] = {
            "sessionKey": session_key,
            "message": message,
            "idempotencyKey": idempotency_key,
        }
        if options:
            if options.thinking:
                params["thinking"] = options.thinking
            if options.timeout_ms:
                params["timeoutMs"] = options.timeout_ms
            if options.attachments:
                params["attachments"] = options.attachments

        response = await self._request("chat.send", params, timeout=CHAT_SEND_TIMEOUT)
        run_id = response.get("runId") if isinstance(response, dict) else None
        if isinstance(run_id, str) and run_id:
            return run_id

        logger.debug("chat.send returned no runId, using idempotency key %s", idempotency_key)
        return idempotency_key

    async def abort(self, session_key: str, run_id: Optional[str] = None) -> None:
        params: dict[str, Any] = {"sessionKey": session_key}
        if run_id:
            params["runId"] = run_id
        await self._request("chat.abort", params, timeout=CHAT_ABORT_TIMEOUT)

    async def history(self, session_key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> Any:
        return await self._request(
            "chat.history",
            {"sessionKey": session_key, "limit": limit},
            timeout=CHAT_HISTORY_TIMEOUT,
        )

    def register(self, run_id: str, listener: ChatRunListener) -> None:
        """Listen for a run's events, replaying any that arrived early."""
        self._listeners[run_id] = listener
        for event in self._backlog.pop(run_id, []):
            if run_id not in self._listeners:
                break
            self._route(listener, event)

    def unregister(self, run_id: str) -> Optional[ChatRunListener]:
        return self._listeners.pop(run_id, None)

    def dispatch(self, payload: dict) -> None:
        """Handle one `chat` event payload from the connection."""
        event = ChatEvent.from_payload(payload)
        if event is None:
            logger.debug("Dropping chat event without runId")
            return

        listener = self._listeners.get(event.run_id)
        if listener is None:
            self._remember(event)
            return
        self._route(listener, event)

    def _route(self, listener: ChatRunListener, event: ChatEvent) -> None:
        if event.state in TERMINAL_STATES:
            self._listeners.pop(event.run_id, None)

        if event.state == "delta":
            text = extract_stream_text(event.message)
            if text is not None:
                listener.on_chunk(text)
        elif event.state == "final":
            text = extract_stream_text(event.message)
            if text is not None:
                listener.on_chunk(text)
            listener.on_done()
        elif event.state == "error":
            listener.on_error(GatewayError(event.error_message or "Unknown gateway error"))
        elif event.state == "aborted":
            listener.on_done()
        else:
            logger.debug("Unknown chat state %r for run %s", event.state, event.run_id)

    def _remember(self, event: ChatEvent) -> None:
        if event.state != "delta" and event.state not in TERMINAL_STATES:
            return
        events = self._backlog.get(event.run_id)
        if events is None:
            events = self._backlog[event.run_id] = []
            while len(self._backlog) > EARLY_EVENT_BACKLOG:
                self._backlog.popitem(last=False)
        if events and events[-1].state in TERMINAL_STATES:
            return
        # deltas are cumulative, so only the newest is kept
        if event.state == "delta" and events and events[-1].state == "delta":
            events[-1] = event
        else:
            events.append(event)
