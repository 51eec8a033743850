"""Wire frames exchanged with the gateway.

Three shapes travel over the socket as JSON text:

- event:    {"event": str, "payload"?: any, "seq"?: int}
- request:  {"type": "req", "id": str, "method": str, "params"?: any}
- response: {"id": str, "ok": bool, "payload"?: any, "error"?: {...}}

Inbound frames are classified by field presence. Anything that is not
valid JSON or does not match a shape is dropped.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventFrame:
    """Server-pushed event."""
    event: str
    payload: Any = None
    seq: Optional[int] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": "event", "event": self.event}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.seq is not None:
            data["seq"] = self.seq
        return data


@dataclass(frozen=True)
class RequestFrame:
    """Client RPC request."""
    id: str
    method: str
    params: Any = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": "req", "id": self.id, "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass(frozen=True)
class ResponseError:
    """Error block of a failed response."""
    message: str
    code: Optional[str] = None
    details: Any = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"message": self.message}
        if self.code is not None:
            data["code"] = self.code
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class ResponseFrame:
    """Server reply to a request, matched by id."""
    id: str
    ok: bool
    payload: Any = None
    error: Optional[ResponseError] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": "res", "id": self.id, "ok": self.ok}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


Frame = Union[EventFrame, RequestFrame, ResponseFrame]


def _parse_error(raw: Any) -> ResponseError:
    if not isinstance(raw, dict):
        return ResponseError(message="unknown gateway error")
    message = raw.get("message")
    code = raw.get("code")
    return ResponseError(
        message=message if isinstance(message, str) and message else "unknown gateway error",
        code=code if isinstance(code, str) else None,
        details=raw.get("details"),
    )


def decode_frame(raw: Union[str, bytes]) -> Optional[Frame]:
    """Parse one inbound message into an event or response frame.

    Returns None for malformed or unrecognized input.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Dropping non UTF-8 frame")
            return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed frame: %s", raw[:100])
        return None
    if not isinstance(obj, dict):
        return None

    if isinstance(obj.get("event"), str):
        seq = obj.get("seq")
        return EventFrame(
            event=obj["event"],
            payload=obj.get("payload"),
            seq=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
        )

    if isinstance(obj.get("id"), str) and isinstance(obj.get("ok"), bool):
        ok = obj["ok"]
        return ResponseFrame(
            id=obj["id"],
            ok=ok,
            payload=obj.get("payload"),
            error=None if ok else _parse_error(obj.get("error")),
        )

    logger.debug("Ignoring unrecognized frame with keys %s", sorted(obj))
    return None


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to JSON text."""
    return json.dumps(frame.to_dict())
