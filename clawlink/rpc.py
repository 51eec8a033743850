"""Request/response correlation for gateway RPC calls.

Every outbound request gets a fresh id and a future. The future is
settled exactly once: by the matching response, by its timeout, or by a
flush when the connection goes away.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from .frames import ResponseFrame

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 30.0

PAIRING_ERROR_CODES = frozenset({"PAIRING_REQUIRED", "DEVICE_IDENTITY_REQUIRED"})


class GatewayError(RuntimeError):
    """Base class for gateway client errors."""


class NotConnectedError(GatewayError):
    """Raised when a request is made without an open transport."""


class ConnectionClosedError(GatewayError):
    """Raised for requests in flight when the connection closes or restarts."""


class RpcTimeoutError(GatewayError):
    """Raised when no response arrives within the request timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"RPC timeout: {method} ({int(timeout * 1000)}ms)")
        self.method = method
        self.timeout = timeout


class GatewayRequestError(GatewayError):
    """Raised when the gateway answers a request with ok=false."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details


def is_pairing_required(error: BaseException) -> bool:
    """Whether an error means the device must be approved on the gateway."""
    code = getattr(error, "code", None) or ""
    if code in PAIRING_ERROR_CODES:
        return True
    return "pairing required" in str(error).lower()


@dataclass
class PendingRequest:
    """In-flight request awaiting its response."""
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class PendingRequests:
    """Outstanding requests keyed by correlation id."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def create(self, method: str, timeout: float = DEFAULT_RPC_TIMEOUT) -> tuple[str, asyncio.Future]:
        """Register a new request and arm its timeout.

        Returns:
            Tuple of (request_id, future resolving to the response payload)
        """
        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, method, timeout)
        self._pending[request_id] = PendingRequest(method=method, future=future, timer=timer)
        # A caller that stops waiting (cancellation) must not leave the entry behind
        future.add_done_callback(lambda f, rid=request_id: self._discard_cancelled(rid, f))
        return request_id, future

    def resolve(self, response: ResponseFrame) -> bool:
        """Settle the request matching a response frame.

        Returns:
            True if a pending request was settled, False for unknown ids.
        """
        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.debug("Response for unknown request id %s", response.id)
            return False

        entry.timer.cancel()
        if entry.future.done():
            return False
        if response.ok:
            entry.future.set_result(response.payload)
        else:
            error = response.error
            entry.future.set_exception(GatewayRequestError(
                error.message if error else "unknown gateway error",
                code=error.code if error else None,
                details=error.details if error else None,
            ))
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        """Fail one pending request."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def flush(self, error: BaseException) -> int:
        """Fail every pending request with the same error.

        Returns:
            Number of requests rejected
        """
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)
        if entries:
            logger.debug("Flushed %d pending request(s): %s", len(entries), error)
        return len(entries)

    def _expire(self, request_id: str, method: str, timeout: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        logger.warning("RPC %s timed out after %.1fs", method, timeout)
        entry.future.set_exception(RpcTimeoutError(method, timeout))

    def _discard_cancelled(self, request_id: str, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        entry = self._pending.get(request_id)
        if entry is not None and entry.future is future:
            del self._pending[request_id]
            entry.timer.cancel()
