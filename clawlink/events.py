"""Listener registry with unsubscribe handles."""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Callable[..., None])


class Subscribers(Generic[T]):
    """Ordered list of listeners, notified synchronously in subscription order."""

    def __init__(self, name: str = "listener") -> None:
        self._name = name
        self._listeners: list[T] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: T) -> Callable[[], None]:
        """Add a listener.

        Returns:
            Callable that removes the listener again (safe to call twice)
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, *args) -> None:
        """Call every listener; a failing listener does not stop the rest."""
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("%s callback failed", self._name)
