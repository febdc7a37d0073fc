"""In-process broadcast channel."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], None]


class Publisher(Generic[T]):
    """Synchronous fan-out of values to subscribers.

    Values are delivered in send order to the subscribers registered at the
    time of sending. A failing subscriber is logged and does not stop delivery
    to the others.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._subscribers: list[Subscriber[T]] = []

    def subscribe(self, subscriber: Subscriber[T]) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""
        self._subscribers.append(subscriber)

        def cancel() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return cancel

    def send(self, value: T) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(value)
            except Exception:
                logger.exception("Subscriber failed", extra={"channel": self._name})

    def close(self) -> None:
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
