"""
Typed publish/subscribe channel, one per state slice.

One writer publishes, any number of readers subscribe. Readers get
(value, previous) and never hold a reference they are allowed to mutate.
"""

from __future__ import annotations

import itertools
import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T, T], None]


class Channel(Generic[T]):
    def __init__(self, default: T, name: str = ""):
        self.name = name
        self._default = default
        self._value = default
        self._listeners: dict[int, Listener] = {}
        self._ids = itertools.count()

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        previous, self._value = self._value, value
        for listener in list(self._listeners.values()):
            try:
                listener(value, previous)
            except Exception:
                logger.exception("Subscriber on channel %r failed", self.name)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        key = next(self._ids)
        self._listeners[key] = listener

        def unsubscribe():
            self._listeners.pop(key, None)

        return unsubscribe

    def reset(self) -> None:
        self.publish(self._default)
