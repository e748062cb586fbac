"""
KeyValueBackend: abstract base for persistence backends.

Backends only move opaque strings around: get(key) and set(key, value).
Serialization of conversations stays in ConversationStore (the caller).
"""

from abc import ABC, abstractmethod


class KeyValueBackend(ABC):
    """Abstract async key/value backend."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if the key was never set."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...

    async def close(self) -> None:
        """Release any held resources. Default: nothing to release."""
