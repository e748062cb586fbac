"""In-process key/value backend. Nothing survives a restart."""

from .base import KeyValueBackend


class MemoryBackend(KeyValueBackend):
    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value
