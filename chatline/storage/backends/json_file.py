"""JSON-file key/value backend: one object mapping key -> value."""

import asyncio
import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from .base import KeyValueBackend

logger = logging.getLogger(__name__)


class JsonFileBackend(KeyValueBackend):
    def __init__(self, path: str):
        self.path = Path(path)
        # worker threads share one file; read-modify-write must not interleave
        self._lock = threading.Lock()

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def _get(self, key: str) -> str | None:
        with self._lock:
            value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def _set(self, key: str, value: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = self._read_all()
            data[key] = value
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                json.dump(data, tmp, ensure_ascii=False)
            try:
                os.replace(tmp.name, self.path)
            except OSError:
                os.unlink(tmp.name)
                raise

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)
