"""
Key/value backend factory.

Usage:
    from chatline.storage.backends import make_backend
    backend = make_backend("sqlite", path="./data/chatline.db")

Adding a new backend:
    1. Create chatline/storage/backends/<name>.py implementing KeyValueBackend.
    2. Add an entry to _REGISTRY below.
    3. Set  storage.backend: <name>  in config.yaml.
"""

from .base import KeyValueBackend

_REGISTRY: dict[str, type[KeyValueBackend]] = {}


def _register():
    global _REGISTRY
    if _REGISTRY:
        return
    from .json_file import JsonFileBackend
    from .memory import MemoryBackend
    from .sqlite import SQLiteBackend
    _REGISTRY["sqlite"] = SQLiteBackend
    _REGISTRY["json"] = JsonFileBackend
    _REGISTRY["memory"] = MemoryBackend


def make_backend(backend_type: str, **kwargs) -> KeyValueBackend:
    """
    Instantiate a key/value backend by name.

    Args:
        backend_type: Registry key ("sqlite", "json", "memory").
        **kwargs:     Passed directly to the backend constructor.

    Raises:
        ValueError: If the backend type is not registered.
    """
    _register()
    cls = _REGISTRY.get(backend_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown storage backend: '{backend_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


def backend_from_config(storage_cfg: dict) -> KeyValueBackend:
    backend_type = storage_cfg.get("backend", "sqlite")
    if backend_type == "memory":
        return make_backend("memory")
    return make_backend(backend_type, path=storage_cfg["path"])


__all__ = ["KeyValueBackend", "make_backend", "backend_from_config"]
