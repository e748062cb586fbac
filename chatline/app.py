"""
Application wiring. Builds the store, client and dialogue session from
config, loads persisted conversations on entry and saves/closes on exit.
Components are handed to callers explicitly; there is no module-level
global store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from chatline.client import CompletionClient
from chatline.config import get_config
from chatline.dialogue import DialogueSession
from chatline.storage.conversation_store import ConversationStore
from chatline.storage.backends import backend_from_config
from chatline.wiretap import WireLog

logger = logging.getLogger(__name__)


@dataclass
class ChatApp:
    cfg: dict
    store: ConversationStore
    client: CompletionClient
    session: DialogueSession
    wire_log: WireLog | None = None


@asynccontextmanager
async def open_app(cfg: dict | None = None):
    """Startup / shutdown lifecycle."""
    cfg = cfg or get_config()

    storage_cfg = cfg["storage"]
    store = ConversationStore(
        backend_from_config(storage_cfg),
        key=storage_cfg.get("key") or "dialogue_conversations",
    )

    wire_log = None
    if cfg["wiretap"].get("enabled"):
        wire_log = WireLog(cfg["wiretap"]["path"])

    client = CompletionClient(timeout=float(cfg["http"]["timeout"]), wire_log=wire_log)
    session = DialogueSession(store, client, cfg["dialogue"])

    await store.load_conversations()
    logger.info(
        "chatline ready: %s backend, %d conversations",
        storage_cfg.get("backend", "sqlite"),
        len(store.conversations),
    )
    try:
        yield ChatApp(cfg=cfg, store=store, client=client, session=session, wire_log=wire_log)
    finally:
        session.stop()
        await client.aclose()
        await store.close()
        if wire_log:
            wire_log.close()
