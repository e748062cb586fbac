"""
Conversation store: the in-memory collection of conversations plus the
active-conversation pointer, persisted wholesale as one JSON blob under a
fixed key in a KeyValueBackend.

Ordering: most-recently-touched first. Appending a message moves that
conversation to the front; rewriting the last message does not, so a live
stream doesn't reshuffle the list on every fragment.

Persistence failures are logged and swallowed. The in-memory state stays
usable even if the backend is unreachable.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone

from chatline.publisher import Channel
from chatline.storage.backends import KeyValueBackend
from chatline.storage.models import Conversation, Message, generate_title

logger = logging.getLogger(__name__)

STORAGE_KEY = "dialogue_conversations"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationStore:
    """
    Sole owner and writer of conversation state.

    Construct once at startup, call load_conversations(), and close() at
    shutdown. Nothing outside this class should mutate Conversation or
    Message objects it hands out.
    """

    def __init__(self, backend: KeyValueBackend, key: str = STORAGE_KEY):
        self.backend = backend
        self.key = key
        self._conversations: list[Conversation] = []
        self.active_conversation_id: str | None = None
        self.is_loading = False
        self.changes: Channel[list[Conversation]] = Channel([], name="conversations")
        # saves complete in call order; each writes the state current when it runs
        self._save_lock = asyncio.Lock()

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def _publish(self):
        self.changes.publish(list(self._conversations))

    # --- Mutations ---

    async def create_conversation(self) -> str:
        conv = Conversation()
        self._conversations.insert(0, conv)
        self.active_conversation_id = conv.id
        logger.debug("Created conversation %s", conv.id)
        self._publish()
        await self.save_conversations()
        return conv.id

    def set_active_conversation(self, conversation_id: str | None) -> None:
        self.active_conversation_id = conversation_id

    async def add_message(self, conversation_id: str, role: str, content: str) -> Message:
        """
        Append a message and move its conversation to the front.
        The first user message names the conversation. An unknown id is a
        no-op apart from the save.
        """
        message = Message(role=role, content=content)
        conv = self.get_conversation(conversation_id)
        if conv is not None:
            if not conv.messages and role == "user":
                conv.title = generate_title(content)
            conv.messages.append(message)
            conv.updated_at = _now()
            self._conversations.remove(conv)
            self._conversations.insert(0, conv)
            self._publish()
        else:
            logger.debug("add_message: no conversation %s", conversation_id)
        await self.save_conversations()
        return message

    def update_last_message(self, conversation_id: str, content: str) -> None:
        """Replace the last message's content in place. Not persisted here."""
        conv = self.get_conversation(conversation_id)
        if conv is None or not conv.messages:
            return
        conv.messages[-1].content = content
        conv.updated_at = _now()
        self._publish()

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = (
                self._conversations[0].id if self._conversations else None
            )
        self._publish()
        await self.save_conversations()

    async def clear_all_conversations(self) -> None:
        self._conversations = []
        self.active_conversation_id = None
        self._publish()
        await self.save_conversations()

    # --- Persistence ---

    async def load_conversations(self) -> None:
        """
        Replace the collection with the persisted one and point at its front.
        Absent state means an empty collection. On failure the current
        in-memory state is kept.
        """
        self.is_loading = True
        try:
            stored = await self.backend.get(self.key)
            if stored:
                raw = json.loads(stored)
                if not isinstance(raw, list):
                    raise ValueError(f"expected a JSON list under {self.key!r}")
                conversations = [Conversation.from_dict(c) for c in raw]
            else:
                conversations = []
            self._conversations = conversations
            self.active_conversation_id = conversations[0].id if conversations else None
            logger.info("Loaded %d conversations", len(conversations))
            self._publish()
        except Exception as e:
            logger.error("Failed to load conversations: %s", e)
        finally:
            self.is_loading = False

    async def save_conversations(self) -> bool:
        """Write the whole collection. Returns False (and logs) on failure."""
        async with self._save_lock:
            try:
                payload = json.dumps(
                    [c.to_dict() for c in self._conversations], ensure_ascii=False
                )
                await self.backend.set(self.key, payload)
            except Exception as e:
                logger.error("Failed to save conversations: %s", e)
                return False
        return True

    async def close(self) -> None:
        await self.save_conversations()
        try:
            await self.backend.close()
        except Exception as e:
            logger.error("Failed to close storage backend: %s", e)

    # --- Lookups ---

    def get_active_conversation(self) -> Conversation | None:
        if self.active_conversation_id is None:
            return None
        return self.get_conversation(self.active_conversation_id)
