"""
Dialogue flow: ties CompletionClient to ConversationStore.

send_message() appends the user turn and an empty assistant placeholder,
streams the reply into that placeholder fragment by fragment, then
settles it with the final text (or an error line) and saves.

Sends to the same conversation are serialized with a per-conversation
lock, so two replies can never interleave their update_last_message calls.
"""

from __future__ import annotations

import asyncio
import logging

from chatline.client import (
    API_KEY_MISSING,
    CancelToken,
    CompletionClient,
    CompletionRequest,
    CompletionResult,
)
from chatline.config import DEFAULT_DIALOGUE_PROMPT, DEFAULT_MAX_HISTORY
from chatline.publisher import Channel
from chatline.storage.conversation_store import ConversationStore
from chatline.storage.models import Message

logger = logging.getLogger(__name__)

DIALOGUE_API_KEY_MISSING = (
    "API key not configured. Please set your API key in Settings > AI Dialogue."
)


def build_history(messages: list[Message], content: str, max_history: int) -> list[dict]:
    """
    Last max_history user/assistant pairs, empty messages dropped, ending
    with the new user text.
    """
    recent = messages[-(max_history * 2):] if max_history > 0 else []
    history = [m.to_openai_format() for m in recent if m.content]
    if not history or history[-1]["content"] != content:
        history.append({"role": "user", "content": content})
    return history


class DialogueSession:
    def __init__(self, store: ConversationStore, client: CompletionClient, settings: dict):
        self.store = store
        self.client = client
        self.settings = settings
        self.streaming: Channel[str] = Channel("", name="streaming")
        self._locks: dict[str, asyncio.Lock] = {}
        # sends holding or waiting on each lock; the lock is dropped at zero
        self._lock_users: dict[str, int] = {}
        self._tokens: dict[str, CancelToken] = {}

    @property
    def is_streaming(self) -> bool:
        return bool(self._tokens)

    def _request(self, history: list[dict]) -> CompletionRequest:
        return CompletionRequest(
            api_url=self.settings["api_url"],
            api_key=self.settings.get("api_key", ""),
            model=self.settings["model"],
            messages=history,
            system_prompt=self.settings.get("system_prompt", DEFAULT_DIALOGUE_PROMPT),
        )

    async def send_message(self, content: str) -> CompletionResult:
        conversation_id = self.store.active_conversation_id
        if conversation_id is None or self.store.get_conversation(conversation_id) is None:
            conversation_id = await self.store.create_conversation()

        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                return await self._exchange(conversation_id, content)
        finally:
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def _exchange(self, conversation_id: str, content: str) -> CompletionResult:
        await self.store.add_message(conversation_id, "user", content)
        await self.store.add_message(conversation_id, "assistant", "")

        conv = self.store.get_conversation(conversation_id)
        max_history = int(self.settings.get("max_history_messages", DEFAULT_MAX_HISTORY))
        history = build_history(conv.messages if conv else [], content, max_history)

        parts: list[str] = []

        def on_chunk(chunk: str):
            parts.append(chunk)
            text = "".join(parts)
            self.store.update_last_message(conversation_id, text)
            self.streaming.publish(text)

        token = CancelToken()
        self._tokens[conversation_id] = token
        try:
            result = await self.client.send(
                self._request(history), on_chunk, token, conversation_id=conversation_id
            )
        finally:
            self._tokens.pop(conversation_id, None)
            self.streaming.reset()

        if result.error == API_KEY_MISSING:
            result = CompletionResult.failure(DIALOGUE_API_KEY_MISSING)

        if result.ok:
            self.store.update_last_message(conversation_id, result.content)
        elif result.cancelled and parts:
            # stopped mid-reply: keep what already streamed
            self.store.update_last_message(conversation_id, "".join(parts))
        else:
            logger.info("Dialogue reply failed: %s", result.error)
            self.store.update_last_message(conversation_id, f"Error: {result.error}")

        await self.store.save_conversations()
        return result

    def stop(self, conversation_id: str | None = None) -> None:
        """Cancel the in-flight reply for one conversation, or all of them."""
        if conversation_id is not None:
            token = self._tokens.get(conversation_id)
            if token:
                token.cancel()
            return
        for token in self._tokens.values():
            token.cancel()
