"""
Data models for conversation storage.
These define the shape of what the store keeps and what gets serialized.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

NEW_CHAT_TITLE = "New Chat"
TITLE_MAX_LENGTH = 30


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid4().hex


def generate_title(content: str) -> str:
    """Title from the first user message: trimmed, one line, 30 chars + '...'."""
    trimmed = content.strip().replace("\n", " ")
    if len(trimmed) <= TITLE_MAX_LENGTH:
        return trimmed
    return f"{trimmed[:TITLE_MAX_LENGTH]}..."


@dataclass
class Message:
    """A single message in a conversation. Only user/assistant are stored."""
    role: str = ""           # "user" or "assistant"
    content: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now)

    def to_openai_format(self) -> dict:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or _now(),
        )


@dataclass
class Conversation:
    """Ordered log of messages. Appended to, or its last message rewritten."""
    id: str = field(default_factory=_new_id)
    title: str = NEW_CHAT_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = ""

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def to_openai_format(self) -> list[dict]:
        return [m.to_openai_format() for m in self.messages]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title", NEW_CHAT_TITLE),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=data.get("created_at") or _now(),
            updated_at=data.get("updated_at", ""),
        )
