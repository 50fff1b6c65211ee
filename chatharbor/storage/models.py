from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

MESSAGE_ROLES = frozenset({"user", "assistant", "system"})


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a single request."""

    id: str
    email: str
    display_name: str


@dataclass
class User:
    id: str
    email: str
    display_name: str
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_principal(self) -> Principal:
        return Principal(id=self.id, email=self.email, display_name=self.display_name)


@dataclass
class BotDocument:
    filename: str
    content: str
    uploaded_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Bot:
    id: str
    owner_id: str
    name: str
    embed_code: str
    description: str = ""
    system_prompt: str = "You are a helpful AI assistant."
    greeting_message: str = "Hi! How can I help you today?"
    model_name: Optional[str] = None
    is_active: bool = True
    documents: List[BotDocument] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        owner_id: str,
        name: str,
        *,
        description: str = "",
        system_prompt: Optional[str] = None,
        greeting_message: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> "Bot":
        bot = cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            embed_code=f"bot_{uuid.uuid4().hex}",
            description=description,
            model_name=model_name,
        )
        if system_prompt:
            bot.system_prompt = system_prompt
        if greeting_message:
            bot.greeting_message = greeting_message
        return bot


@dataclass(frozen=True)
class ChatMessage:
    """One transcript entry. Never mutated once appended."""

    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "ChatMessage":
        ts = raw.get("timestamp")
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts)
        return cls(
            role=raw["role"],
            content=raw.get("content", ""),
            timestamp=ts or datetime.utcnow(),
        )


@dataclass
class ConversationSession:
    bot_id: str
    session_id: str
    messages: List[ChatMessage]
    started_at: datetime
    last_updated_at: datetime
    user_id: Optional[str] = None
