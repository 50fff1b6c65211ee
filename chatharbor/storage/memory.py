from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from chatharbor.logging import get_logger
from chatharbor.storage.errors import ConstraintViolation
from chatharbor.storage.models import (
    Bot,
    BotDocument,
    ChatMessage,
    ConversationSession,
    User,
)


class MemoryStore:
    """In-process backing store for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.bots: Dict[str, Bot] = {}
        self.chat_sessions: Dict[Tuple[str, str], ConversationSession] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users -----------------------------------------------------------------

    def create_user(
        self, email: str, display_name: str, password_hash: Optional[str] = None
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                display_name=display_name,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self.users.pop(user_id, None) is not None

    # bots ------------------------------------------------------------------

    def create_bot(self, bot: Bot) -> Bot:
        with self._data_lock:
            if any(b.embed_code == bot.embed_code for b in self.bots.values()):
                raise ConstraintViolation(
                    "embed code already exists", {"field": "embed_code"}
                )
            self.bots[bot.id] = bot
            return bot

    def get_bot(self, bot_id: str) -> Optional[Bot]:
        with self._data_lock:
            return self.bots.get(bot_id)

    def get_bot_by_embed_code(self, embed_code: str) -> Optional[Bot]:
        with self._data_lock:
            return next(
                (b for b in self.bots.values() if b.embed_code == embed_code), None
            )

    def list_bots(self, owner_id: str) -> List[Bot]:
        with self._data_lock:
            bots = [b for b in self.bots.values() if b.owner_id == owner_id]
        return sorted(bots, key=lambda b: b.created_at, reverse=True)

    def add_bot_documents(
        self, bot_id: str, documents: Sequence[BotDocument]
    ) -> Optional[Bot]:
        with self._data_lock:
            bot = self.bots.get(bot_id)
            if not bot:
                return None
            bot.documents = [*bot.documents, *documents]
            return bot

    # chat sessions -----------------------------------------------------------

    def upsert_append_session(
        self,
        bot_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """Create the session or extend its transcript in one critical section."""
        now = now or datetime.utcnow()
        key = (bot_id, session_id)
        with self._data_lock:
            existing = self.chat_sessions.get(key)
            if existing is None:
                record = ConversationSession(
                    bot_id=bot_id,
                    session_id=session_id,
                    messages=list(messages),
                    started_at=now,
                    last_updated_at=now,
                    user_id=user_id,
                )
            else:
                record = replace(
                    existing,
                    messages=[*existing.messages, *messages],
                    last_updated_at=now,
                    user_id=existing.user_id or user_id,
                )
            self.chat_sessions[key] = record
            return self._snapshot(record)

    def get_chat_session(
        self, bot_id: str, session_id: str
    ) -> Optional[ConversationSession]:
        with self._data_lock:
            record = self.chat_sessions.get((bot_id, session_id))
            return self._snapshot(record) if record else None

    def list_chat_sessions(
        self, bot_id: str, *, limit: int = 50, offset: int = 0
    ) -> List[ConversationSession]:
        with self._data_lock:
            records = [s for (b, _), s in self.chat_sessions.items() if b == bot_id]
            records.sort(key=lambda s: s.started_at, reverse=True)
            return [self._snapshot(s) for s in records[offset : offset + limit]]

    def delete_chat_session(self, bot_id: str, session_id: str) -> bool:
        with self._data_lock:
            return self.chat_sessions.pop((bot_id, session_id), None) is not None

    @staticmethod
    def _snapshot(record: ConversationSession) -> ConversationSession:
        # callers must not be able to mutate the stored transcript
        return replace(record, messages=list(record.messages))
