from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

from chatharbor.logging import get_logger
from chatharbor.service.errors import PersistenceError, ValidationError
from chatharbor.storage.errors import StorageError
from chatharbor.storage.models import MESSAGE_ROLES, ChatMessage, ConversationSession

MAX_SESSION_ID_LENGTH = 128

MessageInput = Union[ChatMessage, Mapping[str, object]]


class SessionStore(Protocol):
    def upsert_append_session(
        self,
        bot_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConversationSession: ...

    def get_chat_session(
        self, bot_id: str, session_id: str
    ) -> Optional[ConversationSession]: ...

    def list_chat_sessions(
        self, bot_id: str, *, limit: int = 50, offset: int = 0
    ) -> List[ConversationSession]: ...

    def delete_chat_session(self, bot_id: str, session_id: str) -> bool: ...


class SessionLedger:
    """Append-only conversation transcripts keyed by ``(bot_id, session_id)``.

    The first append for a key creates the record; later appends extend it.
    Both happen in one atomic store operation, so concurrent turns against
    the same session never drop each other's messages. Session ids are
    always supplied by the caller.
    """

    def __init__(
        self, store: SessionStore, *, clock: Callable[[], datetime] = datetime.utcnow
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = get_logger(__name__)

    def append_turn(
        self,
        bot_id: str,
        session_id: str,
        new_messages: Iterable[MessageInput],
        *,
        user_id: Optional[str] = None,
    ) -> ConversationSession:
        _validate_key(bot_id, session_id)
        now = self._clock()
        batch = [_coerce_message(raw, now) for raw in new_messages]
        try:
            record = self.store.upsert_append_session(
                bot_id, session_id, batch, user_id=user_id, now=now
            )
        except StorageError as exc:
            self.logger.error(
                "ledger_append_failed",
                bot_id=bot_id,
                session_id=session_id,
                error=str(exc.cause or exc),
            )
            raise PersistenceError("failed to save conversation") from exc
        self.logger.info(
            "ledger_appended",
            bot_id=bot_id,
            session_id=session_id,
            appended=len(batch),
            total=len(record.messages),
        )
        return record

    def get_session(self, bot_id: str, session_id: str) -> Optional[ConversationSession]:
        _validate_key(bot_id, session_id)
        try:
            return self.store.get_chat_session(bot_id, session_id)
        except StorageError as exc:
            raise PersistenceError("failed to load conversation") from exc

    def list_sessions(
        self, bot_id: str, *, limit: int = 50, offset: int = 0
    ) -> List[ConversationSession]:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        try:
            return self.store.list_chat_sessions(bot_id, limit=limit, offset=offset)
        except StorageError as exc:
            raise PersistenceError("failed to list conversations") from exc

    def delete_session(self, bot_id: str, session_id: str) -> bool:
        _validate_key(bot_id, session_id)
        try:
            deleted = self.store.delete_chat_session(bot_id, session_id)
        except StorageError as exc:
            raise PersistenceError("failed to delete conversation") from exc
        if deleted:
            self.logger.info("ledger_session_deleted", bot_id=bot_id, session_id=session_id)
        return deleted


def _validate_key(bot_id: str, session_id: str) -> None:
    if not bot_id:
        raise ValidationError("bot_id is required", detail={"field": "bot_id"})
    if not session_id or not session_id.strip():
        raise ValidationError("session_id is required", detail={"field": "session_id"})
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        raise ValidationError(
            f"session_id must be at most {MAX_SESSION_ID_LENGTH} characters",
            detail={"field": "session_id"},
        )


def _coerce_message(raw: MessageInput, now: datetime) -> ChatMessage:
    if isinstance(raw, ChatMessage):
        message = raw
    else:
        timestamp = raw.get("timestamp")
        message = ChatMessage(
            role=str(raw.get("role", "")),
            content=str(raw.get("content", "")),
            timestamp=timestamp if isinstance(timestamp, datetime) else now,
        )
    if message.role not in MESSAGE_ROLES:
        raise ValidationError(
            f"unsupported message role: {message.role!r}", detail={"field": "role"}
        )
    return message
