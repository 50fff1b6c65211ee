from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chatharbor.logging import get_logger
from chatharbor.storage.errors import ConstraintViolation, StorageError
from chatharbor.storage.models import (
    Bot,
    BotDocument,
    ChatMessage,
    ConversationSession,
    User,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        password_hash TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bot (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        system_prompt TEXT NOT NULL,
        greeting_message TEXT NOT NULL,
        model_name TEXT,
        embed_code TEXT NOT NULL UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        documents JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_session (
        bot_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        user_id TEXT,
        messages JSONB NOT NULL DEFAULT '[]'::jsonb,
        started_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (bot_id, session_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS chat_session_started_idx ON chat_session (bot_id, started_at DESC)",
)


class PostgresStore:
    """Postgres-backed store for users, bots and chat sessions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # users -----------------------------------------------------------------

    def create_user(
        self, email: str, display_name: str, password_hash: Optional[str] = None
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            password_hash=password_hash,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user.id, email, display_name, password_hash, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.Error as exc:
            raise StorageError("create_user", exc) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("SELECT * FROM app_user WHERE id = %s", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("SELECT * FROM app_user WHERE email = %s", email)

    def _fetch_user(self, query: str, value: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(query, (value,)).fetchone()
        except errors.Error as exc:
            raise StorageError("get_user", exc) from exc
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name") or "",
            password_hash=row.get("password_hash"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def delete_user(self, user_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        except errors.Error as exc:
            raise StorageError("delete_user", exc) from exc
        return cur.rowcount > 0

    # bots ------------------------------------------------------------------

    def create_bot(self, bot: Bot) -> Bot:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO bot (id, owner_id, name, description, system_prompt,
                        greeting_message, model_name, embed_code, is_active, documents, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        bot.id,
                        bot.owner_id,
                        bot.name,
                        bot.description,
                        bot.system_prompt,
                        bot.greeting_message,
                        bot.model_name,
                        bot.embed_code,
                        bot.is_active,
                        json.dumps([_document_to_dict(d) for d in bot.documents]),
                        bot.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("embed code already exists", {"field": "embed_code"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner not found", {"owner_id": bot.owner_id})
        except errors.Error as exc:
            raise StorageError("create_bot", exc) from exc
        return bot

    def get_bot(self, bot_id: str) -> Optional[Bot]:
        rows = self._fetch_bots("SELECT * FROM bot WHERE id = %s", (bot_id,))
        return rows[0] if rows else None

    def get_bot_by_embed_code(self, embed_code: str) -> Optional[Bot]:
        rows = self._fetch_bots("SELECT * FROM bot WHERE embed_code = %s", (embed_code,))
        return rows[0] if rows else None

    def list_bots(self, owner_id: str) -> List[Bot]:
        return self._fetch_bots(
            "SELECT * FROM bot WHERE owner_id = %s ORDER BY created_at DESC", (owner_id,)
        )

    def add_bot_documents(
        self, bot_id: str, documents: Sequence[BotDocument]
    ) -> Optional[Bot]:
        payload = json.dumps([_document_to_dict(d) for d in documents])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE bot SET documents = documents || %s::jsonb WHERE id = %s RETURNING *",
                    (payload, bot_id),
                ).fetchone()
        except errors.Error as exc:
            raise StorageError("add_bot_documents", exc) from exc
        return _bot_from_row(row) if row else None

    def _fetch_bots(self, query: str, params: tuple) -> List[Bot]:
        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except errors.Error as exc:
            raise StorageError("get_bot", exc) from exc
        return [_bot_from_row(row) for row in rows]

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
        """Create the session or append to it in a single statement.

        The ON CONFLICT branch concatenates onto the row's current value, so
        concurrent appends to the same session serialize on the row lock and
        none of them is lost.
        """
        now = now or datetime.utcnow()
        payload = json.dumps([m.to_dict() for m in messages])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO chat_session (bot_id, session_id, user_id, messages, started_at, updated_at)
                    VALUES (%s, %s, %s, %s::jsonb, %s, %s)
                    ON CONFLICT (bot_id, session_id) DO UPDATE SET
                        messages = chat_session.messages || EXCLUDED.messages,
                        user_id = COALESCE(chat_session.user_id, EXCLUDED.user_id),
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (bot_id, session_id, user_id, payload, now, now),
                ).fetchone()
        except errors.Error as exc:
            raise StorageError("upsert_append_session", exc) from exc
        return _session_from_row(row)

    def get_chat_session(
        self, bot_id: str, session_id: str
    ) -> Optional[ConversationSession]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM chat_session WHERE bot_id = %s AND session_id = %s",
                    (bot_id, session_id),
                ).fetchone()
        except errors.Error as exc:
            raise StorageError("get_chat_session", exc) from exc
        return _session_from_row(row) if row else None

    def list_chat_sessions(
        self, bot_id: str, *, limit: int = 50, offset: int = 0
    ) -> List[ConversationSession]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM chat_session WHERE bot_id = %s
                    ORDER BY started_at DESC LIMIT %s OFFSET %s
                    """,
                    (bot_id, limit, offset),
                ).fetchall()
        except errors.Error as exc:
            raise StorageError("list_chat_sessions", exc) from exc
        return [_session_from_row(row) for row in rows]

    def delete_chat_session(self, bot_id: str, session_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM chat_session WHERE bot_id = %s AND session_id = %s",
                    (bot_id, session_id),
                )
        except errors.Error as exc:
            raise StorageError("delete_chat_session", exc) from exc
        return cur.rowcount > 0


def _document_to_dict(document: BotDocument) -> dict:
    return {
        "filename": document.filename,
        "content": document.content,
        "uploaded_at": document.uploaded_at.isoformat(),
    }


def _load_json(raw: Any) -> list:
    # JSONB arrives decoded; plain TEXT columns arrive as strings
    if isinstance(raw, str):
        return json.loads(raw)
    return list(raw or [])


def _bot_from_row(row: dict) -> Bot:
    documents = [
        BotDocument(
            filename=d.get("filename", ""),
            content=d.get("content", ""),
            uploaded_at=datetime.fromisoformat(d["uploaded_at"])
            if d.get("uploaded_at")
            else datetime.utcnow(),
        )
        for d in _load_json(row.get("documents"))
    ]
    return Bot(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        name=row["name"],
        embed_code=row["embed_code"],
        description=row.get("description") or "",
        system_prompt=row.get("system_prompt") or Bot.system_prompt,
        greeting_message=row.get("greeting_message") or Bot.greeting_message,
        model_name=row.get("model_name"),
        is_active=row.get("is_active", True),
        documents=documents,
        created_at=row.get("created_at") or datetime.utcnow(),
    )


def _session_from_row(row: dict) -> ConversationSession:
    return ConversationSession(
        bot_id=str(row["bot_id"]),
        session_id=row["session_id"],
        messages=[ChatMessage.from_dict(m) for m in _load_json(row.get("messages"))],
        started_at=row["started_at"],
        last_updated_at=row["updated_at"],
        user_id=row.get("user_id"),
    )
