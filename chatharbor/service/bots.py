from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from chatharbor.logging import get_logger
from chatharbor.service.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from chatharbor.storage.errors import ConstraintViolation, StorageError
from chatharbor.storage.models import Bot, BotDocument

MAX_BOT_NAME_LENGTH = 100
MAX_DOCUMENTS_PER_UPLOAD = 5
TRAINING_TEXT_FILENAME = "training-text.txt"


class BotStore(Protocol):
    def create_bot(self, bot: Bot) -> Bot: ...

    def get_bot(self, bot_id: str) -> Optional[Bot]: ...

    def get_bot_by_embed_code(self, embed_code: str) -> Optional[Bot]: ...

    def list_bots(self, owner_id: str) -> List[Bot]: ...

    def add_bot_documents(
        self, bot_id: str, documents: Sequence[BotDocument]
    ) -> Optional[Bot]: ...


def _clean_documents(documents: Iterable[Tuple[str, str]]) -> List[BotDocument]:
    cleaned = [
        BotDocument(filename=(name or "document").strip(), content=content.strip())
        for name, content in documents
        if content and content.strip()
    ]
    if len(cleaned) > MAX_DOCUMENTS_PER_UPLOAD:
        raise ValidationError(
            f"At most {MAX_DOCUMENTS_PER_UPLOAD} documents per upload",
            detail={"field": "documents"},
        )
    return cleaned


class BotService:
    def __init__(self, store: BotStore, *, default_model: str) -> None:
        self.store = store
        self.default_model = default_model
        self.logger = get_logger(__name__)

    def create_bot(
        self,
        owner_id: str,
        name: str,
        *,
        description: str = "",
        model_name: Optional[str] = None,
        system_prompt: Optional[str] = None,
        greeting_message: Optional[str] = None,
        training_text: Optional[str] = None,
        documents: Iterable[Tuple[str, str]] = (),
    ) -> Bot:
        name = (name or "").strip()
        if len(name) < 2:
            raise ValidationError(
                "Bot name is required and must be at least 2 characters long",
                detail={"field": "name"},
            )
        if len(name) > MAX_BOT_NAME_LENGTH:
            raise ValidationError(
                f"Bot name must be less than {MAX_BOT_NAME_LENGTH} characters",
                detail={"field": "name"},
            )
        docs = _clean_documents(documents)
        if training_text and training_text.strip():
            docs.insert(0, BotDocument(TRAINING_TEXT_FILENAME, training_text.strip()))
        if not docs:
            raise ValidationError(
                "Please provide training data: add training text or upload documents",
                detail={"field": "trainingText"},
            )

        bot = Bot.new(
            owner_id,
            name,
            description=(description or "").strip(),
            system_prompt=(system_prompt or "").strip() or None,
            greeting_message=(greeting_message or "").strip() or None,
            model_name=(model_name or "").strip() or self.default_model,
        )
        bot.documents = docs
        try:
            self.store.create_bot(bot)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        except StorageError as exc:
            raise PersistenceError("failed to create bot") from exc
        self.logger.info(
            "bot_created", bot_id=bot.id, owner_id=owner_id, documents=len(docs)
        )
        return bot

    def list_bots(self, owner_id: str) -> List[Bot]:
        try:
            return self.store.list_bots(owner_id)
        except StorageError as exc:
            raise PersistenceError("failed to list bots") from exc

    def get_owned_bot(self, bot_id: str, owner_id: str) -> Bot:
        """Return the bot when ``owner_id`` owns it; 404 otherwise."""
        try:
            bot = self.store.get_bot(bot_id)
        except StorageError as exc:
            raise PersistenceError("failed to load bot") from exc
        # foreign bots read as missing so ids cannot be probed
        if not bot or bot.owner_id != owner_id:
            raise NotFoundError("Bot not found", detail={"bot_id": bot_id})
        return bot

    def get_embedded_bot(self, embed_code: str) -> Bot:
        try:
            bot = self.store.get_bot_by_embed_code(embed_code)
        except StorageError as exc:
            raise PersistenceError("failed to load bot") from exc
        if not bot or not bot.is_active:
            raise NotFoundError("Bot not found or inactive")
        return bot

    def add_documents(
        self, bot_id: str, owner_id: str, documents: Iterable[Tuple[str, str]]
    ) -> Bot:
        self.get_owned_bot(bot_id, owner_id)
        docs = _clean_documents(documents)
        if not docs:
            raise ValidationError(
                "No document content provided", detail={"field": "documents"}
            )
        try:
            bot = self.store.add_bot_documents(bot_id, docs)
        except StorageError as exc:
            raise PersistenceError("failed to save documents") from exc
        if not bot:
            raise NotFoundError("Bot not found", detail={"bot_id": bot_id})
        self.logger.info("bot_documents_added", bot_id=bot_id, documents=len(docs))
        return bot
