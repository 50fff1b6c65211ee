from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from chatharbor.api.pipeline import guarded
from chatharbor.api.schemas import (
    AuthResponse,
    BotCreateRequest,
    BotResponse,
    ChatTurnRequest,
    ChatTurnResponse,
    ConversationListResponse,
    ConversationResponse,
    DeleteResponse,
    DocumentSummary,
    DocumentUploadRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    UserResponse,
)
from chatharbor.logging import get_logger
from chatharbor.service.accounts import IssuedCredential
from chatharbor.service.admission import PolicyName
from chatharbor.service.errors import ValidationError
from chatharbor.service.llm import build_system_instruction
from chatharbor.service.runtime import get_runtime
from chatharbor.storage.models import Bot, ChatMessage, ConversationSession, Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _auth_response(issued: IssuedCredential) -> AuthResponse:
    user = issued.user
    return AuthResponse(
        token=issued.token,
        user=UserResponse(id=user.id, email=user.email, name=user.display_name),
    )


def _bot_response(bot: Bot) -> BotResponse:
    return BotResponse(
        id=bot.id,
        name=bot.name,
        description=bot.description,
        modelName=bot.model_name,
        systemPrompt=bot.system_prompt,
        greetingMessage=bot.greeting_message,
        embedCode=bot.embed_code,
        isActive=bot.is_active,
        documents=[
            DocumentSummary(
                filename=doc.filename, size=len(doc.content), uploadedAt=doc.uploaded_at
            )
            for doc in bot.documents
        ],
        createdAt=bot.created_at,
    )


def _conversation_response(record: ConversationSession) -> ConversationResponse:
    return ConversationResponse(
        sessionId=record.session_id,
        messages=[
            MessageResponse(role=m.role, content=m.content, timestamp=m.timestamp)
            for m in record.messages
        ],
        startedAt=record.started_at,
        lastUpdatedAt=record.last_updated_at,
    )


# auth ------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    _: Optional[Principal] = Depends(
        guarded(PolicyName.CREDENTIAL_ISSUANCE, authenticated=False)
    ),
):
    runtime = get_runtime()
    issued = runtime.accounts.register(body.email, body.password, body.name)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    _: Optional[Principal] = Depends(
        guarded(PolicyName.CREDENTIAL_ISSUANCE, authenticated=False)
    ),
):
    runtime = get_runtime()
    issued = runtime.accounts.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(issued))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(guarded(PolicyName.GENERAL))):
    return Envelope(
        status="ok",
        data=UserResponse(
            id=principal.id, email=principal.email, name=principal.display_name
        ),
    )


# bots ------------------------------------------------------------------------


@router.post("/bots", response_model=Envelope, status_code=201, tags=["bots"])
async def create_bot(
    body: BotCreateRequest,
    principal: Principal = Depends(
        guarded(PolicyName.BOT_CREATION, PolicyName.UPLOAD)
    ),
):
    runtime = get_runtime()
    bot = runtime.bots.create_bot(
        principal.id,
        body.name,
        description=body.description,
        model_name=body.model_name,
        system_prompt=body.system_prompt,
        greeting_message=body.greeting_message,
        training_text=body.training_text,
        documents=[(doc.filename, doc.content) for doc in body.documents],
    )
    return Envelope(status="ok", data=_bot_response(bot))


@router.get("/bots", response_model=Envelope, tags=["bots"])
async def list_bots(principal: Principal = Depends(guarded(PolicyName.GENERAL))):
    runtime = get_runtime()
    bots = runtime.bots.list_bots(principal.id)
    return Envelope(status="ok", data={"bots": [_bot_response(b) for b in bots]})


@router.post("/bots/{bot_id}/documents", response_model=Envelope, tags=["bots"])
async def upload_documents(
    bot_id: str,
    body: DocumentUploadRequest,
    principal: Principal = Depends(guarded(PolicyName.UPLOAD)),
):
    runtime = get_runtime()
    bot = runtime.bots.add_documents(
        bot_id, principal.id, [(doc.filename, doc.content) for doc in body.documents]
    )
    return Envelope(status="ok", data=_bot_response(bot))


# chat ------------------------------------------------------------------------


async def _run_chat_turn(
    bot: Bot, body: ChatTurnRequest, session_id: str, user_id: Optional[str]
) -> ChatTurnResponse:
    runtime = get_runtime()
    if len(body.message) > runtime.settings.max_message_length:
        raise ValidationError(
            f"message must be at most {runtime.settings.max_message_length} characters",
            detail={"field": "message"},
        )
    asked_at = datetime.utcnow()
    reply = await runtime.chat_model.complete(
        bot.model_name or runtime.settings.llm_default_model,
        build_system_instruction(bot),
        body.message,
    )
    record = runtime.ledger.append_turn(
        bot.id,
        session_id,
        [
            ChatMessage(role="user", content=body.message, timestamp=asked_at),
            ChatMessage(role="assistant", content=reply, timestamp=datetime.utcnow()),
        ],
        user_id=user_id,
    )
    return ChatTurnResponse(response=reply, sessionId=record.session_id)


@router.post("/bots/embed/{embed_code}/chat", response_model=Envelope, tags=["chat"])
async def embed_chat(
    embed_code: str,
    body: ChatTurnRequest,
    _: Optional[Principal] = Depends(
        guarded(PolicyName.CHAT_TURN, authenticated=False)
    ),
):
    runtime = get_runtime()
    bot = runtime.bots.get_embedded_bot(embed_code)
    session_id = body.session_id or f"embed_session_{uuid.uuid4().hex}"
    result = await _run_chat_turn(bot, body, session_id, None)
    return Envelope(status="ok", data=result)


@router.post("/bots/{bot_id}/chat", response_model=Envelope, tags=["chat"])
async def chat(
    bot_id: str,
    body: ChatTurnRequest,
    principal: Principal = Depends(guarded(PolicyName.CHAT_TURN)),
):
    runtime = get_runtime()
    bot = runtime.bots.get_owned_bot(bot_id, principal.id)
    session_id = body.session_id or f"session_{uuid.uuid4().hex}"
    result = await _run_chat_turn(bot, body, session_id, principal.id)
    return Envelope(status="ok", data=result)


# conversations ---------------------------------------------------------------


@router.get("/bots/{bot_id}/conversations", response_model=Envelope, tags=["chat"])
async def list_conversations(
    bot_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(guarded(PolicyName.GENERAL)),
):
    runtime = get_runtime()
    runtime.bots.get_owned_bot(bot_id, principal.id)
    records = runtime.ledger.list_sessions(bot_id, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=ConversationListResponse(
            conversations=[_conversation_response(r) for r in records]
        ),
    )


@router.delete(
    "/bots/{bot_id}/conversations/{session_id}", response_model=Envelope, tags=["chat"]
)
async def delete_conversation(
    bot_id: str,
    session_id: str,
    principal: Principal = Depends(guarded(PolicyName.GENERAL)),
):
    runtime = get_runtime()
    runtime.bots.get_owned_bot(bot_id, principal.id)
    deleted = runtime.ledger.delete_session(bot_id, session_id)
    return Envelope(status="ok", data=DeleteResponse(deleted=deleted))
