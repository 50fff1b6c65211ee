from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatharbor.logging import get_correlation_id

MAX_MESSAGE_LENGTH = 5000
MAX_DOCUMENT_LENGTH = 200_000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class CamelModel(BaseModel):
    """Request bodies accept the camelCase field names the widget sends."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# auth ------------------------------------------------------------------------


class RegisterRequest(CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    name: str = Field(..., max_length=100)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str


class AuthResponse(BaseModel):
    token: str
    user: UserResponse


# bots ------------------------------------------------------------------------


class DocumentUpload(CamelModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., max_length=MAX_DOCUMENT_LENGTH)


class BotCreateRequest(CamelModel):
    name: str = Field(..., max_length=200)
    description: str = Field("", max_length=2000)
    model_name: Optional[str] = Field(None, alias="modelName", max_length=200)
    system_prompt: Optional[str] = Field(None, alias="systemPrompt", max_length=10_000)
    greeting_message: Optional[str] = Field(None, alias="greetingMessage", max_length=1000)
    training_text: Optional[str] = Field(None, alias="trainingText", max_length=MAX_DOCUMENT_LENGTH)
    documents: List[DocumentUpload] = Field(default_factory=list)


class DocumentUploadRequest(CamelModel):
    documents: List[DocumentUpload] = Field(..., min_length=1)


class DocumentSummary(BaseModel):
    filename: str
    size: int
    uploadedAt: datetime


class BotResponse(BaseModel):
    id: str
    name: str
    description: str
    modelName: Optional[str]
    systemPrompt: str
    greetingMessage: str
    embedCode: str
    isActive: bool
    documents: List[DocumentSummary]
    createdAt: datetime


# chat ------------------------------------------------------------------------


class ChatTurnRequest(CamelModel):
    message: str
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=128)

    @field_validator("message")
    @classmethod
    def _trim_message(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("message is required")
        if len(trimmed) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"message must be at most {MAX_MESSAGE_LENGTH} characters")
        return trimmed

    @field_validator("session_id")
    @classmethod
    def _blank_session(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ChatTurnResponse(BaseModel):
    response: str
    sessionId: str


class MessageResponse(BaseModel):
    role: str
    content: str
    timestamp: datetime


class ConversationResponse(BaseModel):
    sessionId: str
    messages: List[MessageResponse]
    startedAt: datetime
    lastUpdatedAt: datetime


class ConversationListResponse(BaseModel):
    conversations: List[ConversationResponse]


class DeleteResponse(BaseModel):
    deleted: bool
