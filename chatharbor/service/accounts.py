from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from chatharbor.logging import get_logger
from chatharbor.service.errors import (
    AuthenticationError,
    ConflictError,
    PersistenceError,
    ValidationError,
)
from chatharbor.service.identity import TokenIssuer
from chatharbor.storage.errors import ConstraintViolation, StorageError
from chatharbor.storage.models import Principal, User

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserStore(Protocol):
    def create_user(
        self, email: str, display_name: str, password_hash: Optional[str] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass
class IssuedCredential:
    token: str
    user: User


def normalize_email(email: str) -> str:
    cleaned = (email or "").strip().lower()
    if not _EMAIL_RE.match(cleaned):
        raise ValidationError("Invalid email address", detail={"field": "email"})
    return cleaned


def validate_password(password: str) -> None:
    if len(password or "") < 8:
        raise ValidationError(
            "Password must be at least 8 characters long", detail={"field": "password"}
        )
    if not (
        re.search(r"[A-Z]", password)
        and re.search(r"[a-z]", password)
        and re.search(r"[0-9]", password)
    ):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number",
            detail={"field": "password"},
        )


class AccountService:
    """Registration, login and principal lookup for bot owners."""

    def __init__(self, store: UserStore, issuer: TokenIssuer) -> None:
        self.store = store
        self.issuer = issuer
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def register(self, email: str, password: str, display_name: str) -> IssuedCredential:
        email = normalize_email(email)
        display_name = (display_name or "").strip()
        if len(display_name) < 2:
            raise ValidationError(
                "Name must be at least 2 characters long", detail={"field": "name"}
            )
        validate_password(password)
        try:
            user = self.store.create_user(
                email, display_name, password_hash=self._pwd_hasher.hash(password)
            )
        except ConstraintViolation:
            raise ConflictError("User already exists", detail={"field": "email"})
        except StorageError as exc:
            raise PersistenceError("failed to create user") from exc
        self.logger.info("user_registered", user_id=user.id)
        return IssuedCredential(token=self.issuer.issue(user.id), user=user)

    def login(self, email: str, password: str) -> IssuedCredential:
        email = normalize_email(email)
        try:
            user = self.store.get_user_by_email(email)
        except StorageError as exc:
            raise PersistenceError("failed to load user") from exc
        if not user or not user.password_hash:
            self.logger.warning("login_unknown_user")
            raise AuthenticationError("Invalid credentials")
        if not self.verify_password(user, (password or "").strip()):
            raise AuthenticationError("Invalid credentials")
        self.logger.info("user_logged_in", user_id=user.id)
        return IssuedCredential(token=self.issuer.issue(user.id), user=user)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash or "", password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    def find_principal(self, user_id: str) -> Optional[Principal]:
        """Subject resolver handed to the identity verifier."""
        try:
            user = self.store.get_user(user_id)
        except StorageError as exc:
            raise PersistenceError("failed to load user") from exc
        return user.to_principal() if user else None
