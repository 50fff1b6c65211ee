from __future__ import annotations

import base64
import hashlib
import hmac
import inspect
import json
import time
from typing import Any, Awaitable, Callable, Optional, Union

from chatharbor.logging import get_logger
from chatharbor.service.errors import (
    CredentialNotYetValid,
    ExpiredCredential,
    InvalidCredential,
    MissingCredential,
    ServerMisconfigured,
    UnknownPrincipal,
)
from chatharbor.storage.models import Principal

logger = get_logger(__name__)

PrincipalLookup = Callable[[str], Union[Optional[Principal], Awaitable[Optional[Principal]]]]

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def _require_secret(secret: Optional[str]) -> str:
    if not secret or not secret.strip():
        raise ServerMisconfigured("JWT_SECRET must be set to sign or verify credentials")
    return secret


class TokenIssuer:
    """Mints HS256 access credentials for authenticated users."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str = "chatharbor",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = _require_secret(secret)
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(
        self,
        subject_id: str,
        *,
        ttl_seconds: Optional[int] = None,
        not_before: Optional[float] = None,
    ) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "sub": subject_id,
            "token_type": "access",
            "iat": now,
            "exp": now + (self.ttl_seconds if ttl_seconds is None else ttl_seconds),
        }
        if not_before is not None:
            payload["nbf"] = int(not_before)
        return self.encode(payload)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(self._secret, signing_input)}"


class IdentityVerifier:
    """Turns an ``Authorization`` header into a resolved Principal.

    Checks run in a fixed order: structure, signature, issuer, expiry, then
    not-before. Each failure raises a distinct ``AuthenticationError``
    subclass; callers are expected to collapse them into a single
    unauthorized response.
    """

    def __init__(
        self,
        secret: Optional[str],
        find_principal: PrincipalLookup,
        *,
        issuer: str = "chatharbor",
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = _require_secret(secret)
        self._find_principal = find_principal
        self.issuer = issuer
        self.leeway_seconds = max(0, leeway_seconds)
        self._clock = clock

    @staticmethod
    def extract_token(raw_header: Optional[str]) -> str:
        if not raw_header:
            raise MissingCredential("authorization header missing")
        scheme, _, token = raw_header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise MissingCredential("bearer token missing")
        return token.strip()

    def decode(self, token: str) -> dict[str, Any]:
        """Validate the token and return its claims without resolving the subject."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidCredential("malformed token")

        # Validate header algorithm to prevent algorithm confusion attacks
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidCredential("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidCredential("unsupported token algorithm")

        expected_sig = _sign(self._secret, f"{header_b64}.{payload_b64}")
        # compare bytes; headers arrive as latin-1 and may hold non-ASCII text
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise InvalidCredential("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidCredential("malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidCredential("malformed token payload")

        if payload.get("iss") != self.issuer:
            raise InvalidCredential("issuer mismatch")
        if payload.get("token_type", "access") != "access":
            raise InvalidCredential("wrong token type")

        now = self._clock()
        exp = _numeric_claim(payload, "exp")
        if exp is None:
            raise InvalidCredential("exp claim missing")
        if now > exp + self.leeway_seconds:
            raise ExpiredCredential("token expired")
        if "nbf" in payload:
            nbf = _numeric_claim(payload, "nbf")
            if nbf is None:
                raise InvalidCredential("nbf claim malformed")
            if now < nbf - self.leeway_seconds:
                raise CredentialNotYetValid("token not yet valid")

        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise InvalidCredential("sub claim missing")
        return payload

    async def verify(self, raw_header: Optional[str]) -> Principal:
        token = self.extract_token(raw_header)
        claims = self.decode(token)
        found = self._find_principal(claims["sub"])
        if inspect.isawaitable(found):
            found = await found
        if found is None:
            raise UnknownPrincipal("subject not found")
        return found


def _numeric_claim(payload: dict[str, Any], name: str) -> Optional[float]:
    value = payload.get(name)
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
