"""Unit tests for credential issuance and verification.

Tests for:
- Constructor refusal without a signing secret
- Header parsing
- Signature, issuer, expiry and not-before checks, in order
- Subject resolution through sync and async lookups
"""

import base64
import json

import pytest

from chatharbor.service.errors import (
    AuthenticationError,
    CredentialNotYetValid,
    ExpiredCredential,
    InvalidCredential,
    MissingCredential,
    ServerMisconfigured,
    ServiceError,
    UnknownPrincipal,
)
from chatharbor.service.identity import IdentityVerifier, TokenIssuer
from chatharbor.storage.models import Principal

SECRET = "unit-test-signing-secret"
NOW = 1_700_000_000.0


class FrozenClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def principals():
    return {"user-1": Principal(id="user-1", email="owner@example.com", display_name="Owner")}


@pytest.fixture
def issuer(clock):
    return TokenIssuer(SECRET, issuer="chatharbor", ttl_seconds=3600, clock=clock)


@pytest.fixture
def verifier(clock, principals):
    return IdentityVerifier(SECRET, principals.get, issuer="chatharbor", clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestConstruction:
    @pytest.mark.parametrize("secret", [None, "", "   "])
    def test_verifier_requires_secret(self, secret):
        with pytest.raises(ServerMisconfigured):
            IdentityVerifier(secret, lambda _id: None)

    @pytest.mark.parametrize("secret", [None, ""])
    def test_issuer_requires_secret(self, secret):
        with pytest.raises(ServerMisconfigured):
            TokenIssuer(secret)

    def test_misconfiguration_is_not_a_service_error(self):
        assert not issubclass(ServerMisconfigured, ServiceError)


class TestHeaderParsing:
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    async def test_missing_credential(self, verifier, header):
        with pytest.raises(MissingCredential) as excinfo:
            await verifier.verify(header)
        assert excinfo.value.reason == "missing_credential"

    async def test_scheme_is_case_insensitive(self, verifier, issuer):
        token = issuer.issue("user-1")
        principal = await verifier.verify(f"bearer {token}")
        assert principal.id == "user-1"


class TestVerification:
    async def test_valid_token_resolves_principal(self, verifier, issuer, principals):
        principal = await verifier.verify(f"Bearer {issuer.issue('user-1')}")
        assert principal == principals["user-1"]

    async def test_wrong_secret_is_invalid(self, verifier, clock):
        forged = TokenIssuer("another-secret", clock=clock).issue("user-1")
        with pytest.raises(InvalidCredential):
            await verifier.verify(f"Bearer {forged}")

    async def test_malformed_token_is_invalid(self, verifier):
        with pytest.raises(InvalidCredential):
            await verifier.verify("Bearer not-a-jwt")

    @pytest.mark.parametrize("signature", ["éé", "\xe9", "ab☃cd"])
    async def test_non_ascii_signature_is_invalid(self, verifier, issuer, signature):
        header, payload, _ = issuer.issue("user-1").split(".")
        with pytest.raises(InvalidCredential) as excinfo:
            await verifier.verify(f"Bearer {header}.{payload}.{signature}")
        assert excinfo.value.message == "signature mismatch"

    async def test_non_ascii_payload_is_invalid(self, verifier, issuer):
        header, _, signature = issuer.issue("user-1").split(".")
        with pytest.raises(InvalidCredential):
            await verifier.verify(f"Bearer {header}.ééé.{signature}")

    async def test_alg_none_is_rejected(self, verifier):
        token = f"{_b64({'alg': 'none'})}.{_b64({'sub': 'user-1', 'exp': NOW + 60})}."
        with pytest.raises(InvalidCredential):
            await verifier.verify(f"Bearer {token}")

    async def test_foreign_issuer_is_invalid(self, verifier, clock):
        other = TokenIssuer(SECRET, issuer="someone-else", clock=clock).issue("user-1")
        with pytest.raises(InvalidCredential):
            await verifier.verify(f"Bearer {other}")

    async def test_missing_exp_is_invalid(self, verifier, issuer):
        token = issuer.encode({"iss": "chatharbor", "sub": "user-1"})
        with pytest.raises(InvalidCredential):
            await verifier.verify(f"Bearer {token}")

    async def test_expired_one_second_ago(self, verifier, issuer):
        token = issuer.issue("user-1", ttl_seconds=-1)
        with pytest.raises(ExpiredCredential) as excinfo:
            await verifier.verify(f"Bearer {token}")
        assert excinfo.value.reason == "expired_credential"

    async def test_exp_equal_to_now_is_still_valid(self, verifier, issuer):
        token = issuer.issue("user-1", ttl_seconds=0)
        principal = await verifier.verify(f"Bearer {token}")
        assert principal.id == "user-1"

    async def test_future_nbf_is_not_yet_valid(self, verifier, issuer):
        token = issuer.issue("user-1", not_before=NOW + 30)
        with pytest.raises(CredentialNotYetValid):
            await verifier.verify(f"Bearer {token}")

    async def test_signature_checked_before_expiry(self, verifier, clock):
        expired_forgery = TokenIssuer("another-secret", clock=clock).issue(
            "user-1", ttl_seconds=-100
        )
        with pytest.raises(InvalidCredential):
            await verifier.verify(f"Bearer {expired_forgery}")

    async def test_leeway_widens_expiry(self, issuer, clock, principals):
        lenient = IdentityVerifier(SECRET, principals.get, leeway_seconds=5, clock=clock)
        token = issuer.issue("user-1", ttl_seconds=-3)
        principal = await lenient.verify(f"Bearer {token}")
        assert principal.id == "user-1"

    async def test_deleted_user_is_unknown_principal(self, verifier, issuer, principals):
        token = issuer.issue("user-1")
        principals.clear()
        with pytest.raises(UnknownPrincipal):
            await verifier.verify(f"Bearer {token}")

    async def test_async_lookup_is_awaited(self, issuer, clock, principals):
        async def lookup(user_id):
            return principals.get(user_id)

        verifier = IdentityVerifier(SECRET, lookup, clock=clock)
        principal = await verifier.verify(f"Bearer {issuer.issue('user-1')}")
        assert principal.id == "user-1"

    async def test_every_failure_is_unauthorized(self, verifier):
        with pytest.raises(AuthenticationError) as excinfo:
            await verifier.verify("Bearer a.b.c")
        assert excinfo.value.status_code == 401
        assert excinfo.value.error_code == "unauthorized"


class TestIssuer:
    def test_claims(self, issuer, verifier):
        claims = verifier.decode(issuer.issue("user-1"))
        assert claims["sub"] == "user-1"
        assert claims["iss"] == "chatharbor"
        assert claims["iat"] == int(NOW)
        assert claims["exp"] == int(NOW) + 3600
        assert claims["token_type"] == "access"
        assert "nbf" not in claims
