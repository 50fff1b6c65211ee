"""Request admission in front of route handlers.

Every guarded route runs identity verification (when the route requires
it) and then its admission policies, in that order, before the handler is
invoked. Unauthenticated callers therefore never consume a rate budget.
"""

from __future__ import annotations

import math
from typing import AsyncIterator, Optional

from fastapi import Header, Request, Response

from chatharbor.logging import get_logger, mask_scope_key
from chatharbor.service.admission import PolicyName, RateDecision
from chatharbor.service.errors import AuthenticationError, RateLimitedError, ServiceError
from chatharbor.service.runtime import get_runtime
from chatharbor.storage.models import Principal

logger = get_logger(__name__)


def client_ip(request: Request) -> str:
    """Scope key for admission: the caller's address."""
    runtime = get_runtime()
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def _seconds(ms: int) -> int:
    return max(0, math.ceil(ms / 1000))


def rate_limit_headers(decision: RateDecision) -> dict[str, str]:
    headers = {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(max(0, decision.remaining)),
        "RateLimit-Reset": str(_seconds(decision.reset_ms)),
    }
    if not decision.allowed and decision.retry_after_ms is not None:
        headers["Retry-After"] = str(max(1, _seconds(decision.retry_after_ms)))
    return headers


async def authenticate(request: Request, authorization: Optional[str]) -> Principal:
    """Resolve the caller or raise a uniform unauthorized error."""
    runtime = get_runtime()
    try:
        return await runtime.verifier.verify(authorization)
    except AuthenticationError as exc:
        logger.warning(
            "authentication_failed",
            path=request.url.path,
            reason=exc.reason,
            detail=exc.message,
        )
        # one outward shape for every failure kind
        raise AuthenticationError("Unauthorized") from exc


async def admit(
    request: Request, response: Response, policies: tuple[PolicyName, ...]
) -> Optional[RateDecision]:
    """Run each policy in order; the tightest admitted decision sets the headers."""
    runtime = get_runtime()
    scope_key = client_ip(request)
    reported: Optional[RateDecision] = None
    for name in policies:
        decision = await runtime.admission.check(name, scope_key)
        if not decision.allowed:
            policy = runtime.admission.policy(name)
            logger.info(
                "request_rate_limited",
                path=request.url.path,
                policy=policy.name.value,
                scope_key=mask_scope_key(scope_key),
            )
            raise RateLimitedError(
                policy.message,
                retry_after_ms=decision.retry_after_ms or 0,
                headers=rate_limit_headers(decision),
            )
        if decision.bypassed:
            continue
        if reported is None or decision.remaining < reported.remaining:
            reported = decision
    if reported is not None:
        for key, value in rate_limit_headers(reported).items():
            response.headers[key] = value
    return reported


def guarded(*policies: PolicyName, authenticated: bool = True):
    """Build the dependency that admits a request to a route.

    The dependency yields the resolved Principal (or None on public routes).
    Policies that only charge failures are settled after the handler.
    """

    async def dependency(
        request: Request,
        response: Response,
        authorization: Optional[str] = Header(None),
    ) -> AsyncIterator[Optional[Principal]]:
        principal = await authenticate(request, authorization) if authenticated else None
        reported = await admit(request, response, policies)

        runtime = get_runtime()
        settle = [
            name for name in policies if runtime.admission.policy(name).skip_successful
        ]
        scope_key = client_ip(request)
        try:
            yield principal
        except Exception as exc:
            # error responses are rendered fresh; carry the budget headers over
            if isinstance(exc, ServiceError) and reported is not None:
                for key, value in rate_limit_headers(reported).items():
                    exc.headers.setdefault(key, value)
            for name in settle:
                await runtime.admission.settle(name, scope_key, succeeded=False)
            raise
        else:
            for name in settle:
                await runtime.admission.settle(name, scope_key, succeeded=True)

    return dependency
