from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple, Union

from chatharbor.logging import get_logger, mask_scope_key

logger = get_logger(__name__)


class PolicyName(str, Enum):
    CREDENTIAL_ISSUANCE = "credential-issuance"
    BOT_CREATION = "bot-creation"
    CHAT_TURN = "chat-turn"
    GENERAL = "general"
    UPLOAD = "upload"


@dataclass(frozen=True)
class Policy:
    """Fixed-window budget for one class of routes.

    ``bypassable`` policies are skipped when the controller is not enforcing
    (development and test deployments). ``skip_successful`` policies only
    charge requests whose handler failed.
    """

    name: PolicyName
    window_ms: int
    limit: int
    message: str
    bypassable: bool = False
    skip_successful: bool = False


POLICIES: Dict[PolicyName, Policy] = {
    PolicyName.CREDENTIAL_ISSUANCE: Policy(
        PolicyName.CREDENTIAL_ISSUANCE,
        window_ms=15 * 60 * 1000,
        limit=1000,
        message="Too many authentication attempts from this IP, please try again after 15 minutes",
        bypassable=True,
        skip_successful=True,
    ),
    PolicyName.BOT_CREATION: Policy(
        PolicyName.BOT_CREATION,
        window_ms=60 * 60 * 1000,
        limit=100,
        message="Too many bots created from this IP, please try again after an hour",
        bypassable=True,
    ),
    PolicyName.CHAT_TURN: Policy(
        PolicyName.CHAT_TURN,
        window_ms=60 * 1000,
        limit=100,
        message="Too many messages sent, please slow down",
    ),
    PolicyName.GENERAL: Policy(
        PolicyName.GENERAL,
        window_ms=15 * 60 * 1000,
        limit=100,
        message="Too many requests from this IP, please try again later",
    ),
    PolicyName.UPLOAD: Policy(
        PolicyName.UPLOAD,
        window_ms=60 * 60 * 1000,
        limit=200,
        message="Too many file uploads, please try again after an hour",
        bypassable=True,
    ),
}


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_ms: int
    retry_after_ms: Optional[int] = None
    bypassed: bool = False


class WindowStore(Protocol):
    """Keyed fixed-window counter. Both calls return ``(count, reset_in_ms)``."""

    async def increment(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]: ...

    async def peek(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]: ...


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class MemoryWindowStore:
    """Process-local window store guarded by a lock."""

    def __init__(
        self,
        *,
        clock: Callable[[], int] = _monotonic_ms,
        max_windows: int = 10_000,
    ) -> None:
        self._clock = clock
        self._max_windows = max_windows
        # (policy, scope_key) -> [window_start_ms, count, window_ms]
        self._windows: Dict[Tuple[str, str], list] = {}
        self._lock = threading.Lock()

    def _current(self, key: Tuple[str, str], now: int, window_ms: int) -> Optional[list]:
        window = self._windows.get(key)
        if window is None or now - window[0] >= window_ms:
            return None
        return window

    def _make_room(self, now: int) -> None:
        """Keep the table under ``max_windows``.

        Expired windows go first. When every window is still live the oldest
        is evicted, which restarts the count for that scope.
        """
        expired = [k for k, (start, _, dur) in self._windows.items() if now - start >= dur]
        for key in expired:
            del self._windows[key]
        while self._windows and len(self._windows) >= self._max_windows:
            oldest = min(self._windows, key=lambda k: self._windows[k][0])
            del self._windows[oldest]
            logger.warning("admission_window_evicted", policy=oldest[0])

    async def increment(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]:
        now = self._clock()
        key = (policy, scope_key)
        with self._lock:
            window = self._current(key, now, window_ms)
            if window is None:
                if len(self._windows) >= self._max_windows:
                    self._make_room(now)
                window = [now, 0, window_ms]
                self._windows[key] = window
            window[1] += 1
            return window[1], window[0] + window_ms - now

    async def peek(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            window = self._current((policy, scope_key), now, window_ms)
            if window is None:
                return 0, window_ms
            return window[1], window[0] + window_ms - now

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


class RedisWindowStore:
    """Window store shared across processes through Redis."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def increment(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]:
        return await self.cache.incr_window(policy, scope_key, window_ms)

    async def peek(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]:
        count, ttl = await self.cache.peek_window(policy, scope_key)
        return count, ttl if count else window_ms


PolicyRef = Union[Policy, PolicyName, str]


class AdmissionController:
    """Allow or deny a request against its policy's fixed-window budget."""

    def __init__(
        self,
        store: WindowStore,
        *,
        enforced: bool,
        policies: Optional[Dict[PolicyName, Policy]] = None,
    ) -> None:
        self.store = store
        self.enforced = enforced
        self.policies = dict(policies or POLICIES)

    def policy(self, ref: PolicyRef) -> Policy:
        if isinstance(ref, Policy):
            return ref
        return self.policies[PolicyName(ref)]

    def _skipped(self, policy: Policy) -> bool:
        return policy.bypassable and not self.enforced

    async def check(self, ref: PolicyRef, scope_key: str) -> RateDecision:
        policy = self.policy(ref)
        if self._skipped(policy):
            return RateDecision(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit,
                reset_ms=policy.window_ms,
                bypassed=True,
            )

        name = policy.name.value
        if policy.skip_successful:
            count, reset_ms = await self.store.peek(name, scope_key, policy.window_ms)
            if count < policy.limit:
                return RateDecision(
                    allowed=True,
                    limit=policy.limit,
                    remaining=max(0, policy.limit - count - 1),
                    reset_ms=self._clamp(reset_ms, policy),
                )
            # exhausted; the denied attempt still counts
            count, reset_ms = await self.store.increment(
                name, scope_key, policy.window_ms
            )
        else:
            count, reset_ms = await self.store.increment(
                name, scope_key, policy.window_ms
            )

        reset_ms = self._clamp(reset_ms, policy)
        if count > policy.limit:
            logger.warning(
                "admission_denied",
                policy=name,
                scope_key=mask_scope_key(scope_key),
                count=count,
                limit=policy.limit,
                retry_after_ms=reset_ms,
            )
            return RateDecision(
                allowed=False,
                limit=policy.limit,
                remaining=0,
                reset_ms=reset_ms,
                retry_after_ms=reset_ms,
            )
        return RateDecision(
            allowed=True,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_ms=reset_ms,
        )

    async def settle(self, ref: PolicyRef, scope_key: str, succeeded: bool) -> None:
        """Charge a failed request against a skip-successful policy."""
        policy = self.policy(ref)
        if not policy.skip_successful or succeeded or self._skipped(policy):
            return
        await self.store.increment(policy.name.value, scope_key, policy.window_ms)

    @staticmethod
    def _clamp(reset_ms: int, policy: Policy) -> int:
        return max(0, min(int(reset_ms), policy.window_ms))
