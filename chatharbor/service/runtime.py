from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatharbor.config import Settings, get_settings, reset_settings_cache
from chatharbor.logging import get_logger
from chatharbor.service.accounts import AccountService
from chatharbor.service.admission import (
    AdmissionController,
    MemoryWindowStore,
    RedisWindowStore,
)
from chatharbor.service.bots import BotService
from chatharbor.service.identity import IdentityVerifier, TokenIssuer
from chatharbor.service.ledger import SessionLedger
from chatharbor.service.llm import ChatModel, HttpChatModel, StubChatModel
from chatharbor.storage.memory import MemoryStore
from chatharbor.storage.postgres import PostgresStore
from chatharbor.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Construction fails with ``ServerMisconfigured`` when no signing secret is
    configured, so an application that cannot verify credentials never
    starts serving.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Credentials first: a missing secret aborts before any connection is opened
        self.issuer = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            ttl_seconds=self.settings.access_token_ttl_minutes * 60,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._connect_cache()
        window_store = (
            RedisWindowStore(self.cache) if self.cache else MemoryWindowStore()
        )
        self.admission = AdmissionController(
            window_store, enforced=self.settings.enforce_admission
        )

        self.accounts = AccountService(self.store, self.issuer)
        self.verifier = IdentityVerifier(
            self.settings.jwt_secret,
            self.accounts.find_principal,
            issuer=self.settings.jwt_issuer,
            leeway_seconds=self.settings.clock_skew_seconds,
        )
        self.ledger = SessionLedger(self.store)
        self.bots = BotService(self.store, default_model=self.settings.llm_default_model)
        self.chat_model = self._build_chat_model()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            admission_enforced=self.admission.enforced,
            chat_model=type(self.chat_model).__name__,
        )

    def _connect_cache(self):
        cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                cache = None

        if cache:
            return cache
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; rate windows are per-process only.",
            mode=fallback_mode,
        )
        return None

    def _build_chat_model(self) -> ChatModel:
        if self.settings.test_mode:
            return StubChatModel()
        if not self.settings.llm_api_key:
            logger.warning(
                "chat_model_stub_fallback",
                message="LLM_API_KEY not set; bots reply with canned stub output.",
            )
            return StubChatModel()
        return HttpChatModel(
            self.settings.llm_base_url,
            self.settings.llm_api_key,
            timeout_seconds=self.settings.llm_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self.chat_model.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            # only the sync test client can be closed without an event loop
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
        runtime = Runtime(settings)
        return runtime
