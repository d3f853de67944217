from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from trialguard.config import RateLimitBackend, Settings, get_settings, reset_settings_cache
from trialguard.logging import get_logger
from trialguard.service.account_status import AccountStatusGate
from trialguard.service.audit import AuditLogSink
from trialguard.service.mfa import MfaPolicyGate
from trialguard.service.middleware import AuthMiddleware
from trialguard.service.post_confirmation import PostConfirmationProvisioner
from trialguard.service.pre_auth import PreAuthenticationValidator
from trialguard.service.pre_signup import PreSignupValidator
from trialguard.service.rate_limit import RateLimiter
from trialguard.service.sessions import SessionGuard
from trialguard.service.tokens import TokenIssuer, TokenRevoker, TokenValidator
from trialguard.storage.errors import StoreUnavailable
from trialguard.storage.memory import MemoryStore
from trialguard.storage.postgres import PostgresStore
from trialguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``postgresql://app:pw@db/x`` becomes ``postgresql://app:***@db/x`` in log output."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.netloc.rpartition("@")[2]
    except ValueError:
        return "***url_parse_error***"
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


class Runtime:
    """Composes the store, optional Redis backend and every gate from one Settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(f"{store_type} store unavailable: {exc}") from exc
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._init_cache()

        self.audit = AuditLogSink(self.store)
        self.rate_limiter = RateLimiter(self.store, self.cache, self.settings)
        self.status_gate = AccountStatusGate(self.store, self.audit, self.settings)
        self.mfa_gate = MfaPolicyGate(self.store)
        self.pre_auth = PreAuthenticationValidator(
            self.store,
            self.audit,
            self.status_gate,
            self.rate_limiter,
            self.mfa_gate,
            self.settings,
        )
        self.pre_signup = PreSignupValidator(self.store, self.audit, self.settings)
        self.post_confirmation = PostConfirmationProvisioner(self.store, self.audit)
        self.token_validator = TokenValidator(self.store, self.cache, self.settings)
        self.token_issuer = TokenIssuer(self.store, self.settings)
        self.token_revoker = TokenRevoker(self.store, self.cache, self.audit, self.settings)
        self.session_guard = SessionGuard(self.store, self.settings)
        self.middleware = AuthMiddleware(
            self.token_validator, self.rate_limiter, self.session_guard, self.settings
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
        )

    def _init_cache(self) -> Optional[RedisCache]:
        if self.settings.rate_limit_backend != RateLimitBackend.REDIS:
            return None
        if not self.settings.redis_url:
            logger.warning("redis_backend_without_url")
            return None
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            # Rate limits and the blacklist fall back to the relational store
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return None
        return cache


runtime: Runtime | None = None
_runtime_lock = threading.Lock()

_loop: asyncio.AbstractEventLoop | None = None
_loop_lock = threading.Lock()


def run_sync(coro):
    """Run a coroutine on the process-wide event loop.

    The Redis client pool binds to the loop it first runs on, so warm
    invocations must reuse that loop instead of creating one per call.
    """
    global _loop
    with _loop_lock:
        if _loop is None or _loop.is_closed():
            _loop = asyncio.new_event_loop()
        return _loop.run_until_complete(coro)


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                run_sync(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("redis_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
