from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from trustcore.config import Settings, get_settings
from trustcore.logging import get_logger, sanitize_error_message
from trustcore.service.account import AccountService
from trustcore.service.auth import PasswordAuthenticator
from trustcore.service.core import TrustCore
from trustcore.service.email import EmailService
from trustcore.service.jobs import JobScheduler, LocalJobScheduler
from trustcore.service.passwords import PasswordService
from trustcore.service.rate_limit import RateLimiter
from trustcore.service.revocation import RevocationCache
from trustcore.service.sessions import SessionRegistry
from trustcore.service.tokens import TokenIssuer
from trustcore.service.two_factor import TwoFactorManager
from trustcore.storage.base import AuthStore, CacheBackend
from trustcore.storage.memory import MemoryStore
from trustcore.storage.memory_cache import MemoryCache
from trustcore.storage.models import utcnow
from trustcore.storage.postgres import PostgresStore
from trustcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> AuthStore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: AuthStore = MemoryStore(
                fs_root=settings.shared_fs_root, mfa_encryption_key=settings.mfa_secret_key
            )
        else:
            store = PostgresStore(
                settings.database_url,
                fs_root=settings.shared_fs_root,
                pool_timeout=settings.database_pool_timeout,
                mfa_encryption_key=settings.mfa_secret_key,
            )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def build_cache(settings: Settings) -> CacheBackend:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url, socket_timeout=settings.cache_socket_timeout)
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for revocation and rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=sanitize_error_message(str(redis_error)) if redis_error else "redis_url_missing",
        mode=mode,
    )
    return MemoryCache()


class Runtime:
    """Process-wide service graph, built once at startup and injected.

    Store and cache handles are shared by every request. Pass prebuilt
    ``store``/``cache`` (or a fixed ``clock``) to wire tests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache: Optional[CacheBackend] = None,
        jobs: Optional[JobScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        self.cache = cache if cache is not None else build_cache(self.settings)
        self.jobs = jobs if jobs is not None else LocalJobScheduler(clock=clock)
        self._email_service: Optional[EmailService] = None
        self._email_lock = threading.Lock()

        self.passwords = PasswordService()
        self.revocations = RevocationCache(
            self.cache, clock=clock, probe_timeout=self.settings.cache_socket_timeout
        )
        self.limiter = RateLimiter(self.cache, self.settings, clock=clock)
        self.tokens = TokenIssuer(self.store, self.revocations, self.settings, clock=clock)
        self.sessions = SessionRegistry(self.store, self.revocations, self.settings, clock=clock)
        self.two_factor = TwoFactorManager(
            self.store,
            self.sessions,
            self.limiter,
            self.passwords,
            self.settings,
            clock=clock,
        )
        self.authenticator = PasswordAuthenticator(
            self.store,
            self.sessions,
            self.two_factor,
            self.passwords,
            self.settings,
            clock=clock,
        )
        self.accounts = AccountService(
            self.store,
            self.tokens,
            self.sessions,
            self.limiter,
            self.passwords,
            self.jobs,
            self.email,
            self.settings,
            clock=clock,
        )
        self.accounts.register_jobs()
        self.core = TrustCore(
            self.authenticator, self.two_factor, self.sessions, self.tokens, self.limiter
        )
        logger.info("runtime_init_completed", cache_backend=type(self.cache).__name__)

    def email(self) -> EmailService:
        if self._email_service is None:
            with self._email_lock:
                if self._email_service is None:
                    s = self.settings
                    self._email_service = EmailService(
                        smtp_host=s.smtp_host,
                        smtp_port=s.smtp_port,
                        smtp_user=s.smtp_user,
                        smtp_password=s.smtp_password,
                        smtp_use_tls=s.smtp_use_tls,
                        from_email=s.email_from_address,
                        from_name=s.email_from_name,
                        base_url=s.app_base_url,
                    )
        return self._email_service

    async def close(self) -> None:
        await self.jobs.close()
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
        logger.info("runtime_closed")
