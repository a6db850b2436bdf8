from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import LoginOrchestrator
from gatehouse.service.cleanup import AccountCleanup
from gatehouse.service.credentials import CredentialVerifier
from gatehouse.service.events import EventDispatcher, UserLoggedIn, log_user_logged_in
from gatehouse.service.identity import IdentityLinker
from gatehouse.service.lockout import LockoutPolicy
from gatehouse.service.messages import MessageCatalog
from gatehouse.service.oauth import OAuthProviderFlow
from gatehouse.service.second_factor import ReplayDenylist, SecondFactorChallenges
from gatehouse.service.session import SessionStore
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc
                self.cache = None
        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions and the second-factor replay denylist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.sessions = SessionStore(self.cache, ttl_minutes=self.settings.session_ttl_minutes)
        self.credentials = CredentialVerifier(self.store)
        self.lockout = LockoutPolicy(self.store, self.settings.max_failed_logins)
        self.denylist = ReplayDenylist(
            self.cache, ttl_seconds=self.settings.second_factor_replay_ttl_seconds
        )
        self.challenges = SecondFactorChallenges(
            self.store,
            self.denylist,
            interval=self.settings.totp_interval_seconds,
            digits=self.settings.totp_digits,
            window=self.settings.totp_window,
            issuer=self.settings.totp_issuer,
        )
        self.linker = IdentityLinker(self.store)
        self.cleanup = AccountCleanup(self.store)
        self.oauth = OAuthProviderFlow(self.settings, self.cache)
        self.events = EventDispatcher()
        self.events.subscribe(UserLoggedIn, log_user_logged_in)
        self.messages = MessageCatalog()
        self.auth = LoginOrchestrator(
            settings=self.settings,
            store=self.store,
            sessions=self.sessions,
            credentials=self.credentials,
            lockout=self.lockout,
            challenges=self.challenges,
            linker=self.linker,
            cleanup=self.cleanup,
            oauth=self.oauth,
            events=self.events,
            messages=self.messages,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            hosted_mode=self.settings.hosted_mode,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    asyncio.run(runtime.cache.close())
            except (RedisError, OSError, RuntimeError) as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
