from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from iamauth.config import Settings, get_settings, reset_settings_cache
from iamauth.logging import get_logger
from iamauth.service.auth import AuthOrchestrator
from iamauth.service.lockout import LockoutPolicy
from iamauth.service.passwords import PasswordVerifier
from iamauth.service.sessions import SessionRegistry
from iamauth.service.tokens import TokenIssuer
from iamauth.storage.directory import DirectoryClient, HttpDirectoryClient, MemoryDirectory
from iamauth.storage.kv import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the authentication component graph for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.kv = self._build_kv()
        self.directory = self._build_directory()

        timeout = self.settings.store_timeout_seconds
        self.passwords = PasswordVerifier()
        self.tokens = TokenIssuer(
            self.settings.signing_keys(),
            self.settings.jwt_key_id,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway=timedelta(seconds=self.settings.jwt_leeway_seconds),
        )
        self.sessions = SessionRegistry(
            self.kv,
            self.tokens.issue_refresh_id,
            revoke_all_on_reuse=self.settings.revoke_all_on_reuse,
        )
        self.lockout = LockoutPolicy(
            self.kv,
            max_attempts=self.settings.max_login_attempts,
            lock_duration=timedelta(minutes=self.settings.lock_duration_minutes),
            counter_ttl=timedelta(minutes=self.settings.failed_attempt_window_minutes),
        )
        self.auth = AuthOrchestrator(
            self.directory,
            self.passwords,
            self.tokens,
            self.sessions,
            self.lockout,
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            store_timeout=timeout,
            retry_backoff=self.settings.transient_retry_backoff_ms / 1000,
        )
        logger.info(
            "runtime_initialized",
            kv_backend="redis" if self.redis_enabled else "memory",
            directory_backend="http" if isinstance(self.directory, HttpDirectoryClient) else "memory",
            signing_key_id=self.tokens.active_key.key_id,
            accepted_key_ids=sorted(self.settings.signing_keys()),
        )

    @property
    def redis_enabled(self) -> bool:
        return isinstance(self.kv, RedisKeyValueStore)

    def _build_kv(self) -> KeyValueStore:
        if self.settings.use_memory_store:
            return MemoryKeyValueStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                kv = RedisKeyValueStore(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                kv.verify_connection()
                return kv
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh sessions and lockout counters; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and lockout "
                "counters are process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryKeyValueStore()

    def _build_directory(self) -> Union[DirectoryClient, MemoryDirectory]:
        if self.settings.directory_url:
            return HttpDirectoryClient(
                self.settings.directory_url,
                api_token=self.settings.directory_api_token,
                timeout=self.settings.store_timeout_seconds,
            )
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "DIRECTORY_URL is required outside TEST_MODE/ALLOW_REDIS_FALLBACK_DEV"
            )
        logger.warning("directory_memory_fallback")
        return MemoryDirectory()

    async def close(self) -> None:
        await self.directory.close()
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the second
    check under the lock keeps two threads from both building a runtime.
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
        previous = runtime
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None:
            try:
                asyncio.get_running_loop().create_task(previous.close())
            except RuntimeError:
                asyncio.run(previous.close())
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
