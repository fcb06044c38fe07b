from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from wikiauth.config import Settings, get_settings, reset_settings_cache
from wikiauth.logging import get_logger, sanitize_error_message
from wikiauth.service.auth import AuthService
from wikiauth.service.credentials import CredentialStore
from wikiauth.service.csrf import CSRFService
from wikiauth.service.rate_limit import RateLimiter
from wikiauth.service.sessions import SessionManager
from wikiauth.service.turnstile import TurnstileVerifier
from wikiauth.storage.kv import KeyValueStore, Namespace
from wikiauth.storage.memory import MemoryKV
from wikiauth.storage.redis_kv import RedisKV

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
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: KeyValueStore = store or self._build_store()
        self.users = Namespace(self.store, self.settings.users_namespace)
        self.sessions_ns = Namespace(self.store, self.settings.sessions_namespace)

        self.credentials = CredentialStore(self.users, self.settings, clock=clock)
        self.sessions = SessionManager(
            self.sessions_ns, self.settings, credentials=self.credentials, clock=clock
        )
        self.csrf = CSRFService(self.settings, clock=clock)
        self.rate_limiter = RateLimiter(self.users, self.settings, clock=clock)
        self.turnstile = TurnstileVerifier(
            self.settings.turnstile_secret_key,
            verify_url=self.settings.turnstile_verify_url,
        )
        self.auth = AuthService(
            self.credentials,
            self.sessions,
            self.csrf,
            self.rate_limiter,
            self.turnstile,
            self.settings,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            csrf_enabled=self.settings.csrf_enabled,
            turnstile_configured=self.turnstile.is_configured,
        )

    def _build_store(self) -> KeyValueStore:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryKV(clock=self.clock)

        redis_error: Exception | None = None
        try:
            store = RedisKV(
                self.settings.redis_url, socket_timeout=self.settings.kv_timeout_seconds
            )
            store.verify_connection()
            logger.info("runtime_store_initialized", store_type="redis")
            return store
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for users, sessions and rate limits; start Redis or set "
                "USE_MEMORY_STORE=true / ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=sanitize_error_message(str(redis_error)),
            message=(
                f"Running without Redis under {fallback_mode}; users, sessions and "
                "rate limits are in-memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryKV(clock=self.clock)

    async def close(self) -> None:
        await self.turnstile.close()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
_pending_closes: set[asyncio.Task] = set()


def _store_close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_store_close_failed", error=sanitize_error_message(str(exc)))


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, clock: Optional[Callable[[], datetime]] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisKV):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.store.close())
            else:
                task = loop.create_task(runtime.store.close())
                _pending_closes.add(task)
                task.add_done_callback(_store_close_done)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
