from __future__ import annotations

import threading
import time
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenkeeper.config import get_settings, reset_settings_cache
from tokenkeeper.logging import get_logger
from tokenkeeper.service.auth import CredentialStore, TokenLifecycleManager
from tokenkeeper.service.guard import AuthGuard
from tokenkeeper.service.passwords import PasswordHasher
from tokenkeeper.service.rate_limit import RateLimitDecision, RateLimiter
from tokenkeeper.service.tokens import TokenCodec
from tokenkeeper.storage.memory import MemoryStore
from tokenkeeper.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: postgresql://app:secret@db:5432/x -> postgresql://app:***@db:5432/x
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.started_at = time.time()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: CredentialStore = (
                MemoryStore(fs_root=self.settings.state_dir)
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
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = PasswordHasher.from_settings(self.settings)
        self.codec = TokenCodec.from_settings(self.settings)
        self.auth = TokenLifecycleManager(
            self.store, self.hasher, self.codec, self.settings
        )
        self.guard = AuthGuard(self.codec)
        self.rate_limiter = RateLimiter()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
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
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> RateLimitDecision:
    """Apply the process-local token bucket for ``key``."""

    return await runtime.rate_limiter.check(key, limit, window_seconds, cost=cost)
