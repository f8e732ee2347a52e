from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authserver.config import get_settings, reset_settings_cache
from authserver.logging import get_logger
from authserver.service.accounts import AccountService
from authserver.service.credentials import SecretHasher
from authserver.service.email import EmailService
from authserver.service.oauth import AuthorizationCodeManager
from authserver.service.revocation import RevocationRegistry
from authserver.service.tokens import TokenIssuer, TokenValidator
from authserver.storage.memory import MemoryCodeStore, MemoryStore
from authserver.storage.postgres import PostgresStore
from authserver.storage.redis_cache import RedisCodeStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

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
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        key_material = self.settings.encryption_key or self.settings.jwt_secret

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(key_material=key_material)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, key_material=key_material)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.code_store: Union[RedisCodeStore, MemoryCodeStore]
        redis_store: Optional[RedisCodeStore] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                candidate = RedisCodeStore(self.settings.redis_url)
                candidate.verify_connection()
                redis_store = candidate
            except Exception as exc:
                redis_error = exc

        if redis_store is not None:
            self.code_store = redis_store
        else:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for authorization codes and token revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; authorization codes and "
                    "revocations live in this process only."
                ),
                mode=fallback_mode,
            )
            self.code_store = MemoryCodeStore()

        self.hasher = SecretHasher()
        self.issuer = TokenIssuer()
        self.validator = TokenValidator()
        self.registry = RevocationRegistry(self.code_store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.oauth = AuthorizationCodeManager(
            self.settings,
            self.store,
            self.code_store,
            self.hasher,
            self.issuer,
            self.validator,
            self.registry,
        )
        self.accounts = AccountService(
            self.settings,
            self.store,
            self.code_store,
            self.hasher,
            self.email,
        )
        logger.info(
            "runtime_init_completed",
            code_store=type(self.code_store).__name__,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.code_store.close()
        self.store.close()


runtime: Optional[Runtime] = None
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
        if runtime is not None and isinstance(runtime.code_store, RedisCodeStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.code_store.close())
            except RuntimeError:
                asyncio.run(runtime.code_store.close())
        runtime = Runtime()
        return runtime
