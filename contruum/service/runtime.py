from __future__ import annotations

import asyncio
import secrets
import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from contruum.config import get_settings, reset_settings_cache
from contruum.logging import get_logger
from contruum.service.claims import ClaimsResolver
from contruum.service.flows import FlowEngine
from contruum.service.issuer import TokenIssuer
from contruum.service.keys import KeyManager
from contruum.service.principals import InMemorySessionResolver, StaticPrincipalDirectory
from contruum.service.pruning import PruningService
from contruum.service.registry import Registry
from contruum.service.userinfo import UserinfoService
from contruum.service.validation import Validator
from contruum.storage.memory import MemoryStore
from contruum.storage.postgres import PostgresStore
from contruum.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required to park authorization requests during login and consent; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; pending authorization "
                    "requests are held in process memory only."
                ),
                mode=fallback_mode,
            )

        self.keys = KeyManager.from_settings(self.settings)
        self.keys.initialize()

        self.registry = Registry.from_settings(self.settings)
        for client in self.registry.clients():
            self.store.upsert_client(client)

        self.directory = (
            StaticPrincipalDirectory.from_file(self.settings.users_file)
            if self.settings.users_file
            else StaticPrincipalDirectory()
        )
        self.sessions = InMemorySessionResolver(self.directory)
        self.claims = ClaimsResolver()
        self.issuer = TokenIssuer(self.keys, self.claims, self.store, self.settings)
        self.validator = Validator(self.keys, self.store, self.settings)
        self.userinfo = UserinfoService(self.validator, self.directory, self.claims)
        self.flows = FlowEngine(
            self.registry,
            self.issuer,
            self.validator,
            self.store,
            self.directory,
            self.settings,
        )
        self.pruning = PruningService.from_settings(self.store, self.settings)

        self._local_requests: Dict[str, Tuple[Dict[str, str], float]] = {}
        self._local_requests_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            issuer=self.settings.issuer,
            store_type=store_type,
            redis_enabled=self.cache is not None,
            clients=len(self.registry.clients()),
            flows=[flow.value for flow in self.settings.allowed_flows],
            pruning_enabled=self.settings.pruning_enabled,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        if runtime is not None and isinstance(runtime.store, PostgresStore):
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def park_authorization_request(runtime: Runtime, params: Dict[str, str]) -> str:
    """Store a validated authorization request while the user signs in or consents."""
    request_id = secrets.token_urlsafe(24)
    ttl = runtime.settings.authorization_request_ttl_seconds
    if runtime.cache:
        await runtime.cache.set_authorization_request(request_id, params, ttl)
        return request_id
    async with runtime._local_requests_lock:
        now = time.monotonic()
        expired = [k for k, (_, exp) in runtime._local_requests.items() if exp <= now]
        for key in expired:
            runtime._local_requests.pop(key, None)
        runtime._local_requests[request_id] = (dict(params), now + ttl)
    return request_id


async def load_authorization_request(
    runtime: Runtime, request_id: Optional[str], *, consume: bool = False
) -> Optional[Dict[str, str]]:
    """Fetch a parked request; ``consume`` removes it so it completes only once."""
    if not request_id:
        return None
    if runtime.cache:
        if consume:
            return await runtime.cache.pop_authorization_request(request_id)
        return await runtime.cache.get_authorization_request(request_id)
    async with runtime._local_requests_lock:
        entry = runtime._local_requests.get(request_id)
        if entry is None:
            return None
        params, expires_at = entry
        expired = expires_at <= time.monotonic()
        if expired or consume:
            runtime._local_requests.pop(request_id, None)
        if expired:
            return None
        return dict(params)
