from __future__ import annotations

import json
from typing import Dict, Optional

import redis.asyncio as aioredis
from redis import Redis

_REQUEST_PREFIX = "oidc:authorize:request:"


def _decode_request(cached: Optional[str]) -> Optional[Dict[str, str]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    return {str(k): str(v) for k, v in data.items()}


class RedisCache:
    """Redis-backed cache for authorization requests parked during login or consent.

    The authorization endpoint stores the validated request parameters under a
    random ``request_id`` so the login and consent UIs only have to carry that
    identifier back.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling request caching."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_authorization_request(
        self, request_id: str, params: Dict[str, str], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"{_REQUEST_PREFIX}{request_id}", json.dumps(params), ex=max(1, ttl_seconds)
        )

    async def get_authorization_request(self, request_id: str) -> Optional[Dict[str, str]]:
        return _decode_request(await self.client.get(f"{_REQUEST_PREFIX}{request_id}"))

    async def pop_authorization_request(self, request_id: str) -> Optional[Dict[str, str]]:
        """Atomically fetch and delete a cached request so it completes only once."""
        return _decode_request(await self.client.getdel(f"{_REQUEST_PREFIX}{request_id}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest while exposing the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def set_authorization_request(
        self, request_id: str, params: Dict[str, str], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            f"{_REQUEST_PREFIX}{request_id}", json.dumps(params), ex=max(1, ttl_seconds)
        )

    async def get_authorization_request(self, request_id: str) -> Optional[Dict[str, str]]:
        return _decode_request(self._sync_client.get(f"{_REQUEST_PREFIX}{request_id}"))

    async def pop_authorization_request(self, request_id: str) -> Optional[Dict[str, str]]:
        return _decode_request(self._sync_client.getdel(f"{_REQUEST_PREFIX}{request_id}"))

    async def close(self) -> None:
        self._sync_client.close()
