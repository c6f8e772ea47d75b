from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _session_key(cookie_id: str) -> str:
    return f"session:{cookie_id}"


def _user_sessions_key(user_id: str) -> str:
    return f"auth:user_sessions:{user_id}"


class RedisCache:
    """Thin Redis wrapper for the fast session lookup path."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least one second.

        Naive timestamps are treated as UTC.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_session(
        self, cookie_id: str, fields: Dict[str, str], expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        user_id = fields["user_id"]
        pipe = self.client.pipeline()
        pipe.hset(_session_key(cookie_id), mapping=fields)
        pipe.expire(_session_key(cookie_id), ttl)
        # Per-user index for bulk revocation
        pipe.sadd(_user_sessions_key(user_id), cookie_id)
        pipe.expire(_user_sessions_key(user_id), ttl)
        await pipe.execute()

    async def get_session(self, cookie_id: str) -> Optional[Dict[str, str]]:
        data = await self.client.hgetall(_session_key(cookie_id))
        return data or None

    async def delete_session(self, cookie_id: str) -> None:
        data = await self.client.hgetall(_session_key(cookie_id))
        pipe = self.client.pipeline()
        pipe.delete(_session_key(cookie_id))
        if data and data.get("user_id"):
            pipe.srem(_user_sessions_key(data["user_id"]), cookie_id)
        await pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_cookie_id: Optional[str] = None
    ) -> int:
        """Drop every cached session of a user.

        Args:
            user_id: User whose sessions to revoke
            except_cookie_id: Optional session cookie id to keep active

        Returns:
            Number of sessions removed from the cache
        """
        user_sessions_key = _user_sessions_key(user_id)
        cookie_ids = await self.client.smembers(user_sessions_key)
        if not cookie_ids:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for cookie_id in cookie_ids:
            if except_cookie_id and cookie_id == except_cookie_id:
                continue
            pipe.delete(_session_key(cookie_id))
            pipe.srem(user_sessions_key, cookie_id)
            revoked += 1
        await pipe.execute()
        return revoked

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, while exposing the same awaitable methods as RedisCache.
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

    async def set_session(
        self, cookie_id: str, fields: Dict[str, str], expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        user_id = fields["user_id"]
        pipe = self._sync_client.pipeline()
        pipe.hset(_session_key(cookie_id), mapping=fields)
        pipe.expire(_session_key(cookie_id), ttl)
        pipe.sadd(_user_sessions_key(user_id), cookie_id)
        pipe.expire(_user_sessions_key(user_id), ttl)
        pipe.execute()

    async def get_session(self, cookie_id: str) -> Optional[Dict[str, str]]:
        return self._sync_client.hgetall(_session_key(cookie_id)) or None

    async def delete_session(self, cookie_id: str) -> None:
        data = self._sync_client.hgetall(_session_key(cookie_id))
        pipe = self._sync_client.pipeline()
        pipe.delete(_session_key(cookie_id))
        if data and data.get("user_id"):
            pipe.srem(_user_sessions_key(data["user_id"]), cookie_id)
        pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_cookie_id: Optional[str] = None
    ) -> int:
        """Drop every cached session of a user (sync version)."""
        user_sessions_key = _user_sessions_key(user_id)
        cookie_ids = self._sync_client.smembers(user_sessions_key)
        if not cookie_ids:
            return 0

        revoked = 0
        pipe = self._sync_client.pipeline()
        for cookie_id in cookie_ids:
            if except_cookie_id and cookie_id == except_cookie_id:
                continue
            pipe.delete(_session_key(cookie_id))
            pipe.srem(user_sessions_key, cookie_id)
            revoked += 1
        pipe.execute()
        return revoked

    async def close(self) -> None:
        self._sync_client.close()


class MemorySessionCache:
    """Process-local stand-in for Redis, used in tests and development fallback."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Tuple[Dict[str, str], datetime]] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def set_session(
        self, cookie_id: str, fields: Dict[str, str], expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        with self._lock:
            self._sessions[cookie_id] = (dict(fields), expires_at)
            self._user_sessions.setdefault(fields["user_id"], set()).add(cookie_id)

    async def get_session(self, cookie_id: str) -> Optional[Dict[str, str]]:
        with self._lock:
            entry = self._sessions.get(cookie_id)
            if not entry:
                return None
            fields, expires_at = entry
            if expires_at <= datetime.now(timezone.utc):
                self._sessions.pop(cookie_id, None)
                self._user_sessions.get(fields["user_id"], set()).discard(cookie_id)
                return None
            return dict(fields)

    async def delete_session(self, cookie_id: str) -> None:
        with self._lock:
            entry = self._sessions.pop(cookie_id, None)
            if entry:
                self._user_sessions.get(entry[0]["user_id"], set()).discard(cookie_id)

    async def revoke_user_sessions(
        self, user_id: str, except_cookie_id: Optional[str] = None
    ) -> int:
        with self._lock:
            cookie_ids = self._user_sessions.get(user_id, set())
            revoked = 0
            for cookie_id in list(cookie_ids):
                if except_cookie_id and cookie_id == except_cookie_id:
                    continue
                self._sessions.pop(cookie_id, None)
                cookie_ids.discard(cookie_id)
                revoked += 1
            return revoked

    async def close(self) -> None:
        return None
