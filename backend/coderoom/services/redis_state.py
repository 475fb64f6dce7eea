"""
Redis State Management Service

Shared, TTL-bound state kept in Redis so that it survives a worker restart
and is visible to every instance:

- Revoked access tokens (logout blocklist)
- Online users (refreshed by socket heartbeats)
- Socket presence per team room

When Redis is disabled or unreachable an in-memory fallback is used.
"""

import json
import time
from typing import Optional, Dict, Any, List

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError

from coderoom.config import settings
from coderoom.utils.logging_config import get_logger

logger = get_logger(__name__)


# Redis key prefixes
TOKEN_BLOCKLIST_PREFIX = "token:"
ACTIVE_USER_PREFIX = "active_user:"
WS_ROOM_PREFIX = "ws_room:"
WS_USERNAME_PREFIX = "ws_username:"

# TTLs (seconds)
ACTIVE_USER_TTL = 90  # longer than the heartbeat timeout
WS_STATE_TTL = 3600  # 1 hour


class RedisStateService:
    """
    Redis based state management.

    Uses an in-memory fallback when Redis is not available.
    """

    def __init__(self, redis_url: str = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[Redis] = None
        self._pool: Optional[ConnectionPool] = None
        self._use_fallback = not settings.REDIS_ENABLED
        self._fallback_store: Dict[str, Any] = {}

    async def get_redis(self) -> Optional[Redis]:
        """Get or create Redis connection."""
        if self._use_fallback:
            return None

        if self._redis is None:
            try:
                self._pool = ConnectionPool.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True
                )
                self._redis = Redis(connection_pool=self._pool)

                await self._redis.ping()
                logger.info("Redis state service connected successfully")

            except (RedisError, OSError) as e:
                logger.warning(
                    f"Redis connection failed, using in-memory fallback: {e}"
                )
                self._use_fallback = True
                self._redis = None
                self._pool = None

        return self._redis

    async def close(self):
        """Close Redis connections."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None
        logger.info("Redis state service closed")

    # ==================== Fallback Methods ====================

    def _get_fallback(self, key: str) -> Any:
        """Get a live value from fallback storage."""
        entry = self._fallback_store.get(key)
        if not isinstance(entry, dict):
            return None
        if entry.get("expires_at") and entry["expires_at"] < time.time():
            del self._fallback_store[key]
            return None
        return entry.get("value")

    def _set_fallback(self, key: str, value: Any, ttl: int = None):
        """Set data in fallback storage with optional TTL."""
        self._fallback_store[key] = {
            "value": value,
            "expires_at": time.time() + ttl if ttl else None
        }

    def _delete_fallback(self, key: str):
        """Delete data from fallback storage."""
        self._fallback_store.pop(key, None)

    def _cleanup_fallback(self):
        """Remove expired entries from fallback storage."""
        now = time.time()
        expired_keys = [
            k for k, v in self._fallback_store.items()
            if isinstance(v, dict) and v.get("expires_at") and v["expires_at"] < now
        ]
        for k in expired_keys:
            del self._fallback_store[k]

    # ==================== Token Blocklist ====================

    async def block_token(self, fingerprint: str, ttl: int) -> bool:
        """Revoke a token until it would have expired anyway."""
        key = f"{TOKEN_BLOCKLIST_PREFIX}{fingerprint}"

        redis = await self.get_redis()
        if redis:
            try:
                await redis.setex(key, ttl, "blocked")
                return True
            except RedisError as e:
                logger.warning(f"Redis block_token failed: {e}")

        self._set_fallback(key, "blocked", ttl)
        return True

    async def is_token_blocked(self, fingerprint: str) -> bool:
        key = f"{TOKEN_BLOCKLIST_PREFIX}{fingerprint}"

        redis = await self.get_redis()
        if redis:
            try:
                if await redis.exists(key):
                    return True
            except RedisError as e:
                logger.warning(f"Redis is_token_blocked failed: {e}")

        return self._get_fallback(key) is not None

    # ==================== Active Users ====================

    async def update_active_user(
        self,
        user_id: str,
        username: str,
        ttl: int = ACTIVE_USER_TTL
    ) -> bool:
        """Refresh an online user (heartbeat)."""
        key = f"{ACTIVE_USER_PREFIX}{user_id}"
        data = {
            "user_id": user_id,
            "username": username,
            "last_seen": time.time(),
        }

        redis = await self.get_redis()
        if redis:
            try:
                await redis.setex(key, ttl, json.dumps(data))
                return True
            except RedisError as e:
                logger.warning(f"Redis update_active_user failed: {e}")

        self._set_fallback(key, data, ttl)
        return True

    async def get_all_active_users(self, timeout: int = ACTIVE_USER_TTL) -> List[Dict[str, Any]]:
        """All users seen within ``timeout`` seconds."""
        redis = await self.get_redis()
        users = {}
        now = time.time()

        if redis:
            try:
                pattern = f"{ACTIVE_USER_PREFIX}*"
                async for key in redis.scan_iter(match=pattern, count=100):
                    data = await redis.get(key)
                    if data:
                        try:
                            user = json.loads(data)
                            if now - user.get("last_seen", 0) < timeout:
                                users[user["user_id"]] = user
                        except (json.JSONDecodeError, TypeError, KeyError):
                            pass
            except RedisError as e:
                logger.warning(f"Redis get_all_active_users failed: {e}")

        self._cleanup_fallback()
        for k, v in self._fallback_store.items():
            if k.startswith(ACTIVE_USER_PREFIX):
                data = v.get("value")
                if isinstance(data, dict):
                    user_id = data.get("user_id")
                    if user_id and now - data.get("last_seen", 0) < timeout:
                        users.setdefault(user_id, data)

        return list(users.values())

    async def delete_active_user(self, user_id: str) -> bool:
        key = f"{ACTIVE_USER_PREFIX}{user_id}"

        redis = await self.get_redis()
        if redis:
            try:
                await redis.delete(key)
            except RedisError as e:
                logger.warning(f"Redis delete_active_user failed: {e}")

        self._delete_fallback(key)
        return True

    # ==================== WebSocket Room Presence ====================

    async def ws_add_to_room(
        self,
        room_id: str,
        user_id: str,
        username: str,
        ttl: int = WS_STATE_TTL
    ) -> bool:
        """Mark a user as connected to a room."""
        room_key = f"{WS_ROOM_PREFIX}{room_id}"
        username_key = f"{WS_USERNAME_PREFIX}{user_id}"

        redis = await self.get_redis()
        if redis:
            try:
                pipe = redis.pipeline()
                pipe.sadd(room_key, user_id)
                pipe.expire(room_key, ttl)
                pipe.setex(username_key, ttl, username)
                await pipe.execute()
                return True
            except RedisError as e:
                logger.warning(f"Redis ws_add_to_room failed: {e}")

        self._set_fallback(f"{room_key}:{user_id}", {
            "user_id": user_id,
            "username": username,
        }, ttl)
        self._set_fallback(username_key, username, ttl)
        return True

    async def ws_remove_from_room(self, room_id: str, user_id: str) -> bool:
        room_key = f"{WS_ROOM_PREFIX}{room_id}"

        redis = await self.get_redis()
        if redis:
            try:
                await redis.srem(room_key, user_id)
            except RedisError as e:
                logger.warning(f"Redis ws_remove_from_room failed: {e}")

        self._delete_fallback(f"{room_key}:{user_id}")
        return True

    async def ws_clear_room(self, room_id: str) -> bool:
        """Drop all presence for a closed room."""
        room_key = f"{WS_ROOM_PREFIX}{room_id}"

        redis = await self.get_redis()
        if redis:
            try:
                await redis.delete(room_key)
            except RedisError as e:
                logger.warning(f"Redis ws_clear_room failed: {e}")

        prefix = f"{room_key}:"
        for k in [k for k in self._fallback_store if k.startswith(prefix)]:
            del self._fallback_store[k]
        return True

    async def ws_get_room_users(self, room_id: str) -> List[Dict[str, Any]]:
        """Users currently connected to a room."""
        room_key = f"{WS_ROOM_PREFIX}{room_id}"

        redis = await self.get_redis()
        users = []

        if redis:
            try:
                user_ids = await redis.smembers(room_key)
                for user_id in sorted(user_ids):
                    username = await redis.get(f"{WS_USERNAME_PREFIX}{user_id}")
                    users.append({
                        "user_id": user_id,
                        "username": username or "Unknown",
                    })
            except RedisError as e:
                logger.warning(f"Redis ws_get_room_users failed: {e}")

        self._cleanup_fallback()
        prefix = f"{room_key}:"
        for k, v in self._fallback_store.items():
            if k.startswith(prefix):
                data = v.get("value")
                if isinstance(data, dict):
                    user_id = data.get("user_id")
                    if user_id and not any(u["user_id"] == user_id for u in users):
                        users.append(data)

        return users

    # ==================== Health Check ====================

    async def health_check(self) -> Dict[str, Any]:
        """Report Redis connectivity."""
        redis = await self.get_redis()
        is_redis_connected = False

        if redis:
            try:
                await redis.ping()
                is_redis_connected = True
            except RedisError:
                is_redis_connected = False

        return {
            "redis_enabled": settings.REDIS_ENABLED,
            "redis_connected": is_redis_connected,
            "using_fallback": self._use_fallback,
            "fallback_entries": len(self._fallback_store)
        }


# Global singleton instance
_redis_state_service: Optional[RedisStateService] = None


def get_redis_state() -> RedisStateService:
    """Get global Redis state service instance."""
    global _redis_state_service
    if _redis_state_service is None:
        _redis_state_service = RedisStateService()
    return _redis_state_service


async def close_redis_state():
    """Close Redis state service."""
    global _redis_state_service
    if _redis_state_service:
        await _redis_state_service.close()
        _redis_state_service = None
