"""
Per-message result cache for the researcher, backed by Redis.

Layout (all keys under ``key_prefix``):
- ``{prefix}:entry:{message_id}``: JSON ``CacheEntry``, written with ``EX ttl``
- ``{prefix}:workspace:{workspace_id}``: set of message ids, for scoped invalidation
- ``{prefix}:expiry``: sorted set of ``[workspace_id, message_id]`` scored by
  ``expires_at``, swept by ``delete_expired``

Store errors are raised as ``CacheError``; deciding whether a failure matters
is left to the caller.
"""

import json
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from libs.caching.redis_client import get_redis_client
from researcher.errors import CacheError
from researcher.schemas.models import CacheEntry, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


class ResultCache:
    """
    Time-boxed memoization of research results, keyed by triggering message.

    Usage:
        cache = ResultCache(key_prefix="researcher:cache")
        await cache.connect()

        entry = await cache.find(message_id)
        if entry is None:
            await cache.set(CacheEntry(...))
    """

    def __init__(
        self,
        redis_client=None,
        key_prefix: str = "researcher:cache",
        default_ttl: int = DEFAULT_TTL_SECONDS,
    ):
        """
        Args:
            redis_client: Async Redis client. When omitted, ``connect`` picks up
                the shared client.
            key_prefix: Namespace for every key this cache writes
            default_ttl: TTL in seconds applied when ``set`` gets none
        """
        self._redis_client = redis_client
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl

    async def connect(self, use_fake: Optional[bool] = None) -> None:
        """Attach to the shared Redis client if none was injected."""
        if self._redis_client is not None:
            return
        self._redis_client = await get_redis_client(use_fake=use_fake)
        if self._redis_client is None:
            logger.warning("Redis unavailable, researcher cache disabled")

    @property
    def is_available(self) -> bool:
        return self._redis_client is not None

    def _entry_key(self, message_id: str) -> str:
        return f"{self.key_prefix}:entry:{message_id}"

    def _workspace_key(self, workspace_id: str) -> str:
        return f"{self.key_prefix}:workspace:{workspace_id}"

    @property
    def _expiry_key(self) -> str:
        return f"{self.key_prefix}:expiry"

    @staticmethod
    def _expiry_member(workspace_id: str, message_id: str) -> str:
        return json.dumps([workspace_id, message_id])

    async def find(self, triggering_message_id: str) -> Optional[CacheEntry]:
        """Return the non-expired entry for a message, or None."""
        if self._redis_client is None:
            return None

        try:
            raw = await self._redis_client.get(self._entry_key(triggering_message_id))
        except RedisError as e:
            raise CacheError(f"read failed for message {triggering_message_id}: {e}") from e

        if not raw:
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Discarding unreadable cache entry",
                message_id=triggering_message_id,
                error=str(e),
            )
            return None

        if entry.is_expired():
            return None
        return entry

    async def set(self, entry: CacheEntry, ttl_seconds: Optional[int] = None) -> CacheEntry:
        """
        Upsert the entry for ``entry.triggering_message_id``.

        Concurrent writers for the same message overwrite each other; the last
        write wins. ``created_at`` and ``expires_at`` are stamped here.
        """
        if self._redis_client is None:
            raise CacheError("cache is not connected")

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        now = utcnow()
        stored = entry.model_copy(update={"created_at": now, "expires_at": now + timedelta(seconds=ttl)})

        try:
            async with self._redis_client.pipeline(transaction=True) as pipe:
                pipe.set(self._entry_key(stored.triggering_message_id), stored.model_dump_json(), ex=ttl)
                pipe.sadd(self._workspace_key(stored.workspace_id), stored.triggering_message_id)
                pipe.zadd(
                    self._expiry_key,
                    {
                        self._expiry_member(stored.workspace_id, stored.triggering_message_id): stored.expires_at.timestamp()
                    },
                )
                await pipe.execute()
        except RedisError as e:
            raise CacheError(f"write failed for message {stored.triggering_message_id}: {e}") from e

        logger.debug(
            "Research result cached",
            message_id=stored.triggering_message_id,
            workspace_id=stored.workspace_id,
            ttl_seconds=ttl,
        )
        return stored

    async def invalidate(self, triggering_message_id: str) -> bool:
        """Drop the entry for one message (e.g. after it was edited).

        Returns True if an entry was removed.
        """
        if self._redis_client is None:
            return False

        key = self._entry_key(triggering_message_id)
        try:
            raw = await self._redis_client.get(key)
            workspace_id = _workspace_of(raw)

            async with self._redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if workspace_id:
                    pipe.srem(self._workspace_key(workspace_id), triggering_message_id)
                    pipe.zrem(self._expiry_key, self._expiry_member(workspace_id, triggering_message_id))
                results = await pipe.execute()
        except RedisError as e:
            raise CacheError(f"invalidate failed for message {triggering_message_id}: {e}") from e

        removed = bool(results and results[0])
        logger.info("Research cache entry invalidated", message_id=triggering_message_id, removed=removed)
        return removed

    async def invalidate_workspace(self, workspace_id: str) -> int:
        """Drop every entry of a workspace (e.g. after settings changed).

        Returns the number of entries removed.
        """
        if self._redis_client is None:
            return 0

        index_key = self._workspace_key(workspace_id)
        try:
            message_ids: List[str] = sorted(await self._redis_client.smembers(index_key))
            if not message_ids:
                return 0

            async with self._redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(*[self._entry_key(mid) for mid in message_ids])
                pipe.zrem(self._expiry_key, *[self._expiry_member(workspace_id, mid) for mid in message_ids])
                pipe.srem(index_key, *message_ids)
                results = await pipe.execute()
        except RedisError as e:
            raise CacheError(f"invalidate failed for workspace {workspace_id}: {e}") from e

        deleted = int(results[0] or 0)
        logger.info("Research cache invalidated for workspace", workspace_id=workspace_id, deleted=deleted)
        return deleted

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """
        Reap entries whose ``expires_at`` has passed.

        Meant to be called by an external periodic sweep. Returns the number of
        expired entries removed from the index.
        """
        if self._redis_client is None:
            return 0

        cutoff = (now or utcnow()).timestamp()
        try:
            members = await self._redis_client.zrangebyscore(self._expiry_key, "-inf", cutoff)
            if not members:
                return 0

            async with self._redis_client.pipeline(transaction=True) as pipe:
                for member in members:
                    workspace_id, message_id = json.loads(member)
                    pipe.delete(self._entry_key(message_id))
                    pipe.srem(self._workspace_key(workspace_id), message_id)
                pipe.zrem(self._expiry_key, *members)
                await pipe.execute()
        except RedisError as e:
            raise CacheError(f"expired sweep failed: {e}") from e

        logger.info("Expired research cache entries deleted", count=len(members))
        return len(members)


def _workspace_of(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    try:
        return json.loads(raw).get("workspace_id")
    except (ValueError, AttributeError):
        return None
