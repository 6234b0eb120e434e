"""Redis-backed memo of transcription and analysis results.

The cache is never the source of truth: every operation degrades to a
miss (``get`` → None, ``set``/``delete`` → False) when Redis is not
configured or not reachable.
"""

import json
import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

SUCCESS_TTL = 24 * 60 * 60
ERROR_TTL = 60 * 60


def transcription_key(recording_id) -> str:
    return f"transcription:{recording_id}"


def analysis_key(recording_id) -> str:
    return f"analysis:{recording_id}"


class ResultCache:
    def __init__(self, client: "redis.Redis | None" = None):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "ResultCache":
        if not url:
            logger.warning("REDIS_URL not configured - result cache disabled")
            return cls(None)
        return cls(redis.from_url(url, socket_connect_timeout=3, socket_timeout=3))

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get(self, key: str) -> Any | None:
        if not self.client:
            return None
        try:
            value = await self.client.get(key)
            return json.loads(value) if value else None
        except (RedisError, OSError, ValueError) as e:
            logger.error("Cache get error for %s: %s", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        if not self.client:
            return False
        try:
            await self.client.set(key, json.dumps(value), ex=ttl)
            return True
        except (RedisError, OSError, TypeError) as e:
            logger.error("Cache set error for %s: %s", key, e)
            return False

    async def delete(self, *keys: str) -> bool:
        if not self.client or not keys:
            return False
        try:
            await self.client.delete(*keys)
            return True
        except (RedisError, OSError) as e:
            logger.error("Cache delete error for %s: %s", keys, e)
            return False

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
