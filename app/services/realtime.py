"""Topic-per-agent real-time fanout over WebSockets.

Rooms are named ``agent_<id>``. With Redis configured, ``emit`` publishes
to ``realtime:<room>`` and every web process relays the message to its
own connected sockets, so events raised in the worker process reach the
browser. Without Redis, delivery is in-process only.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "realtime:"


class RealtimeHub:
    def __init__(self, redis_client: "redis.Redis | None" = None):
        self.redis = redis_client
        self._rooms: Dict[str, Set[Any]] = defaultdict(set)
        self._relay_task: asyncio.Task | None = None

    @classmethod
    def from_url(cls, url: str) -> "RealtimeHub":
        return cls(redis.from_url(url) if url else None)

    def join(self, room: str, websocket) -> None:
        self._rooms[room].add(websocket)
        logger.info("Socket joined %s (%d in room)", room, len(self._rooms[room]))

    def leave(self, room: str, websocket) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            self._rooms.pop(room, None)
        logger.info("Socket left %s", room)

    def connections(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def emit(self, room: str, event: str, data: dict) -> int:
        """Publish an event to a room. Returns subscribers / sockets reached."""
        message = {"event": event, "data": data}
        if self.redis is not None:
            try:
                return await self.redis.publish(CHANNEL_PREFIX + room, json.dumps(message, default=str))
            except (RedisError, OSError) as e:
                logger.error("Realtime publish to %s failed, delivering locally: %s", room, e)
        return await self._deliver(room, message)

    async def _deliver(self, room: str, message: dict) -> int:
        dead = set()
        sent = 0
        for ws in list(self._rooms.get(room, ())):
            try:
                await ws.send_json(message)
                sent += 1
            except Exception:
                dead.add(ws)
        for ws in dead:
            self.leave(room, ws)
        return sent

    def start_relay(self) -> None:
        if self.redis is not None and self._relay_task is None:
            self._relay_task = asyncio.create_task(self._relay())

    async def _relay(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(CHANNEL_PREFIX + "*")
        try:
            async for item in pubsub.listen():
                if item.get("type") != "pmessage":
                    continue
                channel = item["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                try:
                    message = json.loads(item["data"])
                except (TypeError, ValueError):
                    continue
                await self._deliver(channel[len(CHANNEL_PREFIX):], message)
        except (RedisError, OSError) as e:
            logger.error("Realtime relay stopped: %s", e)
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None
        if self.redis is not None:
            await self.redis.aclose()
