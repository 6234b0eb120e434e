"""Tests for the agent WebSocket room and the realtime hub."""

import uuid

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.realtime import RealtimeHub

from conftest import FakeRedis, FakeSocket


@pytest.mark.asyncio
async def test_emit_without_redis_reaches_room_members():
    hub = RealtimeHub()
    inside, outside = FakeSocket(), FakeSocket()
    hub.join("agent_1", inside)
    hub.join("agent_2", outside)

    assert await hub.emit("agent_1", "new-recording", {"delivery_id": "d1"}) == 1
    assert inside.sent == [{"event": "new-recording", "data": {"delivery_id": "d1"}}]
    assert outside.sent == []


@pytest.mark.asyncio
async def test_dead_socket_is_dropped():
    class DeadSocket:
        async def send_json(self, message):
            raise RuntimeError("closed")

    hub = RealtimeHub()
    hub.join("agent_1", DeadSocket())
    assert await hub.emit("agent_1", "status-update", {}) == 0
    assert hub.connections("agent_1") == 0


@pytest.mark.asyncio
async def test_emit_with_redis_publishes():
    redis = FakeRedis()
    hub = RealtimeHub(redis)
    assert await hub.emit("agent_1", "emergency", {"message": "x"}) == 1
    assert redis.published == [("realtime:agent_1", {"event": "emergency", "data": {"message": "x"}})]


@pytest.mark.asyncio
async def test_agent_socket_joins_room(services):
    agent_id = uuid.uuid4()
    room = f"agent_{agent_id}"

    with TestClient(app).websocket_connect(f"/api/v1/realtime/agents/{agent_id}") as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
        assert services.realtime.connections(room) == 1
