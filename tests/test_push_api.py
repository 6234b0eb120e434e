"""Tests for agent web push registration endpoints."""

import uuid

import pytest

from app.models.agent import Agent
from app.services.push import SKIPPED

from conftest import ADMIN_TOKEN

ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_TOKEN}"}

SUBSCRIPTION = {
    "endpoint": "https://push.example.test/new-device",
    "keys": {"p256dh": "new-p256dh", "auth": "new-auth"},
}


async def stored_subscription(db, agent_id):
    agent = await db.get(Agent, agent_id)
    await db.refresh(agent)
    return agent.push_subscription


@pytest.mark.asyncio
async def test_vapid_public_key(client):
    resp = await client.get("/api/v1/push/vapid-public-key")
    assert resp.status_code == 200
    assert resp.json() == {"publicKey": "public-key"}


@pytest.mark.asyncio
async def test_vapid_public_key_not_configured(client, push):
    push.vapid_public_key = ""
    resp = await client.get("/api/v1/push/vapid-public-key")
    assert resp.status_code == 500


@pytest.mark.asyncio
async def test_subscribe_stores_subscription(client, db, agent):
    resp = await client.post(
        f"/api/v1/push/agents/{agent.id}/subscribe", json={"subscription": SUBSCRIPTION}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert await stored_subscription(db, agent.id) == SUBSCRIPTION


@pytest.mark.asyncio
async def test_subscribe_requires_admin_token(client, agent):
    resp = await client.post(f"/api/v1/push/agents/{agent.id}/subscribe", json={"subscription": SUBSCRIPTION})
    assert resp.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [{}, {"subscription": None}, {"subscription": {"endpoint": "https://push.example.test/x"}}],
)
async def test_subscribe_rejects_bad_subscription(client, agent, body):
    resp = await client.post(f"/api/v1/push/agents/{agent.id}/subscribe", json=body, headers=ADMIN_HEADERS)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_subscribe_unknown_agent(client, services):
    resp = await client.post(
        f"/api/v1/push/agents/{uuid.uuid4()}/subscribe", json={"subscription": SUBSCRIPTION}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_unsubscribe_clears_subscription(client, db, agent):
    resp = await client.post(f"/api/v1/push/agents/{agent.id}/unsubscribe", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert await stored_subscription(db, agent.id) is None


@pytest.mark.asyncio
async def test_test_notification(client, agent, push):
    resp = await client.post(f"/api/v1/push/agents/{agent.id}/test", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    push.send.assert_awaited_once()
    assert push.send.await_args.args[1] == "Test Notification"

    push.send.return_value = SKIPPED
    resp = await client.post(f"/api/v1/push/agents/{agent.id}/test", headers=ADMIN_HEADERS)
    assert resp.status_code == 502
