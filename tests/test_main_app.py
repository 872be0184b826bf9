"""
Tests for switchboard/main.py and the /api/v1 routers - app factory, error
mapping, correlation ids, lifespan, and the HTTP surface end to end.
"""
import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from switchboard.database import get_db
from switchboard.main import create_app, lifespan
from switchboard.services.warmup import DailyQuota, LastRunClock, WarmupScheduler, WarmupState
from switchboard.workers.campaign_runner import CampaignRunner


@pytest.fixture
def app(session_factory, settings, channel):
    application = create_app(session_factory=session_factory)

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _get_db
    application.state.campaign_runner = CampaignRunner(
        session_factory=session_factory, channel=channel, settings=settings,
    )
    application.state.warmup_scheduler = WarmupScheduler(
        state=WarmupState(), channel=channel, settings=settings, quota=DailyQuota(limit=30), last_run=LastRunClock(),
    )
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


ACTOR = {"X-Actor-ID": "supervisor-1"}


class TestAppFactory:
    def test_includes_routes(self, app):
        paths = {route.path for route in app.routes}
        assert "/api/v1/conversations/{conversation_id}/auto-assign" in paths
        assert "/api/v1/campaigns/{campaign_id}/run" in paths
        assert "/api/v1/warmup/selection" in paths
        assert "/health/ready" in paths

    @pytest.mark.asyncio
    async def test_generates_correlation_id(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert len(response.headers["X-Correlation-ID"]) == 32

    @pytest.mark.asyncio
    async def test_keeps_incoming_correlation_id(self, client):
        response = await client.get("/health", headers={"X-Correlation-ID": "abc-123"})
        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_not_found(self, client):
        response = await client.get("/api/v1/conversations/7c6b1f34-3e55-4d59-a1f4-6a0f5d1d2a10")
        assert response.status_code == 404
        assert response.json() == {"detail": "Conversation not found", "code": "not_found"}

    @pytest.mark.asyncio
    async def test_invalid_uuid(self, client):
        response = await client.get("/api/v1/campaigns/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"


class TestConversationEndpoints:
    @pytest.mark.asyncio
    async def test_assignment_flow(self, client):
        queue = (await client.post("/api/v1/queues", json={"name": "Ventas"}, headers=ACTOR)).json()
        await client.post(f"/api/v1/queues/{queue['id']}/agents/agent-a", headers=ACTOR)
        await client.post(f"/api/v1/queues/{queue['id']}/agents/agent-b", headers=ACTOR)
        await client.post(f"/api/v1/queues/{queue['id']}/connections/line-1", headers=ACTOR)

        created = await client.post(
            "/api/v1/conversations", json={"connection_id": "line-1", "contact": "+1"}, headers=ACTOR,
        )
        assert created.status_code == 201
        conversation = created.json()
        assert conversation["status"] == "open"
        assert conversation["queue_id"] == queue["id"]
        cid = conversation["id"]

        denied = await client.post(f"/api/v1/conversations/{cid}/assign", json={"agent_id": "agent-x"})
        assert denied.status_code == 422
        assert denied.json()["code"] == "not_queue_member"

        assigned = await client.post(
            f"/api/v1/conversations/{cid}/auto-assign",
            json={"candidate_agent_ids": ["agent-b", "agent-a"]},
            headers=ACTOR,
        )
        assert assigned.status_code == 200
        assert assigned.json()["assigned_agent_id"] == "agent-a"

        again = await client.post(
            f"/api/v1/conversations/{cid}/auto-assign", json={"candidate_agent_ids": ["agent-b"]},
        )
        assert again.status_code == 409
        assert again.json()["code"] == "already_assigned"

        bad = await client.post(f"/api/v1/conversations/{cid}/status", json={"status": "open"})
        assert bad.status_code == 409
        assert bad.json()["code"] == "invalid_transition"

        closed = await client.post(f"/api/v1/conversations/{cid}/status", json={"status": "closed"})
        assert closed.json()["assigned_agent_id"] is None

        history = (await client.get(f"/api/v1/conversations/{cid}/history")).json()
        assert [e["to_status"] for e in history["status_events"]] == ["open", "assigned", "closed"]
        assert history["assignments"][0]["actor_id"] == "supervisor-1"

    @pytest.mark.asyncio
    async def test_queue_members(self, client):
        queue = (await client.post("/api/v1/queues", json={"name": "Ventas"})).json()
        await client.post(f"/api/v1/queues/{queue['id']}/agents/agent-a")
        await client.post(f"/api/v1/queues/{queue['id']}/connections/line-1")
        removed = await client.delete(f"/api/v1/queues/{queue['id']}/agents/agent-a")
        assert removed.json()["changed"] is True

        members = (await client.get(f"/api/v1/queues/{queue['id']}/members")).json()
        assert members["agent_ids"] == []
        assert members["connection_ids"] == ["line-1"]

    @pytest.mark.asyncio
    async def test_deactivated_queue_blocks_assignment(self, client):
        queue = (await client.post("/api/v1/queues", json={"name": "Ventas"})).json()
        await client.post(f"/api/v1/queues/{queue['id']}/agents/agent-a")
        conversation = (await client.post(
            "/api/v1/conversations", json={"connection_id": "line-1", "queue_id": queue["id"]},
        )).json()

        response = await client.put(f"/api/v1/queues/{queue['id']}/active", json={"active": False})
        assert response.status_code == 200
        assert response.json()["active"] is False

        response = await client.post(
            f"/api/v1/conversations/{conversation['id']}/assign", json={"agent_id": "agent-a"},
        )
        assert response.status_code == 422


class TestCampaignEndpoints:
    @pytest.mark.asyncio
    async def test_campaign_lifecycle(self, client, app, channel):
        template = (await client.post(
            "/api/v1/templates", json={"name": "Promo", "body": "Hola {{ name }}"}, headers=ACTOR,
        )).json()
        created = await client.post("/api/v1/campaigns", json={
            "name": "Octubre",
            "template_id": template["id"],
            "connection_id": "line-1",
            "targets": [
                {"contact": "+1", "variables": {"name": "Ana"}},
                {"contact": "+2", "variables": {"name": "Beto"}},
            ],
        }, headers=ACTOR)
        assert created.status_code == 201
        campaign = created.json()
        assert campaign["status"] == "draft"
        assert campaign["target_counts"] == {"pending": 2, "sent": 0, "failed": 0}

        scheduled = await client.post(f"/api/v1/campaigns/{campaign['id']}/schedule", json={})
        assert scheduled.json()["status"] == "scheduled"

        started = await client.post(f"/api/v1/campaigns/{campaign['id']}/run", headers=ACTOR)
        assert started.status_code == 202
        assert started.json()["status"] == "running"

        await app.state.campaign_runner.join(uuid.UUID(campaign["id"]), timeout=5)

        detail = (await client.get(f"/api/v1/campaigns/{campaign['id']}")).json()
        assert detail["status"] == "completed"
        assert detail["target_counts"]["sent"] == 2
        assert [p for _, _, p in channel.sent] == ["Hola Ana", "Hola Beto"]

        targets = (await client.get(f"/api/v1/campaigns/{campaign['id']}/targets?status=sent")).json()
        assert targets["total"] == 2

        events = (await client.get(f"/api/v1/campaigns/{campaign['id']}/events")).json()
        assert events["events"][-1]["event_type"] == "completed"

        rerun = await client.post(f"/api/v1/campaigns/{campaign['id']}/run")
        assert rerun.status_code == 409

        listed = (await client.get("/api/v1/campaigns")).json()
        assert [c["id"] for c in listed["campaigns"]] == [campaign["id"]]

    @pytest.mark.asyncio
    async def test_stop_is_accepted_then_released(self, client, app, channel):
        template = (await client.post("/api/v1/templates", json={"name": "P", "body": "x"})).json()
        campaign = (await client.post("/api/v1/campaigns", json={
            "name": "X", "template_id": template["id"], "connection_id": "line-1",
            "targets": [{"contact": "+1"}, {"contact": "+2"}],
            "delay_min_ms": 20000, "delay_max_ms": 20000,
        })).json()

        draft_stop = await client.post(f"/api/v1/campaigns/{campaign['id']}/stop")
        assert draft_stop.status_code == 409

        await client.post(f"/api/v1/campaigns/{campaign['id']}/run")
        for _ in range(300):
            if channel.sent:
                break
            await asyncio.sleep(0.01)

        stopped = await client.post(f"/api/v1/campaigns/{campaign['id']}/stop", headers=ACTOR)
        assert stopped.status_code == 202
        assert stopped.json()["stop_requested_by"] == "supervisor-1"

        await app.state.campaign_runner.join(uuid.UUID(campaign["id"]), timeout=5)
        detail = (await client.get(f"/api/v1/campaigns/{campaign['id']}")).json()
        assert detail["status"] == "scheduled"
        assert detail["stop_requested_at"] is None
        assert detail["target_counts"] == {"pending": 1, "sent": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_invalid_delay_bounds(self, client):
        template = (await client.post("/api/v1/templates", json={"name": "P", "body": "x"})).json()
        response = await client.post("/api/v1/campaigns", json={
            "name": "X", "template_id": template["id"], "connection_id": "line-1",
            "delay_min_ms": 500, "delay_max_ms": 100,
        })
        assert response.status_code == 400


class TestWarmupEndpoints:
    @pytest.mark.asyncio
    async def test_control_flow(self, client, app):
        status = (await client.get("/api/v1/warmup/status")).json()
        assert status["run_state"] == "idle"

        selection = await client.put("/api/v1/warmup/selection", json={"connection_ids": ["c2", "c1"]})
        assert selection.json()["selected_connection_ids"] == ["c1", "c2"]

        report = (await client.post("/api/v1/warmup/simulate")).json()
        assert report["dry_run"] is True
        assert report["connections"] == 2

        paused = await client.post("/api/v1/warmup/pause")
        assert paused.status_code == 409

        started = (await client.post("/api/v1/warmup/start")).json()
        assert started["run_state"] == "running"
        paused = (await client.post("/api/v1/warmup/pause")).json()
        assert paused["run_state"] == "paused"
        await app.state.warmup_scheduler.wait_idle()

        resumed = (await client.post("/api/v1/warmup/resume")).json()
        assert resumed["run_state"] == "running"
        await client.post("/api/v1/warmup/pause")
        await app.state.warmup_scheduler.wait_idle()

        status = (await client.get("/api/v1/warmup/status")).json()
        assert status["cycles_completed"] >= 1
        assert status["last_cycle_at"] is not None

    @pytest.mark.asyncio
    async def test_profile_assignment(self, client):
        response = await client.put("/api/v1/warmup/profiles/c1", json={"profile": "Tibio"})
        assert response.status_code == 200
        assert response.json()["profiles"] == {"c1": "tibio"}

        response = await client.put("/api/v1/warmup/profiles/c1", json={"profile": "turbo"})
        assert response.status_code == 400

        response = await client.put("/api/v1/warmup/profiles/c1", json={"profile": None})
        assert response.json()["profiles"] == {}
        assert "skip_counts" in response.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_ready_with_redis(self, client):
        redis = AsyncMock()
        redis.ping = AsyncMock(return_value=True)
        redis.get = AsyncMock(return_value="2026-10-19T10:00:00+00:00")
        with patch("switchboard.utils.redis.get_redis", new=AsyncMock(return_value=redis)):
            body = (await client.get("/health/ready")).json()
        assert body["status"] == "ready"
        assert body["campaign_scheduler_heartbeat"] == "2026-10-19T10:00:00+00:00"

    @pytest.mark.asyncio
    async def test_degraded_without_redis(self, client):
        with patch("switchboard.utils.redis.get_redis", new=AsyncMock(side_effect=ConnectionError("down"))):
            body = (await client.get("/health/ready")).json()
        assert body["status"] == "degraded"
        assert body["checks"] == {"database": True, "redis": False}


class TestLifespan:
    @pytest.mark.asyncio
    async def test_builds_engine_components_idle(self, session_factory, settings):
        application = create_app(session_factory=session_factory)
        with patch("switchboard.main.get_settings", return_value=settings):
            async with lifespan(application):
                assert isinstance(application.state.campaign_runner, CampaignRunner)
                warmup = application.state.warmup_scheduler
                assert warmup.status()["run_state"] == "idle"

    @pytest.mark.asyncio
    async def test_initializes_sentry_when_configured(self, session_factory, settings):
        settings.sentry_dsn = "https://key@sentry.example/1"
        application = create_app(session_factory=session_factory)
        with patch("switchboard.main.get_settings", return_value=settings), \
             patch("sentry_sdk.init") as sentry_init:
            async with lifespan(application):
                pass
        sentry_init.assert_called_once()
