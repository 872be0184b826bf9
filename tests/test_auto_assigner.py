"""
Tests for switchboard/workers/auto_assigner.py - queued conversation sweep.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from switchboard.main import create_app, lifespan
from switchboard.models.audit_log import AuditLog
from switchboard.models.conversation import ConversationStatus
from switchboard.services import assignment
from switchboard.services import conversation_store as store
from switchboard.services import queue_directory
from switchboard.utils.errors import AlreadyAssigned
from switchboard.workers.auto_assigner import (
    AUTO_ASSIGNER_ACTOR,
    run_auto_assigner,
    run_auto_assignment_cycle,
)

BASE_TIME = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


async def _queue(db, *agents, active=True):
    queue = await queue_directory.create_queue(db, "Soporte", active=active)
    for agent in agents:
        await queue_directory.add_member_agent(db, queue.id, agent)
    return queue


async def _open(db, queue_id, minute):
    conversation = await store.create_conversation(db, "line-1", contact=f"+{minute}", queue_id=queue_id)
    conversation.created_at = BASE_TIME + timedelta(minutes=minute)
    await db.commit()
    return conversation


class TestAssignmentCycle:
    @pytest.mark.asyncio
    async def test_one_conversation_per_agent_per_cycle(self, db, session_factory):
        queue = await _queue(db, "agent-a", "agent-b")
        first = await _open(db, queue.id, 1)
        second = await _open(db, queue.id, 2)
        third = await _open(db, queue.id, 3)

        assigned = await run_auto_assignment_cycle(session_factory)
        assert assigned == [(first.id, "agent-a"), (second.id, "agent-b")]
        db.expire_all()
        assert (await store.get_conversation(db, third.id)).status == ConversationStatus.OPEN

        assigned = await run_auto_assignment_cycle(session_factory)
        assert assigned == [(third.id, "agent-a")]

    @pytest.mark.asyncio
    async def test_least_loaded_member_goes_first(self, db, session_factory):
        queue = await _queue(db, "agent-a", "agent-b")
        busy = await _open(db, queue.id, 0)
        await assignment.manual_assign(db, busy.id, "agent-a", "op")
        waiting = await _open(db, queue.id, 1)

        assert await run_auto_assignment_cycle(session_factory) == [(waiting.id, "agent-b")]

    @pytest.mark.asyncio
    async def test_skips_unqueued_inactive_and_memberless(self, db, session_factory):
        inactive = await _queue(db, "agent-a", active=False)
        empty = await _queue(db)
        await _open(db, None, 1)
        await _open(db, inactive.id, 2)
        await _open(db, empty.id, 3)

        assert await run_auto_assignment_cycle(session_factory) == []

    @pytest.mark.asyncio
    async def test_lost_race_is_skipped(self, db, session_factory):
        queue = await _queue(db, "agent-a")
        await _open(db, queue.id, 1)

        with patch(
            "switchboard.workers.auto_assigner.auto_assign",
            new=AsyncMock(side_effect=AlreadyAssigned("taken")),
        ):
            assert await run_auto_assignment_cycle(session_factory) == []

    @pytest.mark.asyncio
    async def test_closed_between_sweep_and_assign(self, db, session_factory):
        queue = await _queue(db, "agent-a")
        conversation = await _open(db, queue.id, 1)

        async def close_first(db_, conversation_id, candidates, actor_id):
            await assignment.change_status(db_, conversation_id, ConversationStatus.CLOSED, "op")
            return await assignment.auto_assign(db_, conversation_id, candidates, actor_id)

        with patch("switchboard.workers.auto_assigner.auto_assign", new=close_first):
            assert await run_auto_assignment_cycle(session_factory) == []
        db.expire_all()
        assert (await store.get_conversation(db, conversation.id)).status == ConversationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_assignments_are_audited(self, db, session_factory):
        queue = await _queue(db, "agent-a")
        conversation = await _open(db, queue.id, 1)

        await run_auto_assignment_cycle(session_factory)

        rows = (await db.execute(select(AuditLog))).scalars().all()
        assert len(rows) == 1
        assert rows[0].actor_id == AUTO_ASSIGNER_ACTOR
        assert rows[0].action == "conversation.auto_assign"
        assert rows[0].resource_id == str(conversation.id)
        assert rows[0].data["agent_id"] == "agent-a"

        history = await assignment.get_history(db, conversation.id)
        assert history["assignments"][-1].actor_id == AUTO_ASSIGNER_ACTOR


class TestAutoAssignerLoop:
    @pytest.mark.asyncio
    async def test_loop_exits_on_stop_event(self, session_factory):
        stop = asyncio.Event()
        with patch("switchboard.workers.auto_assigner._heartbeat", new=AsyncMock()), \
             patch("switchboard.workers.auto_assigner.run_auto_assignment_cycle", new=AsyncMock(return_value=[])) as tick:
            task = asyncio.create_task(run_auto_assigner(session_factory, poll_seconds=3600, stop_event=stop))
            await asyncio.sleep(0.05)
            stop.set()
            await asyncio.wait_for(task, timeout=2)
        assert tick.await_count == 1

    @pytest.mark.asyncio
    async def test_loop_survives_cycle_errors(self, session_factory):
        stop = asyncio.Event()
        calls = []

        async def flaky(_session_factory):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("db down")
            stop.set()
            return []

        with patch("switchboard.workers.auto_assigner._heartbeat", new=AsyncMock()), \
             patch("switchboard.workers.auto_assigner.run_auto_assignment_cycle", new=flaky):
            await asyncio.wait_for(
                run_auto_assigner(session_factory, poll_seconds=0.01, stop_event=stop), timeout=2,
            )
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_started_by_lifespan_when_enabled(self, db, session_factory, settings):
        settings.auto_assign_enabled = True
        settings.auto_assign_poll_seconds = 3600
        queue = await _queue(db, "agent-a")
        conversation = await _open(db, queue.id, 1)

        application = create_app(session_factory=session_factory)
        with patch("switchboard.main.get_settings", return_value=settings), \
             patch("switchboard.workers.auto_assigner._heartbeat", new=AsyncMock()):
            async with lifespan(application):
                deadline = asyncio.get_running_loop().time() + 3
                while True:
                    db.expire_all()
                    current = await store.get_conversation(db, conversation.id)
                    if current.status == ConversationStatus.ASSIGNED:
                        break
                    assert asyncio.get_running_loop().time() < deadline, "conversation never assigned"
                    await asyncio.sleep(0.02)

        assert current.assigned_agent_id == "agent-a"
