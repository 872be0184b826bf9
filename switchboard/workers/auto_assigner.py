"""
Auto-assigner worker - hands OPEN queued conversations to queue members.
Polls every auto_assign_poll_seconds when AUTO_ASSIGN_ENABLED is set.

Each cycle walks the oldest open conversations of active queues and calls
auto_assign with the queue's member agents as candidates. An agent receives at
most one conversation per cycle so a backlog spreads across the team instead
of landing on whoever had the lowest load when the cycle began. Conversations
without a queue have no candidate pool and are left for manual assignment.
Losing a compare-and-set to an operator or another worker is normal and skipped.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select, and_

from switchboard.models.conversation import Conversation, ConversationStatus
from switchboard.models.queue import Queue
from switchboard.services.assignment import auto_assign
from switchboard.services.audit import record_audit
from switchboard.services.queue_directory import list_member_agents
from switchboard.utils.errors import AlreadyAssigned, InvalidState, NotFound, NotQueueMember

logger = logging.getLogger(__name__)

AUTO_ASSIGNER_ACTOR = "auto_assigner"
BATCH_SIZE = 50


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from switchboard.utils.redis import get_redis
        redis = await get_redis()
        await redis.set(
            "switchboard:worker_health:auto_assigner",
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Auto-assigner heartbeat skipped: %s", str(e))


async def _open_queued_conversations(session_factory: Callable, batch_size: int) -> list[tuple[uuid.UUID, uuid.UUID]]:
    async with session_factory() as db:
        result = await db.execute(
            select(Conversation.id, Conversation.queue_id)
            .join(Queue, Queue.id == Conversation.queue_id)
            .where(
                and_(
                    Conversation.status == ConversationStatus.OPEN,
                    Queue.active.is_(True),
                )
            )
            .order_by(Conversation.created_at, Conversation.id)
            .limit(batch_size)
        )
        return [(row[0], row[1]) for row in result.all()]


async def run_auto_assignment_cycle(
    session_factory: Callable,
    batch_size: int = BATCH_SIZE,
) -> list[tuple[uuid.UUID, str]]:
    """One sweep. Returns (conversation_id, agent_id) for every assignment made."""
    pending = await _open_queued_conversations(session_factory, batch_size)
    if not pending:
        return []

    members: dict[uuid.UUID, set[str]] = {}
    given: set[str] = set()
    assigned = []

    for conversation_id, queue_id in pending:
        async with session_factory() as db:
            if queue_id not in members:
                members[queue_id] = await list_member_agents(db, queue_id)
            candidates = sorted(members[queue_id] - given)
            if not candidates:
                continue

            try:
                conversation = await auto_assign(db, conversation_id, candidates, AUTO_ASSIGNER_ACTOR)
            except AlreadyAssigned:
                logger.info("Auto-assigner lost race on %s", str(conversation_id)[:8])
                continue
            except (NotQueueMember, InvalidState, NotFound) as e:
                # Membership or status changed since the sweep query
                logger.info("Auto-assigner skipped %s: %s", str(conversation_id)[:8], e.message)
                continue

        agent_id = conversation.assigned_agent_id
        given.add(agent_id)
        assigned.append((conversation_id, agent_id))
        await record_audit(
            AUTO_ASSIGNER_ACTOR, "conversation.auto_assign", "conversation", conversation_id,
            {"agent_id": agent_id, "queue_id": str(queue_id), "candidates": candidates},
            session_factory=session_factory,
        )

    if assigned:
        logger.info("Auto-assigner assigned %d of %d open conversations", len(assigned), len(pending))
    return assigned


async def run_auto_assigner(
    session_factory: Callable,
    poll_seconds: Optional[int] = None,
    stop_event: Optional[asyncio.Event] = None,
):
    """Main loop - sweep open conversations until stop_event is set."""
    if poll_seconds is None:
        from switchboard.config import get_settings
        poll_seconds = get_settings().auto_assign_poll_seconds
    stop_event = stop_event or asyncio.Event()
    logger.info("Auto-assigner started (poll every %ds)", poll_seconds)

    while not stop_event.is_set():
        try:
            await run_auto_assignment_cycle(session_factory)
        except Exception as e:
            logger.error("Auto-assigner error: %s", str(e))

        await _heartbeat()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Auto-assigner stopped")
