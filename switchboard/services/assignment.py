"""
Assignment engine - manual and automatic agent assignment plus the
conversation status lifecycle.

Concurrency model: no lock is held while choosing an agent. Every commit is a
compare-and-set against the row values read at the start of the attempt, so
only one assignment can land per "open" epoch of a conversation. The row
update and its events share one transaction: an assignment is never visible
without its audit trail.

Valid status transitions:
    open     -> assigned   (only together with an agent)
    open     -> closed
    assigned -> closed
    closed   -> open       (reopen)
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.models.conversation import Conversation, ConversationStatus
from switchboard.services import conversation_store as store
from switchboard.services.queue_directory import is_queue_member
from switchboard.utils.errors import (
    AlreadyAssigned,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NotQueueMember,
    PersistenceFailure,
)

logger = logging.getLogger(__name__)

AUTO_ASSIGN_REASON = "auto_assign"

# Re-read attempts when a compare-and-set loses to a concurrent writer
MAX_CAS_ATTEMPTS = 3

ALLOWED_TRANSITIONS = {
    (ConversationStatus.OPEN, ConversationStatus.ASSIGNED),
    (ConversationStatus.OPEN, ConversationStatus.CLOSED),
    (ConversationStatus.ASSIGNED, ConversationStatus.CLOSED),
    (ConversationStatus.CLOSED, ConversationStatus.OPEN),
}


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Assignment commit failed: %s", str(e))
        raise PersistenceFailure("Conversation store unavailable") from e


def select_least_loaded(loads: dict[str, int]) -> str:
    """Lowest load wins; ties go to the lowest agent id."""
    if not loads:
        raise InvalidRequest("No candidate agents")
    return min(loads.items(), key=lambda item: (item[1], item[0]))[0]


async def manual_assign(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    agent_id: str,
    actor_id: Optional[str],
    reason: Optional[str] = None,
) -> Conversation:
    """
    Assign (or reassign) a conversation to an agent.

    Raises NotFound, InvalidState (closed), NotQueueMember, or AlreadyAssigned
    when the row kept changing under us for MAX_CAS_ATTEMPTS reads.
    """
    if not agent_id:
        raise InvalidRequest("agent_id is required")

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        conversation = await store.get_conversation(db, conversation_id)
        if conversation.status == ConversationStatus.CLOSED:
            raise InvalidState("Conversation is closed")
        if not await is_queue_member(db, conversation.queue_id, agent_id):
            raise NotQueueMember(f"Agent {agent_id} is not a member of the conversation queue")

        from_status = conversation.status
        previous_agent = conversation.assigned_agent_id

        won = await store.compare_and_set(
            db,
            conversation_id,
            expected={"status": from_status, "assigned_agent_id": previous_agent},
            values={"status": ConversationStatus.ASSIGNED, "assigned_agent_id": agent_id},
        )
        if not won:
            await db.rollback()
            logger.info(
                "Manual assign lost race on %s (attempt %d)",
                str(conversation_id)[:8], attempt,
            )
            continue

        store.append_assignment_event(
            db, conversation_id, agent_id, actor_id, reason,
            previous_agent_id=previous_agent,
        )
        store.append_status_event(
            db, conversation_id, from_status, ConversationStatus.ASSIGNED, actor_id,
        )
        await _commit(db)

        logger.info(
            "Conversation %s assigned to %s (from %s)",
            str(conversation_id)[:8], agent_id, previous_agent or "-",
            extra={"conversation_id": str(conversation_id), "agent_id": agent_id},
        )
        return await store.get_conversation(db, conversation_id)

    raise AlreadyAssigned("Conversation changed concurrently, re-query and retry")


async def auto_assign(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    candidate_agent_ids: list[str],
    actor_id: Optional[str],
) -> Conversation:
    """
    Assign an open conversation to the least-loaded candidate.

    Load is the candidate's count of currently assigned conversations.
    The commit only succeeds if the conversation is still open and unassigned;
    a caller that loses the race gets AlreadyAssigned.
    """
    candidates = sorted({c for c in (candidate_agent_ids or []) if c})
    if not candidates:
        raise InvalidRequest("candidate_agent_ids must not be empty")

    conversation = await store.get_conversation(db, conversation_id)
    if conversation.status == ConversationStatus.CLOSED:
        raise InvalidState("Conversation is closed")
    if conversation.status != ConversationStatus.OPEN:
        raise AlreadyAssigned("Conversation is already assigned")

    for candidate in candidates:
        if not await is_queue_member(db, conversation.queue_id, candidate):
            raise NotQueueMember(f"Agent {candidate} is not a member of the conversation queue")

    loads = await store.count_assigned_by_agents(db, candidates)
    agent_id = select_least_loaded(loads)

    won = await store.compare_and_set(
        db,
        conversation_id,
        expected={"status": ConversationStatus.OPEN, "assigned_agent_id": None},
        values={"status": ConversationStatus.ASSIGNED, "assigned_agent_id": agent_id},
    )
    if not won:
        await db.rollback()
        logger.info(
            "Auto assign lost race on %s", str(conversation_id)[:8],
            extra={"conversation_id": str(conversation_id)},
        )
        raise AlreadyAssigned("Conversation was assigned concurrently")

    store.append_assignment_event(db, conversation_id, agent_id, actor_id, AUTO_ASSIGN_REASON)
    store.append_status_event(
        db, conversation_id, ConversationStatus.OPEN, ConversationStatus.ASSIGNED, actor_id,
    )
    await _commit(db)

    logger.info(
        "Conversation %s auto-assigned to %s (loads=%s)",
        str(conversation_id)[:8], agent_id, loads,
        extra={"conversation_id": str(conversation_id), "agent_id": agent_id},
    )
    return await store.get_conversation(db, conversation_id)


async def change_status(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    target_status: str,
    actor_id: Optional[str],
    agent_id: Optional[str] = None,
) -> Conversation:
    """
    Move a conversation along the status lifecycle.
    Closing and reopening both clear the assigned agent.
    """
    if target_status not in ConversationStatus.ALL:
        raise InvalidRequest(f"Unknown status: {target_status}")

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        conversation = await store.get_conversation(db, conversation_id)
        from_status = conversation.status
        if (from_status, target_status) not in ALLOWED_TRANSITIONS:
            raise InvalidTransition(f"Transition not allowed: {from_status} -> {target_status}")

        if target_status == ConversationStatus.ASSIGNED:
            if not agent_id:
                raise InvalidTransition("open -> assigned requires an agent")
            return await manual_assign(db, conversation_id, agent_id, actor_id)

        won = await store.compare_and_set(
            db,
            conversation_id,
            expected={"status": from_status, "assigned_agent_id": conversation.assigned_agent_id},
            values={"status": target_status, "assigned_agent_id": None},
        )
        if not won:
            await db.rollback()
            continue

        store.append_status_event(db, conversation_id, from_status, target_status, actor_id)
        await _commit(db)

        logger.info(
            "Conversation %s status %s -> %s",
            str(conversation_id)[:8], from_status, target_status,
            extra={"conversation_id": str(conversation_id)},
        )
        return await store.get_conversation(db, conversation_id)

    raise InvalidState("Conversation changed concurrently, re-query and retry")


async def get_history(db: AsyncSession, conversation_id: uuid.UUID) -> dict:
    """Assignment and status trails, oldest first. Read-only."""
    await store.get_conversation(db, conversation_id)
    return {
        "assignments": await store.list_assignment_events(db, conversation_id),
        "status_events": await store.list_status_events(db, conversation_id),
    }
