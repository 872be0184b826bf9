"""
Conversation store - persisted conversations plus their assignment and status
event trails.

All writes to a conversation row go through compare_and_set(), the store's
optimistic-concurrency primitive: the UPDATE only lands if the row still holds
the values the caller read. Nothing here commits; callers own the transaction
so that a row change and its events are committed together.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.models.conversation import (
    Conversation,
    ConversationStatus,
    AssignmentEvent,
    StatusEvent,
)
from switchboard.utils.errors import NotFound, InvalidRequest, InvalidState

logger = logging.getLogger(__name__)


def check_invariant(status: str, assigned_agent_id: Optional[str]) -> None:
    """assigned <=> agent set. Raised before any write that would break it."""
    if status not in ConversationStatus.ALL:
        raise InvalidRequest(f"Unknown conversation status: {status}")
    if status == ConversationStatus.ASSIGNED and not assigned_agent_id:
        raise InvalidState("assigned conversation requires an agent")
    if status != ConversationStatus.ASSIGNED and assigned_agent_id is not None:
        raise InvalidState(f"{status} conversation cannot carry an agent")


async def get_conversation(db: AsyncSession, conversation_id: uuid.UUID) -> Conversation:
    """Load a conversation, always re-reading the row (never the identity map)."""
    conversation = await db.get(Conversation, conversation_id, populate_existing=True)
    if not conversation:
        raise NotFound("Conversation not found")
    return conversation


async def create_conversation(
    db: AsyncSession,
    connection_id: str,
    contact: Optional[str] = None,
    queue_id: Optional[uuid.UUID] = None,
    actor_id: Optional[str] = None,
) -> Conversation:
    """
    Create an OPEN conversation on a connection.
    Without an explicit queue, the first active queue holding the connection is used.
    """
    if not connection_id:
        raise InvalidRequest("connection_id is required")

    if queue_id is None:
        from switchboard.services.queue_directory import queues_for_connection
        queues = await queues_for_connection(db, connection_id)
        if queues:
            queue_id = queues[0].id
    else:
        from switchboard.services.queue_directory import get_queue
        await get_queue(db, queue_id)

    conversation = Conversation(
        id=uuid.uuid4(),
        status=ConversationStatus.OPEN,
        assigned_agent_id=None,
        queue_id=queue_id,
        connection_id=connection_id,
        contact=contact,
    )
    db.add(conversation)
    await db.flush()
    append_status_event(db, conversation.id, None, ConversationStatus.OPEN, actor_id)
    return conversation


async def get_or_create_for_contact(
    db: AsyncSession,
    connection_id: str,
    contact: str,
    actor_id: Optional[str] = None,
) -> Conversation:
    """Latest non-closed conversation with a contact on a connection, or a new one."""
    result = await db.execute(
        select(Conversation)
        .where(
            and_(
                Conversation.connection_id == connection_id,
                Conversation.contact == contact,
                Conversation.status != ConversationStatus.CLOSED,
            )
        )
        .order_by(desc(Conversation.created_at))
        .limit(1)
    )
    conversation = result.scalar_one_or_none()
    if conversation:
        return conversation
    return await create_conversation(db, connection_id, contact=contact, actor_id=actor_id)


async def compare_and_set(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    expected: dict[str, Any],
    values: dict[str, Any],
) -> bool:
    """
    Conditional update: write `values` only if every column in `expected`
    still holds the expected value. Returns False when the row moved on.
    """
    new_status = values.get("status", expected.get("status"))
    new_agent = values.get("assigned_agent_id", expected.get("assigned_agent_id"))
    check_invariant(new_status, new_agent)

    conditions = [Conversation.id == conversation_id]
    for column_name, expected_value in expected.items():
        column = getattr(Conversation, column_name)
        if expected_value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == expected_value)

    result = await db.execute(
        update(Conversation)
        .where(and_(*conditions))
        .values(**values, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


def append_assignment_event(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    agent_id: str,
    actor_id: Optional[str],
    reason: Optional[str],
    previous_agent_id: Optional[str] = None,
) -> AssignmentEvent:
    event = AssignmentEvent(
        conversation_id=conversation_id,
        agent_id=agent_id,
        previous_agent_id=previous_agent_id,
        actor_id=actor_id,
        reason=reason,
    )
    db.add(event)
    return event


def append_status_event(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    from_status: Optional[str],
    to_status: str,
    actor_id: Optional[str],
) -> StatusEvent:
    event = StatusEvent(
        conversation_id=conversation_id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
    )
    db.add(event)
    return event


async def count_assigned_by_agents(db: AsyncSession, agent_ids: list[str]) -> dict[str, int]:
    """Current load: assigned (not closed) conversations per agent. Missing agents count 0."""
    loads = {agent_id: 0 for agent_id in agent_ids}
    if not agent_ids:
        return loads
    result = await db.execute(
        select(Conversation.assigned_agent_id, func.count())
        .where(
            and_(
                Conversation.assigned_agent_id.in_(agent_ids),
                Conversation.status == ConversationStatus.ASSIGNED,
            )
        )
        .group_by(Conversation.assigned_agent_id)
    )
    for agent_id, total in result.all():
        loads[agent_id] = int(total)
    return loads


async def list_assignment_events(db: AsyncSession, conversation_id: uuid.UUID) -> list[AssignmentEvent]:
    result = await db.execute(
        select(AssignmentEvent)
        .where(AssignmentEvent.conversation_id == conversation_id)
        .order_by(AssignmentEvent.id)
    )
    return list(result.scalars().all())


async def list_status_events(db: AsyncSession, conversation_id: uuid.UUID) -> list[StatusEvent]:
    result = await db.execute(
        select(StatusEvent)
        .where(StatusEvent.conversation_id == conversation_id)
        .order_by(StatusEvent.id)
    )
    return list(result.scalars().all())
