"""
Queue directory - queue to member agents / member connections.

The assignment engine only reads membership. Writes are admin operations;
each is a single-row insert or delete committed on its own, so a concurrent
reader sees the membership set either before or after the change, never a
partial set.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.models.queue import Queue, QueueAgent, QueueConnection
from switchboard.utils.errors import NotFound, InvalidRequest

logger = logging.getLogger(__name__)


async def create_queue(db: AsyncSession, name: str, active: bool = True) -> Queue:
    name = (name or "").strip()
    if not name:
        raise InvalidRequest("Queue name is required")
    queue = Queue(name=name, active=active)
    db.add(queue)
    await db.commit()
    logger.info("Queue created: %s (%s)", name, str(queue.id)[:8])
    return queue


async def get_queue(db: AsyncSession, queue_id: uuid.UUID) -> Queue:
    queue = await db.get(Queue, queue_id)
    if not queue:
        raise NotFound("Queue not found")
    return queue


async def set_queue_active(db: AsyncSession, queue_id: uuid.UUID, active: bool) -> Queue:
    """Open or close a queue for assignment. Membership is kept either way."""
    queue = await get_queue(db, queue_id)
    queue.active = active
    await db.commit()
    logger.info("Queue %s %s", queue.name, "activated" if active else "deactivated")
    return queue


async def list_member_agents(db: AsyncSession, queue_id: uuid.UUID) -> set[str]:
    result = await db.execute(
        select(QueueAgent.agent_id).where(QueueAgent.queue_id == queue_id)
    )
    return set(result.scalars().all())


async def list_member_connections(db: AsyncSession, queue_id: uuid.UUID) -> set[str]:
    result = await db.execute(
        select(QueueConnection.connection_id).where(QueueConnection.queue_id == queue_id)
    )
    return set(result.scalars().all())


async def is_queue_member(
    db: AsyncSession,
    queue_id: Optional[uuid.UUID],
    agent_id: str,
) -> bool:
    """
    Whether an agent may take conversations from a queue.
    A conversation with no queue accepts any agent; an inactive queue accepts none.
    """
    if queue_id is None:
        return True
    result = await db.execute(
        select(QueueAgent.agent_id)
        .join(Queue, Queue.id == QueueAgent.queue_id)
        .where(
            and_(
                QueueAgent.queue_id == queue_id,
                QueueAgent.agent_id == agent_id,
                Queue.active.is_(True),
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def queues_for_connection(db: AsyncSession, connection_id: str) -> list[Queue]:
    """Active queues holding a connection, oldest first."""
    result = await db.execute(
        select(Queue)
        .join(QueueConnection, QueueConnection.queue_id == Queue.id)
        .where(
            and_(
                QueueConnection.connection_id == connection_id,
                Queue.active.is_(True),
            )
        )
        .order_by(Queue.created_at, Queue.name)
    )
    return list(result.scalars().all())


async def add_member_agent(db: AsyncSession, queue_id: uuid.UUID, agent_id: str) -> bool:
    """Add an agent to a queue. Returns False if it was already a member."""
    await get_queue(db, queue_id)
    if not agent_id:
        raise InvalidRequest("agent_id is required")
    if agent_id in await list_member_agents(db, queue_id):
        return False
    db.add(QueueAgent(queue_id=queue_id, agent_id=agent_id))
    await db.commit()
    return True


async def remove_member_agent(db: AsyncSession, queue_id: uuid.UUID, agent_id: str) -> bool:
    await get_queue(db, queue_id)
    result = await db.execute(
        delete(QueueAgent).where(
            and_(QueueAgent.queue_id == queue_id, QueueAgent.agent_id == agent_id)
        )
    )
    await db.commit()
    return (result.rowcount or 0) > 0


async def add_member_connection(db: AsyncSession, queue_id: uuid.UUID, connection_id: str) -> bool:
    """Add a connection to a queue. Returns False if it was already a member."""
    await get_queue(db, queue_id)
    if not connection_id:
        raise InvalidRequest("connection_id is required")
    existing = await db.get(QueueConnection, (queue_id, connection_id))
    if existing:
        return False
    db.add(QueueConnection(queue_id=queue_id, connection_id=connection_id))
    await db.commit()
    return True


async def remove_member_connection(db: AsyncSession, queue_id: uuid.UUID, connection_id: str) -> bool:
    await get_queue(db, queue_id)
    result = await db.execute(
        delete(QueueConnection).where(
            and_(
                QueueConnection.queue_id == queue_id,
                QueueConnection.connection_id == connection_id,
            )
        )
    )
    await db.commit()
    return (result.rowcount or 0) > 0
