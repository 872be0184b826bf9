"""
Queue directory admin - queues and their agent / connection membership.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.deps import get_actor_id, get_session_factory, iso, parse_uuid
from switchboard.database import get_db
from switchboard.schemas.api_requests import CreateQueueRequest, SetQueueActiveRequest
from switchboard.services import queue_directory
from switchboard.services.audit import record_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/queues", tags=["queues"])


@router.post("", status_code=201)
async def create_queue(
    payload: CreateQueueRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    queue = await queue_directory.create_queue(db, payload.name, active=payload.active)
    await record_audit(
        actor_id, "queue.create", "queue", queue.id, {"name": queue.name},
        session_factory=get_session_factory(request),
    )
    return {
        "id": str(queue.id),
        "name": queue.name,
        "active": queue.active,
        "created_at": iso(queue.created_at),
    }


@router.get("/{queue_id}/members")
async def get_queue_members(
    queue_id: str,
    db: AsyncSession = Depends(get_db),
):
    qid = parse_uuid(queue_id, "queue ID")
    queue = await queue_directory.get_queue(db, qid)
    return {
        "id": str(queue.id),
        "name": queue.name,
        "active": queue.active,
        "agent_ids": sorted(await queue_directory.list_member_agents(db, qid)),
        "connection_ids": sorted(await queue_directory.list_member_connections(db, qid)),
    }


@router.put("/{queue_id}/active")
async def set_queue_active(
    queue_id: str,
    payload: SetQueueActiveRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    """An inactive queue keeps its members but hands no conversations to them."""
    qid = parse_uuid(queue_id, "queue ID")
    queue = await queue_directory.set_queue_active(db, qid, payload.active)
    await record_audit(
        actor_id, "queue.set_active", "queue", qid, {"active": queue.active},
        session_factory=get_session_factory(request),
    )
    return {"id": str(queue.id), "name": queue.name, "active": queue.active}


async def _membership_change(request, db, actor_id, queue_id, member, action, change):
    qid = parse_uuid(queue_id, "queue ID")
    changed = await change(db, qid, member)
    if changed:
        await record_audit(
            actor_id, f"queue.{action}", "queue", qid, {"member": member},
            session_factory=get_session_factory(request),
        )
    return {"queue_id": str(qid), "member": member, "changed": changed}


@router.post("/{queue_id}/agents/{agent_id}")
async def add_agent(
    queue_id: str,
    agent_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    return await _membership_change(
        request, db, actor_id, queue_id, agent_id, "add_agent", queue_directory.add_member_agent,
    )


@router.delete("/{queue_id}/agents/{agent_id}")
async def remove_agent(
    queue_id: str,
    agent_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    return await _membership_change(
        request, db, actor_id, queue_id, agent_id, "remove_agent", queue_directory.remove_member_agent,
    )


@router.post("/{queue_id}/connections/{connection_id}")
async def add_connection(
    queue_id: str,
    connection_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    return await _membership_change(
        request, db, actor_id, queue_id, connection_id, "add_connection",
        queue_directory.add_member_connection,
    )


@router.delete("/{queue_id}/connections/{connection_id}")
async def remove_connection(
    queue_id: str,
    connection_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    return await _membership_change(
        request, db, actor_id, queue_id, connection_id, "remove_connection",
        queue_directory.remove_member_connection,
    )
