"""
Conversation endpoints - creation, assignment, status lifecycle, history.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.deps import get_actor_id, get_session_factory, iso, parse_uuid
from switchboard.database import get_db
from switchboard.schemas.api_requests import (
    AssignRequest,
    AutoAssignRequest,
    ChangeStatusRequest,
    CreateConversationRequest,
)
from switchboard.services import assignment
from switchboard.services import conversation_store as store
from switchboard.services.audit import record_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


def serialize_conversation(conversation) -> dict:
    return {
        "id": str(conversation.id),
        "status": conversation.status,
        "assigned_agent_id": conversation.assigned_agent_id,
        "queue_id": str(conversation.queue_id) if conversation.queue_id else None,
        "connection_id": conversation.connection_id,
        "contact": conversation.contact,
        "created_at": iso(conversation.created_at),
        "updated_at": iso(conversation.updated_at),
    }


@router.post("", status_code=201)
async def create_conversation(
    payload: CreateConversationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    queue_id = parse_uuid(payload.queue_id, "queue ID") if payload.queue_id else None
    conversation = await store.create_conversation(
        db, payload.connection_id, contact=payload.contact, queue_id=queue_id, actor_id=actor_id,
    )
    await db.commit()
    await record_audit(
        actor_id, "conversation.create", "conversation", conversation.id,
        {"connection_id": payload.connection_id},
        session_factory=get_session_factory(request),
    )
    return serialize_conversation(conversation)


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    db: AsyncSession = Depends(get_db),
):
    conversation = await store.get_conversation(db, parse_uuid(conversation_id, "conversation ID"))
    return serialize_conversation(conversation)


@router.post("/{conversation_id}/assign")
async def assign_conversation(
    conversation_id: str,
    payload: AssignRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    """Manual assignment or reassignment."""
    cid = parse_uuid(conversation_id, "conversation ID")
    conversation = await assignment.manual_assign(db, cid, payload.agent_id, actor_id, payload.reason)
    await record_audit(
        actor_id, "conversation.assign", "conversation", cid,
        {"agent_id": payload.agent_id, "reason": payload.reason},
        session_factory=get_session_factory(request),
    )
    return serialize_conversation(conversation)


@router.post("/{conversation_id}/auto-assign")
async def auto_assign_conversation(
    conversation_id: str,
    payload: AutoAssignRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    """Least-loaded assignment among the candidates."""
    cid = parse_uuid(conversation_id, "conversation ID")
    conversation = await assignment.auto_assign(db, cid, payload.candidate_agent_ids, actor_id)
    await record_audit(
        actor_id, "conversation.auto_assign", "conversation", cid,
        {"agent_id": conversation.assigned_agent_id, "candidates": payload.candidate_agent_ids},
        session_factory=get_session_factory(request),
    )
    return serialize_conversation(conversation)


@router.post("/{conversation_id}/status")
async def change_conversation_status(
    conversation_id: str,
    payload: ChangeStatusRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    cid = parse_uuid(conversation_id, "conversation ID")
    conversation = await assignment.change_status(
        db, cid, payload.status, actor_id, agent_id=payload.agent_id,
    )
    await record_audit(
        actor_id, "conversation.status", "conversation", cid,
        {"status": payload.status},
        session_factory=get_session_factory(request),
    )
    return serialize_conversation(conversation)


@router.get("/{conversation_id}/history")
async def get_conversation_history(
    conversation_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Assignment and status trails, oldest first."""
    history = await assignment.get_history(db, parse_uuid(conversation_id, "conversation ID"))
    return {
        "assignments": [
            {
                "agent_id": e.agent_id,
                "previous_agent_id": e.previous_agent_id,
                "actor_id": e.actor_id,
                "reason": e.reason,
                "created_at": iso(e.created_at),
            }
            for e in history["assignments"]
        ],
        "status_events": [
            {
                "from_status": e.from_status,
                "to_status": e.to_status,
                "actor_id": e.actor_id,
                "created_at": iso(e.created_at),
            }
            for e in history["status_events"]
        ],
    }
