"""
Campaign dispatch API - templates, campaign lifecycle, targets and events.

POST /campaigns/{id}/run answers 202 with the RUNNING campaign; progress is
observed by polling /targets and /events.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.deps import get_actor_id, get_session_factory, iso, parse_uuid
from switchboard.database import get_db
from switchboard.schemas.api_requests import (
    CreateCampaignRequest,
    CreateTemplateRequest,
    ScheduleCampaignRequest,
)
from switchboard.services import campaigns as campaign_service
from switchboard.services.audit import record_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["campaigns"])


def _runner(request: Request):
    return request.app.state.campaign_runner


def serialize_template(template) -> dict:
    return {
        "id": str(template.id),
        "name": template.name,
        "body": template.body,
        "variables": template.variables or [],
        "created_by": template.created_by,
        "created_at": iso(template.created_at),
    }


def serialize_campaign(campaign, counts: Optional[dict] = None) -> dict:
    data = {
        "id": str(campaign.id),
        "name": campaign.name,
        "template_id": str(campaign.template_id),
        "connection_id": campaign.connection_id,
        "status": campaign.status,
        "scheduled_at": iso(campaign.scheduled_at),
        "delay_min_ms": campaign.delay_min_ms,
        "delay_max_ms": campaign.delay_max_ms,
        "heartbeat_at": iso(campaign.heartbeat_at),
        "stop_requested_at": iso(campaign.stop_requested_at),
        "stop_requested_by": campaign.stop_requested_by,
        "last_error": campaign.last_error,
        "created_by": campaign.created_by,
        "created_at": iso(campaign.created_at),
        "updated_at": iso(campaign.updated_at),
    }
    if counts is not None:
        data["target_counts"] = counts
    return data


def serialize_target(target) -> dict:
    return {
        "id": str(target.id),
        "position": target.position,
        "contact": target.contact,
        "variables": target.variables or {},
        "status": target.status,
        "last_error": target.last_error,
        "sent_at": iso(target.sent_at),
        "conversation_id": str(target.conversation_id) if target.conversation_id else None,
    }


def serialize_event(event) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "target_id": str(event.target_id) if event.target_id else None,
        "details": event.details or {},
        "created_at": iso(event.created_at),
    }


# === TEMPLATES ===


@router.post("/templates", status_code=201)
async def create_template(
    payload: CreateTemplateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    template = await campaign_service.create_template(
        db, payload.name, payload.body, payload.variables, actor_id=actor_id,
    )
    await record_audit(
        actor_id, "template.create", "template", template.id, {"name": template.name},
        session_factory=get_session_factory(request),
    )
    return serialize_template(template)


@router.get("/templates")
async def list_templates(db: AsyncSession = Depends(get_db)):
    templates = await campaign_service.list_templates(db)
    return {"templates": [serialize_template(t) for t in templates]}


# === CAMPAIGNS ===


@router.post("/campaigns", status_code=201)
async def create_campaign(
    payload: CreateCampaignRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    campaign = await campaign_service.create_campaign(
        db,
        name=payload.name,
        template_id=parse_uuid(payload.template_id, "template ID"),
        connection_id=payload.connection_id,
        targets=[t.model_dump() for t in payload.targets],
        actor_id=actor_id,
        scheduled_at=payload.scheduled_at,
        delay_min_ms=payload.delay_min_ms,
        delay_max_ms=payload.delay_max_ms,
        settings=_runner(request).settings,
    )
    counts = await campaign_service.count_targets_by_status(db, campaign.id)
    await record_audit(
        actor_id, "campaign.create", "campaign", campaign.id,
        {"name": campaign.name, "targets": sum(counts.values())},
        session_factory=get_session_factory(request),
    )
    return serialize_campaign(campaign, counts)


@router.get("/campaigns")
async def list_campaigns(db: AsyncSession = Depends(get_db)):
    campaigns = await campaign_service.list_campaigns(db)
    return {"campaigns": [serialize_campaign(c) for c in campaigns]}


@router.get("/campaigns/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    db: AsyncSession = Depends(get_db),
):
    cid = parse_uuid(campaign_id, "campaign ID")
    campaign = await campaign_service.get_campaign(db, cid)
    counts = await campaign_service.count_targets_by_status(db, cid)
    return serialize_campaign(campaign, counts)


@router.post("/campaigns/{campaign_id}/schedule")
async def schedule_campaign(
    campaign_id: str,
    payload: ScheduleCampaignRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    cid = parse_uuid(campaign_id, "campaign ID")
    campaign = await campaign_service.schedule_campaign(db, cid, payload.scheduled_at, actor_id)
    await record_audit(
        actor_id, "campaign.schedule", "campaign", cid,
        {"scheduled_at": iso(campaign.scheduled_at)},
        session_factory=get_session_factory(request),
    )
    return serialize_campaign(campaign)


@router.post("/campaigns/{campaign_id}/run", status_code=202)
async def run_campaign(
    campaign_id: str,
    request: Request,
    actor_id=Depends(get_actor_id),
):
    """Start the send loop in the background and return immediately."""
    cid = parse_uuid(campaign_id, "campaign ID")
    campaign = await _runner(request).run(cid, actor_id=actor_id)
    await record_audit(
        actor_id, "campaign.run", "campaign", cid, {},
        session_factory=get_session_factory(request),
    )
    return serialize_campaign(campaign)


@router.post("/campaigns/{campaign_id}/stop", status_code=202)
async def stop_campaign(
    campaign_id: str,
    request: Request,
    actor_id=Depends(get_actor_id),
):
    """Record the stop; the loop hands the campaign back as SCHEDULED once its in-flight target is committed."""
    cid = parse_uuid(campaign_id, "campaign ID")
    campaign = await _runner(request).stop(cid, actor_id=actor_id)
    await record_audit(
        actor_id, "campaign.stop", "campaign", cid, {},
        session_factory=get_session_factory(request),
    )
    return serialize_campaign(campaign)


@router.post("/campaigns/{campaign_id}/requeue")
async def requeue_failed_targets(
    campaign_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id=Depends(get_actor_id),
):
    cid = parse_uuid(campaign_id, "campaign ID")
    requeued = await campaign_service.requeue_failed(db, cid, actor_id=actor_id)
    campaign = await campaign_service.get_campaign(db, cid)
    await record_audit(
        actor_id, "campaign.requeue", "campaign", cid, {"targets": requeued},
        session_factory=get_session_factory(request),
    )
    return {"requeued": requeued, "campaign": serialize_campaign(campaign)}


@router.get("/campaigns/{campaign_id}/targets")
async def get_campaign_targets(
    campaign_id: str,
    status: Optional[str] = Query(None, description="pending, sent, failed"),
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    result = await campaign_service.get_targets(
        db, parse_uuid(campaign_id, "campaign ID"), status=status, page=page, per_page=per_page,
    )
    return {
        "targets": [serialize_target(t) for t in result["items"]],
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
    }


@router.get("/campaigns/{campaign_id}/events")
async def get_campaign_events(
    campaign_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    result = await campaign_service.get_events(
        db, parse_uuid(campaign_id, "campaign ID"), page=page, per_page=per_page,
    )
    return {
        "events": [serialize_event(e) for e in result["items"]],
        "total": result["total"],
        "page": result["page"],
        "pages": result["pages"],
    }
