"""
Campaign commands - templates, campaign creation, scheduling, requeue and
read-only projections.

State machine:
    draft -> scheduled -> running -> completed | failed

Status writes are compare-and-set updates on the campaign row. The run loop
itself lives in workers/campaign_runner.py; claim_run() here is the single
gate that lets a loop start.
"""
import logging
import math
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.models.campaign import (
    Campaign,
    CampaignEvent,
    CampaignStatus,
    CampaignTarget,
    MessageTemplate,
    TargetStatus,
)
from switchboard.utils.errors import (
    AlreadyRunning,
    InvalidRequest,
    InvalidState,
    NotFound,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"{{\s*(\w+)\s*}}")

MAX_TARGETS_PER_CAMPAIGN = 10000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC. Naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def render_template(body: str, variables: Optional[dict[str, Any]] = None) -> str:
    """Replace {{ name }} placeholders. Unknown names render as empty strings."""
    variables = variables or {}

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_sub, body or "")


def add_event(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    event_type: str,
    target_id: Optional[uuid.UUID] = None,
    details: Optional[dict] = None,
) -> CampaignEvent:
    event = CampaignEvent(
        campaign_id=campaign_id,
        target_id=target_id,
        event_type=event_type,
        details=details or {},
    )
    db.add(event)
    return event


# === TEMPLATES ===


async def create_template(
    db: AsyncSession,
    name: str,
    body: str,
    variables: Optional[list[str]] = None,
    actor_id: Optional[str] = None,
) -> MessageTemplate:
    if not (name or "").strip():
        raise InvalidRequest("Template name is required")
    if not (body or "").strip():
        raise InvalidRequest("Template body is required")

    declared = [v.strip() for v in (variables or []) if v and v.strip()]
    # Placeholders used in the body are always declared
    declared.extend(PLACEHOLDER_RE.findall(body))
    unique_vars = list(dict.fromkeys(declared))

    template = MessageTemplate(
        name=name.strip(),
        body=body,
        variables=unique_vars,
        created_by=actor_id,
    )
    db.add(template)
    await db.commit()
    return template


async def list_templates(db: AsyncSession) -> list[MessageTemplate]:
    result = await db.execute(
        select(MessageTemplate).order_by(MessageTemplate.created_at.desc())
    )
    return list(result.scalars().all())


# === CAMPAIGNS ===


def _validate_delays(delay_min_ms: int, delay_max_ms: int, settings) -> None:
    if delay_min_ms < 0 or delay_max_ms < 0:
        raise InvalidRequest("Delays must be non-negative")
    if delay_min_ms > delay_max_ms:
        raise InvalidRequest("delay_min_ms must not exceed delay_max_ms")
    # The run lease must outlive one pacing sleep plus one delivery attempt
    budget_seconds = delay_max_ms / 1000 + settings.delivery_timeout_seconds
    if budget_seconds >= settings.campaign_lease_seconds:
        raise InvalidRequest(
            f"delay_max_ms too large for the {settings.campaign_lease_seconds}s run lease"
        )


async def create_campaign(
    db: AsyncSession,
    name: str,
    template_id: uuid.UUID,
    connection_id: str,
    targets: list[dict],
    actor_id: Optional[str] = None,
    scheduled_at: Optional[datetime] = None,
    delay_min_ms: Optional[int] = None,
    delay_max_ms: Optional[int] = None,
    settings=None,
) -> Campaign:
    """
    Create a campaign with its ordered target list.
    Targets are deduplicated by contact; the first occurrence keeps its position.
    With scheduled_at the campaign starts in SCHEDULED, otherwise DRAFT.
    """
    if settings is None:
        from switchboard.config import get_settings
        settings = get_settings()

    if not (name or "").strip():
        raise InvalidRequest("Campaign name is required")
    if not connection_id:
        raise InvalidRequest("connection_id is required")
    template = await db.get(MessageTemplate, template_id)
    if not template:
        raise NotFound("Template not found")

    delay_min_ms = settings.campaign_delay_min_ms if delay_min_ms is None else delay_min_ms
    delay_max_ms = settings.campaign_delay_max_ms if delay_max_ms is None else delay_max_ms
    _validate_delays(delay_min_ms, delay_max_ms, settings)

    seen: set[str] = set()
    cleaned: list[dict] = []
    for raw in targets or []:
        contact = str(raw.get("contact") or "").strip()
        if not contact or contact in seen:
            continue
        seen.add(contact)
        cleaned.append({"contact": contact, "variables": raw.get("variables") or {}})
    if len(cleaned) > MAX_TARGETS_PER_CAMPAIGN:
        raise InvalidRequest(f"At most {MAX_TARGETS_PER_CAMPAIGN} targets per campaign")

    scheduled_at = as_utc(scheduled_at)
    campaign = Campaign(
        id=uuid.uuid4(),
        name=name.strip(),
        template_id=template.id,
        connection_id=connection_id,
        status=CampaignStatus.SCHEDULED if scheduled_at else CampaignStatus.DRAFT,
        scheduled_at=scheduled_at,
        delay_min_ms=delay_min_ms,
        delay_max_ms=delay_max_ms,
        created_by=actor_id,
    )
    db.add(campaign)
    await db.flush()

    for position, item in enumerate(cleaned):
        db.add(CampaignTarget(
            campaign_id=campaign.id,
            position=position,
            contact=item["contact"],
            variables=item["variables"],
            status=TargetStatus.PENDING,
        ))

    add_event(db, campaign.id, "created", details={"targets": len(cleaned)})
    if scheduled_at:
        add_event(db, campaign.id, "scheduled", details={"scheduled_at": scheduled_at.isoformat()})
    await db.commit()

    logger.info(
        "Campaign created: %s (%s) targets=%d status=%s",
        campaign.name, str(campaign.id)[:8], len(cleaned), campaign.status,
        extra={"campaign_id": str(campaign.id)},
    )
    return campaign


async def get_campaign(db: AsyncSession, campaign_id: uuid.UUID) -> Campaign:
    campaign = await db.get(Campaign, campaign_id, populate_existing=True)
    if not campaign:
        raise NotFound("Campaign not found")
    return campaign


async def list_campaigns(db: AsyncSession) -> list[Campaign]:
    result = await db.execute(select(Campaign).order_by(Campaign.created_at.desc()))
    return list(result.scalars().all())


async def count_targets_by_status(db: AsyncSession, campaign_id: uuid.UUID) -> dict[str, int]:
    result = await db.execute(
        select(CampaignTarget.status, func.count())
        .where(CampaignTarget.campaign_id == campaign_id)
        .group_by(CampaignTarget.status)
    )
    counts = {status: 0 for status in TargetStatus.ALL}
    for status, total in result.all():
        counts[status] = int(total)
    return counts


async def _set_status(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    from_statuses: tuple[str, ...],
    values: dict[str, Any],
) -> bool:
    """Compare-and-set on campaign status."""
    result = await db.execute(
        update(Campaign)
        .where(and_(Campaign.id == campaign_id, Campaign.status.in_(from_statuses)))
        .values(**values, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def schedule_campaign(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    scheduled_at: Optional[datetime] = None,
    actor_id: Optional[str] = None,
) -> Campaign:
    """Record when a draft campaign should run. Does not start sending."""
    campaign = await get_campaign(db, campaign_id)
    if campaign.status != CampaignStatus.DRAFT:
        raise InvalidState(f"Only draft campaigns can be scheduled (status={campaign.status})")

    when = as_utc(scheduled_at) or utcnow()
    won = await _set_status(
        db, campaign_id, (CampaignStatus.DRAFT,),
        {"status": CampaignStatus.SCHEDULED, "scheduled_at": when},
    )
    if not won:
        await db.rollback()
        raise InvalidState("Campaign changed concurrently")

    add_event(db, campaign_id, "scheduled", details={"scheduled_at": when.isoformat(), "actor_id": actor_id})
    await db.commit()
    return await get_campaign(db, campaign_id)


async def claim_run(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    lease_seconds: int,
    actor_id: Optional[str] = None,
) -> str:
    """
    Move a campaign to RUNNING and hand out the run token.

    Claimable from DRAFT or SCHEDULED, or from RUNNING when the previous
    holder stopped heartbeating for longer than the lease (crashed process).
    Raises AlreadyRunning when a live loop holds the campaign.
    """
    now = utcnow()
    token = uuid.uuid4().hex
    stale_before = now - timedelta(seconds=lease_seconds)

    previous = await get_campaign(db, campaign_id)
    reclaiming = previous.status == CampaignStatus.RUNNING

    result = await db.execute(
        update(Campaign)
        .where(
            and_(
                Campaign.id == campaign_id,
                or_(
                    Campaign.status.in_(CampaignStatus.RUNNABLE),
                    and_(
                        Campaign.status == CampaignStatus.RUNNING,
                        or_(
                            Campaign.heartbeat_at.is_(None),
                            Campaign.heartbeat_at < stale_before,
                        ),
                    ),
                ),
            )
        )
        .values(
            status=CampaignStatus.RUNNING,
            run_token=token,
            heartbeat_at=now,
            last_error=None,
            stop_requested_at=None,
            stop_requested_by=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        await db.rollback()
        current = await get_campaign(db, campaign_id)
        if current.status == CampaignStatus.RUNNING:
            raise AlreadyRunning("Campaign already has an active run")
        raise InvalidState(f"Campaign cannot run from status {current.status}")

    add_event(
        db, campaign_id, "started",
        details={"actor_id": actor_id, "resumed_stale_run": reclaiming},
    )
    await db.commit()
    return token


async def request_stop(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    lease_seconds: int,
    actor_id: Optional[str] = None,
) -> Campaign:
    """
    Record an operator stop on a RUNNING campaign.

    The campaign stays RUNNING, token and all, until the lease holder has
    committed its in-flight target and hands the campaign back as SCHEDULED
    (see CampaignRunner). Until then a run from any process gets
    AlreadyRunning. A campaign whose lease already expired has no loop left
    to ask, so it is released here directly.
    """
    now = utcnow()
    stale_before = now - timedelta(seconds=lease_seconds)

    campaign = await get_campaign(db, campaign_id)
    if campaign.status != CampaignStatus.RUNNING:
        raise InvalidState(f"Campaign is not running (status={campaign.status})")

    released = await db.execute(
        update(Campaign)
        .where(
            and_(
                Campaign.id == campaign_id,
                Campaign.status == CampaignStatus.RUNNING,
                or_(
                    Campaign.heartbeat_at.is_(None),
                    Campaign.heartbeat_at < stale_before,
                ),
            )
        )
        .values(
            status=CampaignStatus.SCHEDULED,
            scheduled_at=None,
            run_token=None,
            stop_requested_at=None,
            stop_requested_by=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if (released.rowcount or 0) == 1:
        add_event(db, campaign_id, "stopped", details={"actor_id": actor_id, "stale_run": True})
        await db.commit()
        logger.info("Campaign %s had no live loop; released on stop", str(campaign_id)[:8],
                    extra={"campaign_id": str(campaign_id)})
        return await get_campaign(db, campaign_id)

    requested = await db.execute(
        update(Campaign)
        .where(
            and_(
                Campaign.id == campaign_id,
                Campaign.status == CampaignStatus.RUNNING,
                Campaign.stop_requested_at.is_(None),
            )
        )
        .values(stop_requested_at=now, stop_requested_by=actor_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    # Zero rows: already requested, or the loop finished in between
    if (requested.rowcount or 0) == 1:
        add_event(db, campaign_id, "stop_requested", details={"actor_id": actor_id})
    await db.commit()
    return await get_campaign(db, campaign_id)


async def requeue_failed(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    actor_id: Optional[str] = None,
) -> int:
    """
    Operator re-queue: FAILED targets go back to PENDING and a finished
    campaign returns to SCHEDULED (without a time) so it can be run again.
    """
    campaign = await get_campaign(db, campaign_id)
    if campaign.status == CampaignStatus.RUNNING:
        raise InvalidState("Cannot requeue targets while the campaign is running")

    result = await db.execute(
        update(CampaignTarget)
        .where(
            and_(
                CampaignTarget.campaign_id == campaign_id,
                CampaignTarget.status == TargetStatus.FAILED,
            )
        )
        .values(status=TargetStatus.PENDING, last_error=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    requeued = result.rowcount or 0

    if requeued and campaign.status in CampaignStatus.FINISHED:
        won = await _set_status(
            db, campaign_id, CampaignStatus.FINISHED,
            {"status": CampaignStatus.SCHEDULED, "scheduled_at": None, "last_error": None},
        )
        if not won:
            await db.rollback()
            raise InvalidState("Campaign changed concurrently")

    add_event(db, campaign_id, "requeued", details={"targets": requeued, "actor_id": actor_id})
    await db.commit()
    logger.info(
        "Campaign %s: %d failed targets requeued",
        str(campaign_id)[:8], requeued,
        extra={"campaign_id": str(campaign_id)},
    )
    return requeued


# === READ PROJECTIONS ===


def _page_bounds(page: int, per_page: int) -> tuple[int, int]:
    page = max(1, page)
    per_page = max(1, min(per_page, 500))
    return page, per_page


async def get_targets(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    status: Optional[str] = None,
    page: int = 1,
    per_page: int = 100,
) -> dict:
    """Targets in creation order, optionally filtered by status."""
    await get_campaign(db, campaign_id)
    if status is not None and status not in TargetStatus.ALL:
        raise InvalidRequest(f"Unknown target status: {status}")
    page, per_page = _page_bounds(page, per_page)

    conditions = [CampaignTarget.campaign_id == campaign_id]
    if status:
        conditions.append(CampaignTarget.status == status)

    total = (await db.execute(
        select(func.count()).select_from(CampaignTarget).where(and_(*conditions))
    )).scalar() or 0
    result = await db.execute(
        select(CampaignTarget)
        .where(and_(*conditions))
        .order_by(CampaignTarget.position)
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return {
        "items": list(result.scalars().all()),
        "total": total,
        "page": page,
        "pages": math.ceil(total / per_page) if total else 0,
    }


async def get_events(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    page: int = 1,
    per_page: int = 100,
) -> dict:
    """Campaign event log, oldest first."""
    await get_campaign(db, campaign_id)
    page, per_page = _page_bounds(page, per_page)

    total = (await db.execute(
        select(func.count()).select_from(CampaignEvent).where(CampaignEvent.campaign_id == campaign_id)
    )).scalar() or 0
    result = await db.execute(
        select(CampaignEvent)
        .where(CampaignEvent.campaign_id == campaign_id)
        .order_by(CampaignEvent.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return {
        "items": list(result.scalars().all()),
        "total": total,
        "page": page,
        "pages": math.ceil(total / per_page) if total else 0,
    }
