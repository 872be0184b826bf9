"""
Campaign scheduler worker - starts SCHEDULED campaigns whose time has come.
Polls every campaign_scheduler_poll_seconds. Claiming goes through
CampaignRunner.run(), so two schedulers racing on one campaign start it once.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, and_

from switchboard.models.campaign import Campaign, CampaignStatus
from switchboard.utils.errors import AlreadyRunning, InvalidState, NotFound

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"
BATCH_SIZE = 20


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from switchboard.utils.redis import get_redis
        redis = await get_redis()
        await redis.set(
            "switchboard:worker_health:campaign_scheduler",
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Scheduler heartbeat skipped: %s", str(e))


async def start_due_campaigns(runner, now: Optional[datetime] = None) -> list[uuid.UUID]:
    """Run every SCHEDULED campaign with scheduled_at <= now. Returns the ones started."""
    now = now or datetime.now(timezone.utc)
    async with runner.session_factory() as db:
        result = await db.execute(
            select(Campaign.id)
            .where(
                and_(
                    Campaign.status == CampaignStatus.SCHEDULED,
                    Campaign.scheduled_at.is_not(None),
                    Campaign.scheduled_at <= now,
                )
            )
            .order_by(Campaign.scheduled_at)
            .limit(BATCH_SIZE)
        )
        due_ids = list(result.scalars().all())

    started = []
    for campaign_id in due_ids:
        try:
            await runner.run(campaign_id, actor_id=SCHEDULER_ACTOR)
            started.append(campaign_id)
        except (AlreadyRunning, InvalidState, NotFound) as e:
            # Lost the claim to another runner or an operator
            logger.info("Scheduled campaign %s not started: %s", str(campaign_id)[:8], e.message)

    if started:
        logger.info("Campaign scheduler started %d due campaigns", len(started))
    return started


async def run_campaign_scheduler(
    runner,
    poll_seconds: Optional[int] = None,
    stop_event: Optional[asyncio.Event] = None,
):
    """Main loop - poll for due campaigns until stop_event is set."""
    if poll_seconds is None:
        poll_seconds = runner.settings.campaign_scheduler_poll_seconds
    stop_event = stop_event or asyncio.Event()
    logger.info("Campaign scheduler started (poll every %ds)", poll_seconds)

    while not stop_event.is_set():
        try:
            await start_due_campaigns(runner)
        except Exception as e:
            logger.error("Campaign scheduler error: %s", str(e))

        await _heartbeat()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Campaign scheduler stopped")
