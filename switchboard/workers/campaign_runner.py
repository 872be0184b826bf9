"""
Campaign runner - the paced send loop behind run_campaign().

run() claims the campaign (compare-and-set to RUNNING with a fresh run
token), spawns a detached task and returns immediately. The loop walks
PENDING targets in position order:

    render -> send (bounded by delivery_timeout_seconds) -> record -> pace

Each target outcome commits in its own transaction together with the run
heartbeat, so a crashed process leaves exactly the unsent targets PENDING.
Status changes of the campaign row are guarded by the run token: a loop
whose token was revoked (stale-lease takeover) exits without touching the
campaign.

Operator stop never revokes the token. It records a stop request on the
row; the lease holder sees it (through its local event, or by polling the
row when the stop came from another process), commits the target it is
working on and only then hands the campaign back as SCHEDULED.
"""
import asyncio
import logging
import random
import uuid
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import SQLAlchemyError

from switchboard.database import async_session_factory
from switchboard.models.campaign import (
    Campaign,
    CampaignStatus,
    CampaignTarget,
    MessageTemplate,
    TargetStatus,
)
from switchboard.services.campaigns import (
    add_event,
    claim_run,
    get_campaign,
    render_template,
    request_stop,
    utcnow,
)
from switchboard.services.conversation_store import get_or_create_for_contact
from switchboard.services.delivery import (
    ChannelUnavailable,
    DeliveryChannel,
    DeliveryFailure,
    build_delivery_channel,
)
from switchboard.utils.errors import AlreadyRunning
from switchboard.utils.logging import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

STOP_OPERATOR = "operator"
STOP_SHUTDOWN = "shutdown"


class _LeaseLost(Exception):
    """The run token was revoked under a live loop."""


class _RunHandle:
    """In-process bookkeeping for one active loop."""

    def __init__(self, campaign_id: uuid.UUID, token: str):
        self.campaign_id = campaign_id
        self.token = token
        self.stop_event = asyncio.Event()
        self.stop_reason: Optional[str] = None
        self.task: Optional[asyncio.Task] = None

    def request_stop(self, reason: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self.stop_event.set()


class CampaignRunner:
    """Owns the run loops started by this process."""

    def __init__(
        self,
        session_factory=None,
        channel: Optional[DeliveryChannel] = None,
        settings=None,
        rng: Optional[random.Random] = None,
    ):
        if settings is None:
            from switchboard.config import get_settings
            settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory or async_session_factory
        self.channel = channel or build_delivery_channel(settings)
        self._rng = rng or random.Random()
        self._runs: dict[uuid.UUID, _RunHandle] = {}

    def is_running(self, campaign_id: uuid.UUID) -> bool:
        handle = self._runs.get(campaign_id)
        return handle is not None and handle.task is not None and not handle.task.done()

    async def run(self, campaign_id: uuid.UUID, actor_id: Optional[str] = None) -> Campaign:
        """Claim the campaign and start its loop. Returns the RUNNING campaign."""
        if self.is_running(campaign_id):
            raise AlreadyRunning("Campaign already has an active run")

        async with self.session_factory() as db:
            token = await claim_run(
                db, campaign_id, self.settings.campaign_lease_seconds, actor_id=actor_id,
            )
            campaign = await get_campaign(db, campaign_id)

        handle = _RunHandle(campaign_id, token)
        handle.task = asyncio.create_task(
            self._run_loop(handle), name=f"campaign-run-{campaign_id}",
        )
        self._runs[campaign_id] = handle
        handle.task.add_done_callback(lambda _t, h=handle: self._forget(h))

        logger.info(
            "Campaign %s run started (token=%s)",
            str(campaign_id)[:8], token[:8],
            extra={"campaign_id": str(campaign_id)},
        )
        return campaign

    async def stop(self, campaign_id: uuid.UUID, actor_id: Optional[str] = None) -> Campaign:
        """
        Operator stop. Returns the campaign still RUNNING with its stop
        request recorded; the loop hands it back as SCHEDULED (without a
        time) before its next pacing sleep elapses, or right after the
        in-flight send is recorded.
        """
        async with self.session_factory() as db:
            campaign = await request_stop(
                db, campaign_id, self.settings.campaign_lease_seconds, actor_id=actor_id,
            )

        handle = self._runs.get(campaign_id)
        if handle:
            handle.request_stop(STOP_OPERATOR)
        logger.info("Campaign %s stop requested by %s", str(campaign_id)[:8], actor_id or "system",
                    extra={"campaign_id": str(campaign_id)})
        return campaign

    async def join(self, campaign_id: uuid.UUID, timeout: Optional[float] = None) -> None:
        """Wait for this process's loop for a campaign to exit."""
        handle = self._runs.get(campaign_id)
        if handle is None or handle.task is None:
            return
        await asyncio.wait({handle.task}, timeout=timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Ask every loop to stop. Loops that exit cleanly hand their campaign
        back as SCHEDULED-now so the scheduler resumes it after restart;
        loops still busy after the timeout are cancelled and their lease
        simply expires.
        """
        handles = [h for h in self._runs.values() if h.task and not h.task.done()]
        for handle in handles:
            handle.request_stop(STOP_SHUTDOWN)
        if handles:
            _, pending = await asyncio.wait({h.task for h in handles}, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self.channel.aclose()

    def _forget(self, handle: _RunHandle) -> None:
        if self._runs.get(handle.campaign_id) is handle:
            del self._runs[handle.campaign_id]

    # === LOOP ===

    async def _run_loop(self, handle: _RunHandle) -> None:
        set_correlation_id(generate_correlation_id())
        campaign_id = handle.campaign_id
        log_extra = {"campaign_id": str(campaign_id)}
        sent = failed = 0

        try:
            async with self.session_factory() as db:
                campaign = await get_campaign(db, campaign_id)
                template = await db.get(MessageTemplate, campaign.template_id)
            if template is None:
                await self._finish(handle, CampaignStatus.FAILED, "template missing")
                return

            first = True
            while True:
                await self._poll_lease(handle)
                if handle.stop_event.is_set():
                    break

                async with self.session_factory() as db:
                    target = await self._next_pending(db, campaign_id)
                if target is None:
                    await self._finish(
                        handle, CampaignStatus.COMPLETED,
                        details={"sent": sent, "failed": failed},
                    )
                    return

                if not first:
                    if await self._pace(handle, campaign):
                        break
                    # A stop from another process only shows up on the row
                    await self._poll_lease(handle)
                    if handle.stop_event.is_set():
                        break
                first = False

                status, message_id, error = await self._deliver(campaign, template, target)
                await self._record(handle, campaign, target, status, message_id, error)
                if status == TargetStatus.SENT:
                    sent += 1
                else:
                    failed += 1

            await self._release(handle)
            logger.info(
                "Campaign %s loop stopped (%s) sent=%d failed=%d",
                str(campaign_id)[:8], handle.stop_reason, sent, failed,
                extra=log_extra,
            )

        except _LeaseLost:
            logger.warning(
                "Campaign %s run token revoked; loop exiting", str(campaign_id)[:8],
                extra=log_extra,
            )
        except ChannelUnavailable as e:
            logger.error(
                "Campaign %s aborted: channel unavailable: %s", str(campaign_id)[:8], e.reason,
                extra={**log_extra, "error_code": "channel_unavailable"},
            )
            await self._abort(handle, f"channel unavailable: {e.reason}")
        except SQLAlchemyError as e:
            logger.error(
                "Campaign %s aborted: persistence failure: %s", str(campaign_id)[:8], str(e),
                extra={**log_extra, "error_code": "persistence_failure"},
            )
            await self._abort(handle, "persistence failure")
        except asyncio.CancelledError:
            logger.warning(
                "Campaign %s loop cancelled; lease will expire", str(campaign_id)[:8],
                extra=log_extra,
            )
            raise
        except Exception as e:
            logger.exception("Campaign %s loop crashed: %s", str(campaign_id)[:8], str(e),
                             extra=log_extra)
            await self._abort(handle, f"internal error: {e}")

    async def _next_pending(self, db, campaign_id: uuid.UUID) -> Optional[CampaignTarget]:
        result = await db.execute(
            select(CampaignTarget)
            .where(
                and_(
                    CampaignTarget.campaign_id == campaign_id,
                    CampaignTarget.status == TargetStatus.PENDING,
                )
            )
            .order_by(CampaignTarget.position)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _poll_lease(self, handle: _RunHandle) -> None:
        """Re-read the run row: raise _LeaseLost if the token moved on, stop if asked to."""
        async with self.session_factory() as db:
            row = (await db.execute(
                select(Campaign.run_token, Campaign.stop_requested_at)
                .where(Campaign.id == handle.campaign_id)
            )).one_or_none()
        if row is None or row.run_token != handle.token:
            raise _LeaseLost()
        if row.stop_requested_at is not None:
            handle.request_stop(STOP_OPERATOR)

    async def _pace(self, handle: _RunHandle, campaign: Campaign) -> bool:
        """Sleep a random delay in the campaign bounds. True when a stop arrived."""
        delay_ms = self._rng.randint(campaign.delay_min_ms, campaign.delay_max_ms)
        return await self._wait_for_stop(handle.stop_event, delay_ms / 1000)

    async def _wait_for_stop(self, stop_event: asyncio.Event, seconds: float) -> bool:
        if seconds <= 0:
            return stop_event.is_set()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _deliver(
        self,
        campaign: Campaign,
        template: MessageTemplate,
        target: CampaignTarget,
    ) -> tuple[str, Optional[str], Optional[str]]:
        variables = {"contact": target.contact, **(target.variables or {})}
        payload = render_template(template.body, variables)
        try:
            message_id = await asyncio.wait_for(
                self.channel.send(campaign.connection_id, target.contact, payload),
                timeout=self.settings.delivery_timeout_seconds,
            )
            return TargetStatus.SENT, message_id, None
        except asyncio.TimeoutError:
            return TargetStatus.FAILED, None, "delivery timed out"
        except ChannelUnavailable:
            raise
        except DeliveryFailure as e:
            return TargetStatus.FAILED, None, e.reason

    async def _record(
        self,
        handle: _RunHandle,
        campaign: Campaign,
        target: CampaignTarget,
        status: str,
        message_id: Optional[str],
        error: Optional[str],
    ) -> None:
        """Persist one target outcome plus the heartbeat. Raises _LeaseLost if the token was revoked."""
        now = utcnow()
        async with self.session_factory() as db:
            values = {"status": status, "last_error": error, "updated_at": now}
            if status == TargetStatus.SENT:
                values["sent_at"] = now
                conversation = await get_or_create_for_contact(
                    db, campaign.connection_id, target.contact,
                )
                values["conversation_id"] = conversation.id

            result = await db.execute(
                update(CampaignTarget)
                .where(
                    and_(
                        CampaignTarget.id == target.id,
                        CampaignTarget.status == TargetStatus.PENDING,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) == 1:
                details = {"message_id": message_id} if status == TargetStatus.SENT else {"error": error}
                details["position"] = target.position
                add_event(db, campaign.id, f"target_{status}", target_id=target.id, details=details)

            heartbeat = await db.execute(
                update(Campaign)
                .where(
                    and_(
                        Campaign.id == campaign.id,
                        Campaign.status == CampaignStatus.RUNNING,
                        Campaign.run_token == handle.token,
                    )
                )
                .values(heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        log = logger.info if status == TargetStatus.SENT else logger.warning
        log(
            "Campaign %s target #%d %s%s",
            str(campaign.id)[:8], target.position, status,
            f": {error}" if error else "",
            extra={"campaign_id": str(campaign.id), "target_id": str(target.id)},
        )
        if (heartbeat.rowcount or 0) != 1:
            raise _LeaseLost()

    async def _finish(
        self,
        handle: _RunHandle,
        status: str,
        error: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> bool:
        """Terminal transition, guarded by the run token."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Campaign)
                .where(
                    and_(
                        Campaign.id == handle.campaign_id,
                        Campaign.status == CampaignStatus.RUNNING,
                        Campaign.run_token == handle.token,
                    )
                )
                .values(
                    status=status,
                    run_token=None,
                    stop_requested_at=None,
                    stop_requested_by=None,
                    last_error=error,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            won = (result.rowcount or 0) == 1
            if won:
                event_details = dict(details or {})
                if error:
                    event_details["error"] = error
                add_event(db, handle.campaign_id, status, details=event_details)
            await db.commit()

        if won:
            logger.info(
                "Campaign %s %s %s", str(handle.campaign_id)[:8], status, details or error or "",
                extra={"campaign_id": str(handle.campaign_id)},
            )
        return won

    async def _abort(self, handle: _RunHandle, reason: str) -> None:
        try:
            await self._finish(handle, CampaignStatus.FAILED, error=reason)
        except SQLAlchemyError as e:
            # Campaign stays RUNNING; the lease expires and a later run reclaims it
            logger.error(
                "Campaign %s could not be marked failed: %s", str(handle.campaign_id)[:8], str(e),
                extra={"campaign_id": str(handle.campaign_id), "error_code": "persistence_failure"},
            )

    async def _release(self, handle: _RunHandle) -> None:
        """
        Hand a stopped campaign back, guarded by the run token. An operator
        stop leaves it SCHEDULED without a time; a shutdown leaves it
        SCHEDULED for now so the scheduler picks it up after restart.
        """
        now = utcnow()
        async with self.session_factory() as db:
            campaign = await get_campaign(db, handle.campaign_id)
            operator_stop = campaign.stop_requested_at is not None
            result = await db.execute(
                update(Campaign)
                .where(
                    and_(
                        Campaign.id == handle.campaign_id,
                        Campaign.status == CampaignStatus.RUNNING,
                        Campaign.run_token == handle.token,
                    )
                )
                .values(
                    status=CampaignStatus.SCHEDULED,
                    scheduled_at=None if operator_stop else now,
                    run_token=None,
                    stop_requested_at=None,
                    stop_requested_by=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) == 1:
                if operator_stop:
                    add_event(db, handle.campaign_id, "stopped",
                              details={"actor_id": campaign.stop_requested_by})
                else:
                    add_event(db, handle.campaign_id, "interrupted", details={"reason": "shutdown"})
            await db.commit()
