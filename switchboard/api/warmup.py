"""
Warmup control - run state, selection and on-demand cycles.
"""
import logging

from fastapi import APIRouter, Depends, Request

from switchboard.api.deps import get_actor_id, get_session_factory, iso
from switchboard.schemas.api_requests import WarmupProfileRequest, WarmupSelectionRequest
from switchboard.services.audit import record_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/warmup", tags=["warmup"])


def _scheduler(request: Request):
    return request.app.state.warmup_scheduler


def _serialize_status(status: dict) -> dict:
    return {**status, "last_cycle_at": iso(status["last_cycle_at"])}


async def _audit(request: Request, actor_id, action: str, metadata: dict = None):
    await record_audit(
        actor_id, f"warmup.{action}", "warmup", None, metadata or {},
        session_factory=get_session_factory(request),
    )


@router.get("/status")
async def warmup_status(request: Request):
    return _serialize_status(_scheduler(request).status())


@router.post("/start")
async def warmup_start(request: Request, actor_id=Depends(get_actor_id)):
    status = _scheduler(request).start()
    await _audit(request, actor_id, "start")
    return _serialize_status(status)


@router.post("/pause")
async def warmup_pause(request: Request, actor_id=Depends(get_actor_id)):
    status = _scheduler(request).pause()
    await _audit(request, actor_id, "pause")
    return _serialize_status(status)


@router.post("/resume")
async def warmup_resume(request: Request, actor_id=Depends(get_actor_id)):
    status = _scheduler(request).resume()
    await _audit(request, actor_id, "resume")
    return _serialize_status(status)


@router.post("/simulate")
async def warmup_simulate(request: Request, actor_id=Depends(get_actor_id)):
    """One dry-run cycle, whatever the run state."""
    report = await _scheduler(request).simulate()
    await _audit(request, actor_id, "simulate", {"connections": report["connections"]})
    return report


@router.post("/run-cycle")
async def warmup_run_cycle(request: Request, actor_id=Depends(get_actor_id)):
    """One cycle in the configured mode, whatever the run state."""
    report = await _scheduler(request).run_cycle()
    await _audit(request, actor_id, "run_cycle", {"connections": report["connections"], "dry_run": report["dry_run"]})
    return report


@router.put("/selection")
async def warmup_set_selection(
    payload: WarmupSelectionRequest,
    request: Request,
    actor_id=Depends(get_actor_id),
):
    status = _scheduler(request).set_selection(payload.connection_ids)
    await _audit(request, actor_id, "selection", {"connection_ids": status["selected_connection_ids"]})
    return _serialize_status(status)


@router.put("/profiles/{connection_id}")
async def warmup_set_profile(
    connection_id: str,
    payload: WarmupProfileRequest,
    request: Request,
    actor_id=Depends(get_actor_id),
):
    """Pin a connection to a warmup profile (daily limit and minimum interval)."""
    status = _scheduler(request).set_profile(connection_id, payload.profile)
    await _audit(
        request, actor_id, "profile",
        {"connection_id": connection_id, "profile": status["profiles"].get(connection_id)},
    )
    return _serialize_status(status)
