"""
Audit sink - fire-and-forget from the engine's point of view.

Runs in its own session after the primary operation has committed, so an
audit failure can never roll the primary operation back. Failures are logged
and dropped.
"""
import logging
from typing import Any, Callable, Optional

from switchboard.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def record_audit(
    actor_id: Optional[str],
    action: str,
    resource: str,
    resource_id: Optional[Any] = None,
    metadata: Optional[dict] = None,
    session_factory: Optional[Callable] = None,
) -> None:
    """Append an audit row. Never raises."""
    try:
        if session_factory is None:
            from switchboard.database import async_session_factory
            session_factory = async_session_factory

        async with session_factory() as db:
            db.add(AuditLog(
                actor_id=actor_id,
                action=action,
                resource=resource,
                resource_id=str(resource_id) if resource_id is not None else None,
                data=metadata or {},
            ))
            await db.commit()
    except Exception as e:
        logger.warning(
            "Audit record failed (action=%s resource=%s): %s",
            action, resource, str(e),
        )
