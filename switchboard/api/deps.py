"""
Shared request dependencies.
Authentication happens upstream; the caller identity arrives in X-Actor-ID.
"""
import uuid
from typing import Optional

from fastapi import Header, Request

from switchboard.utils.errors import InvalidRequest


async def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Actor recorded on events and audit rows."""
    if x_actor_id:
        return x_actor_id.strip()[:64] or None
    return None


def parse_uuid(value: str, label: str = "ID") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except (ValueError, TypeError):
        raise InvalidRequest(f"Invalid {label}")


def get_session_factory(request: Request):
    """Session factory used for audit writes and background loops."""
    return request.app.state.session_factory


def iso(value) -> Optional[str]:
    return value.isoformat() if value else None
