"""
Conversation model - one customer-to-agent thread arriving on a connection.
Assignment and status history live in append-only event tables.

Invariant (checked by the conversation store before every write, and by
ck_conversations_assigned_agent in the database):
    status == assigned  <=>  assigned_agent_id is not None
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from switchboard.database import Base


class ConversationStatus:
    """Conversation status constants."""
    OPEN = "open"
    ASSIGNED = "assigned"
    CLOSED = "closed"

    ALL = (OPEN, ASSIGNED, CLOSED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ConversationStatus.OPEN, nullable=False
    )  # open, assigned, closed
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(String(64))
    queue_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("queues.id")
    )
    connection_id: Mapped[str] = mapped_column(String(100), nullable=False)
    contact: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_conversations_status", "status"),
        Index("ix_conversations_agent_status", "assigned_agent_id", "status"),
        Index("ix_conversations_connection_contact", "connection_id", "contact"),
        CheckConstraint(
            "(status = 'assigned') = (assigned_agent_id IS NOT NULL)",
            name="ck_conversations_assigned_agent",
        ),
    )

    def __repr__(self) -> str:
        return f"<Conversation {str(self.id)[:8]} ({self.status})>"


class AssignmentEvent(Base):
    """Immutable audit record appended on every manual or automatic assignment."""
    __tablename__ = "assignment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_agent_id: Mapped[Optional[str]] = mapped_column(String(64))
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    reason: Mapped[Optional[str]] = mapped_column(Text)  # manual reason, or "auto_assign"
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    __table_args__ = (
        Index("ix_assignment_events_conversation", "conversation_id", "id"),
    )


class StatusEvent(Base):
    """Immutable record appended on every status transition."""
    __tablename__ = "status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20))  # None on creation
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    __table_args__ = (
        Index("ix_status_events_conversation", "conversation_id", "id"),
    )
