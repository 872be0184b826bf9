"""
Campaign models - a paced bulk send over a fixed, ordered target list.

Progress lives in CampaignTarget.status, never in loop position: a run that
dies leaves PENDING targets behind and the next run continues from them.
CampaignEvent is an append-only log of state changes and send attempts.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from switchboard.database import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class CampaignStatus:
    """Campaign status constants."""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    RUNNABLE = (DRAFT, SCHEDULED)
    FINISHED = (COMPLETED, FAILED)


class TargetStatus:
    """Campaign target status constants."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"

    ALL = (PENDING, SENT, FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)  # "Hola {{ name }}"
    variables: Mapped[Optional[list]] = mapped_column(JsonColumn, default=list)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("message_templates.id"), nullable=False
    )
    connection_id: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=CampaignStatus.DRAFT, nullable=False
    )  # draft, scheduled, running, completed, failed
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Pacing (uniform jitter between consecutive sends)
    delay_min_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_max_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    # Run lease - only the holder of run_token may write progress
    run_token: Mapped[Optional[str]] = mapped_column(String(32))
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Operator stop, honoured by the lease holder after its in-flight target
    stop_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stop_requested_by: Mapped[Optional[str]] = mapped_column(String(64))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_campaigns_status", "status"),
        Index("ix_campaigns_status_scheduled", "status", "scheduled_at"),
        CheckConstraint("delay_min_ms <= delay_max_ms", name="ck_campaigns_delay_bounds"),
    )

    def __repr__(self) -> str:
        return f"<Campaign {self.name} ({self.status})>"


class CampaignTarget(Base):
    __tablename__ = "campaign_targets"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)  # creation order
    contact: Mapped[str] = mapped_column(String(100), nullable=False)
    variables: Mapped[Optional[dict]] = mapped_column(JsonColumn, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), default=TargetStatus.PENDING, nullable=False
    )  # pending, sent, failed
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("campaign_id", "contact", name="uq_campaign_targets_contact"),
        Index("ix_campaign_targets_campaign_status", "campaign_id", "status", "position"),
    )

    def __repr__(self) -> str:
        return f"<CampaignTarget #{self.position} ({self.status})>"


class CampaignEvent(Base):
    __tablename__ = "campaign_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False
    )
    target_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaign_targets.id")
    )
    event_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # created, scheduled, started, target_sent, target_failed, stop_requested, stopped, interrupted, completed, failed, requeued
    details: Mapped[Optional[dict]] = mapped_column(JsonColumn, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    __table_args__ = (
        Index("ix_campaign_events_campaign", "campaign_id", "id"),
    )
