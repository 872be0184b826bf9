"""
Queue model - a named pool of agents and connections scoping auto-assignment.
Membership is many-to-many; order is irrelevant.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Boolean, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from switchboard.database import Base


class Queue(Base):
    __tablename__ = "queues"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<Queue {self.name} active={self.active}>"


class QueueAgent(Base):
    __tablename__ = "queue_agents"

    queue_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("queues.id"), primary_key=True
    )
    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class QueueConnection(Base):
    __tablename__ = "queue_connections"

    queue_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("queues.id"), primary_key=True
    )
    connection_id: Mapped[str] = mapped_column(String(100), primary_key=True)
