"""
Database models - import all models here so Alembic can discover them.
"""
from switchboard.models.queue import Queue, QueueAgent, QueueConnection
from switchboard.models.conversation import (
    Conversation,
    ConversationStatus,
    AssignmentEvent,
    StatusEvent,
)
from switchboard.models.campaign import (
    MessageTemplate,
    Campaign,
    CampaignStatus,
    CampaignTarget,
    TargetStatus,
    CampaignEvent,
)
from switchboard.models.audit_log import AuditLog

__all__ = [
    "Queue",
    "QueueAgent",
    "QueueConnection",
    "Conversation",
    "ConversationStatus",
    "AssignmentEvent",
    "StatusEvent",
    "MessageTemplate",
    "Campaign",
    "CampaignStatus",
    "CampaignTarget",
    "TargetStatus",
    "CampaignEvent",
    "AuditLog",
]
