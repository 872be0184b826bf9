"""
Request bodies for the /api/v1 endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class CreateConversationRequest(BaseModel):
    connection_id: str = Field(..., min_length=1, max_length=100)
    contact: Optional[str] = Field(default=None, max_length=100)
    queue_id: Optional[str] = None


class AssignRequest(BaseModel):
    agent_id: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = Field(default=None, max_length=200)


class AutoAssignRequest(BaseModel):
    candidate_agent_ids: list[str] = Field(default_factory=list)


class ChangeStatusRequest(BaseModel):
    status: str = Field(..., description="open, assigned, closed")
    agent_id: Optional[str] = Field(default=None, description="Required when status is assigned")


class CreateQueueRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    active: bool = True


class SetQueueActiveRequest(BaseModel):
    active: bool


class CreateTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1)
    variables: list[str] = Field(default_factory=list)


class CampaignTargetInput(BaseModel):
    contact: str = Field(..., min_length=1, max_length=100)
    variables: dict[str, Any] = Field(default_factory=dict)


class CreateCampaignRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    template_id: str
    connection_id: str = Field(..., min_length=1, max_length=100)
    targets: list[CampaignTargetInput] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    delay_min_ms: Optional[int] = Field(default=None, ge=0)
    delay_max_ms: Optional[int] = Field(default=None, ge=0)


class ScheduleCampaignRequest(BaseModel):
    scheduled_at: Optional[datetime] = Field(default=None, description="Defaults to now")


class WarmupSelectionRequest(BaseModel):
    connection_ids: list[str] = Field(default_factory=list)


class WarmupProfileRequest(BaseModel):
    profile: Optional[str] = Field(default=None, max_length=32, description="None resets to the defaults")
