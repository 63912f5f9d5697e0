"""API schemas for request and response models"""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from airouter.core.models.classification import ClassificationMode
from airouter.core.models.memory import (
    MemoryLevel,
    RequestType,
    SessionType,
    UpdateSourceType,
    UpdateType,
)

# ============================================================================
# Memory Context Schemas
# ============================================================================


class InitialContextRequest(BaseModel):
    """Request to open a retrieval session"""

    org_id: str = Field(..., description="Organization id")
    user_id: str | None = Field(default=None, description="User id (includes the user document)")
    domain_id: str | None = Field(default=None, description="Domain id")
    project_id: str | None = Field(default=None, description="Project id")
    circle_id: str | None = Field(default=None, description="Circle id")
    session_type: SessionType = Field(default=SessionType.CHAT)
    keywords: list[str] = Field(..., min_length=1, description="Retrieval keywords")
    max_tokens: int | None = Field(default=None, gt=0, description="Token budget")


class IterativeContextRequest(BaseModel):
    """A downstream model's request for more context"""

    ai_request_text: str = Field(..., min_length=1, description="What the model says it needs")
    request_type: RequestType = Field(..., description="Kind of information requested")
    keywords: list[str] | None = Field(
        default=None, description="Explicit keywords (extracted from the text when omitted)"
    )
    max_tokens: int | None = Field(default=None, gt=0)


class CompleteSessionRequest(BaseModel):
    """Outcome of a retrieval session"""

    was_successful: bool
    notes: str | None = None


class CompleteSessionResponse(BaseModel):
    session_id: UUID
    completed: bool = Field(..., description="False when the session was already closed")


# ============================================================================
# Memory Document Schemas
# ============================================================================


class UpsertDocumentRequest(BaseModel):
    """Create or replace a memory document"""

    org_id: str
    level: MemoryLevel
    level_entity_id: str | None = Field(default=None, description="Required below org level")
    title: str = Field(..., min_length=1)
    content: str
    updated_by: str | None = None
    edit_reason: str | None = None


class DocumentResponse(BaseModel):
    id: UUID
    document_key: str
    version: int
    chunk_count: int


class QueueUpdateRequest(BaseModel):
    """Domain event that should change a memory document"""

    org_id: str
    source_type: UpdateSourceType
    source_entity_id: str
    target_level: MemoryLevel
    target_entity_id: str | None = None
    update_type: UpdateType
    content: str | None = None
    section_id: str | None = None
    keywords: list[str] | None = None


class QueueUpdateResponse(BaseModel):
    id: UUID
    status: str = "pending"


class ProcessUpdatesResponse(BaseModel):
    applied: int
    failed: int


# ============================================================================
# System Schemas
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response"""

    status: str = Field(..., description="Overall status")
    version: str = Field(..., description="API version")
    services: dict[str, str] = Field(..., description="Status of individual services")


# ============================================================================
# Organization Configuration Schemas
# ============================================================================


class OrgConfigRequest(BaseModel):
    """Fields to change; omitted fields keep their current value"""

    classification_mode: ClassificationMode | None = None
    monthly_budget_usd: float | None = Field(default=None, ge=0.0)
    daily_request_limit: int | None = Field(default=None, ge=0)


class OrgConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    org_id: str
    classification_mode: ClassificationMode
    monthly_budget_usd: float | None
    daily_request_limit: int | None
    current_month_spend: float
    requests_this_month: int
