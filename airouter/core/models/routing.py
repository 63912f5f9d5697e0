"""Request/response models for model routing"""

import math
from uuid import UUID

from pydantic import BaseModel, Field

from .classification import ClassificationContext, ClassificationResult, TaskType

CHARS_PER_TOKEN = 4


class TokenEstimate:
    """Token counts without a tokenizer"""

    @staticmethod
    def count(text: str) -> int:
        """Estimated tokens for text (~4 characters per token, rounded up)"""
        return math.ceil(len(text) / CHARS_PER_TOKEN)


class AIRequest(BaseModel):
    """Inbound request to the router"""

    prompt: str = Field(..., min_length=1)
    org_id: str
    user_id: str
    context: ClassificationContext | None = None
    memory_keywords: list[str] | None = Field(
        default=None, description="Keywords for initial memory context; no retrieval when empty"
    )
    domain_id: str | None = None
    project_id: str | None = None
    circle_id: str | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    force_model: str | None = Field(default=None, description="Registry key of a forced tier")


class TokenUsage(BaseModel):
    prompt: int = 0
    completion: int = 0
    total: int = 0


class CostInfo(BaseModel):
    usd: float = 0.0
    breakdown: str = ""


class AIResponse(BaseModel):
    """Outbound response with full provenance"""

    content: str
    model: str = Field(..., description="Display name of the answering model")
    model_tier: str = Field(..., description="Registry key of the answering tier")
    tokens_used: TokenUsage
    cost: CostInfo
    classification: ClassificationResult
    memory_session_id: UUID | None = None
    cached: bool = False
    latency_ms: int = 0
    fallback_used: bool = False


class ModelCompletion(BaseModel):
    """Provider output: text plus token counts when the provider reports them"""

    content: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    finish_reason: str | None = None


class BudgetDecision(BaseModel):
    """Outcome of a budget check"""

    allowed: bool
    reason: str | None = None
    reserved_usd: float = Field(default=0.0, description="Estimate held against the budget")
    reserved: bool = Field(default=False, description="Whether a reservation row was taken")


class ClassificationPreview(BaseModel):
    """Classification plus cost estimate, for UI display"""

    recommended_model: str = Field(..., description="Display name of the recommended tier")
    model_tier: str
    task_type: TaskType
    estimated_cost: str = Field(..., description="Formatted as $0.0000")
    estimated_cost_usd: float
    reasoning: str
    classification: ClassificationResult


class ModelInfo(BaseModel):
    """Registry entry for UI display"""

    key: str
    name: str
    provider: str
    cost_per_1k: float = Field(..., description="Prompt plus completion price per 1000 tokens")
    supports_code: bool
