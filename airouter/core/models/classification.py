"""Models for task classification"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class TaskType(str, Enum):
    """Kind of work a request asks for"""

    WRITE_CODE = "WRITE_CODE"
    REFACTOR = "REFACTOR"
    DEBUG = "DEBUG"
    EXPLAIN = "EXPLAIN"
    SUMMARIZE = "SUMMARIZE"
    CLASSIFY = "CLASSIFY"
    ANALYZE = "ANALYZE"
    REVIEW = "REVIEW"
    OTHER = "OTHER"


class ClassificationMode(str, Enum):
    """Per-organization classification strategy"""

    ACCURACY = "accuracy"  # Always ask the low-cost model
    COST = "cost"  # Pattern scoring only
    HYBRID = "hybrid"  # Pattern scoring, escalate when ambiguous


class ClassificationMethod(str, Enum):
    """How a classification result was produced"""

    PATTERN = "pattern"
    MODEL_ASSISTED = "model_assisted"
    FORCED = "forced"


class OutputType(str, Enum):
    CODE = "code"
    TEXT = "text"
    MIXED = "mixed"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EntityType(str, Enum):
    """Kind of entity a request is attached to"""

    TICKET = "ticket"
    PR = "pr"
    MEETING = "meeting"
    CHAT = "chat"
    REQUIREMENT = "requirement"


class EntityData(BaseModel):
    """Structural facts about the entity a request is attached to"""

    ticket_type: str | None = Field(default=None, description="e.g. bug, story, spike")
    priority: str | None = Field(default=None, description="e.g. low, medium, critical")
    skills: list[str] = Field(default_factory=list)


class UserPreferences(BaseModel):
    preferred_model: str | None = None
    force_model: bool = False


class ClassificationContext(BaseModel):
    """Optional structural context supplied by the caller"""

    entity_type: EntityType | None = None
    entity_data: EntityData | None = None
    user_preferences: UserPreferences | None = None

    def summary(self) -> dict[str, Any]:
        """Compact structural summary sent to the classifier model"""
        data = self.entity_data or EntityData()
        return {
            "entity_type": self.entity_type.value if self.entity_type else None,
            "ticket_type": data.ticket_type,
            "priority": data.priority,
        }


class ClassificationSignals(BaseModel):
    """Signals that drove a classification"""

    action_verb: str | None = Field(
        default=None, description="Last matched code verb, else the first prose verb"
    )
    output_type: OutputType = OutputType.MIXED
    entity_type: EntityType | None = None
    complexity: Complexity = Complexity.MEDIUM
    matched_context: list[str] = Field(
        default_factory=list,
        description="Literal text of contextual code cues (file extensions, PR references)",
    )


class ClassificationResult(BaseModel):
    """Which model tier and task type best fit a request"""

    task_type: TaskType
    code_percentage: int = Field(..., ge=0, le=100)
    recommended_model: str = Field(..., description="Registry key of the recommended tier")
    fallback_model: str = Field(..., description="Registry key of the fallback tier")
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    method: ClassificationMethod
    signals: ClassificationSignals = Field(default_factory=ClassificationSignals)


class ModelClassificationSchema(BaseModel):
    """Structured output requested from the classifier model"""

    code_percentage: int = Field(
        default=50, ge=0, le=100, description="Share of the ideal answer that is code"
    )
    task_type: TaskType = Field(default=TaskType.OTHER)
    complexity: Complexity = Field(default=Complexity.MEDIUM)
    recommended_model: str = Field(
        default="claude-sonnet", description="Registry key of the tier that should answer"
    )
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    reasoning: str = Field(default="Model-assisted classification")

    @field_validator("task_type", "complexity", mode="before")
    @classmethod
    def normalize_enum_case(cls, v, info):
        """Models often answer 'write_code' or 'Medium'"""
        if isinstance(v, str):
            return v.upper() if info.field_name == "task_type" else v.lower()
        return v


# ============================================================================
# Tagged outcome of a model-assisted classification attempt
# ============================================================================


class DegradeReason(str, Enum):
    """Why a model-assisted classification fell back to pattern scoring"""

    CALL_FAILED = "call_failed"
    TIMEOUT = "timeout"
    PARSE_FAILED = "parse_failed"
    UNKNOWN_TIER = "unknown_tier"


@dataclass(frozen=True)
class Classified:
    result: ClassificationResult
    kind: Literal["classified"] = "classified"


@dataclass(frozen=True)
class Degraded:
    reason: DegradeReason
    detail: str = ""
    kind: Literal["degraded"] = "degraded"


AssistedOutcome = Classified | Degraded
