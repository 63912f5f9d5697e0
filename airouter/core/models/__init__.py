"""Data models for AI request orchestration"""

from .classification import (
    AssistedOutcome,
    ClassificationContext,
    ClassificationMethod,
    ClassificationMode,
    ClassificationResult,
    ClassificationSignals,
    Classified,
    Complexity,
    Degraded,
    DegradeReason,
    EntityData,
    EntityType,
    ModelClassificationSchema,
    OutputType,
    TaskType,
    UserPreferences,
)
from .memory import (
    LEVEL_ORDER,
    ContextChunk,
    ContextRuleType,
    HelpfulChunk,
    HierarchyPosition,
    IterativeResponse,
    MemoryAnalytics,
    MemoryDocumentInfo,
    MemoryLevel,
    MissingInfo,
    MissingKeyword,
    ParsedSection,
    RequestType,
    RetrievalResult,
    SessionStatus,
    SessionType,
    SessionTypeStats,
    UpdateSourceType,
    UpdateStatus,
    UpdateType,
)
from .registry import (
    MODEL_REGISTRY,
    ModelTier,
    ProviderFamily,
    fallback_tier_for,
    get_model_tier,
    is_known_tier,
)
from .routing import (
    AIRequest,
    AIResponse,
    BudgetDecision,
    ClassificationPreview,
    CostInfo,
    ModelCompletion,
    ModelInfo,
    TokenEstimate,
    TokenUsage,
)

__all__ = [
    # Registry
    "MODEL_REGISTRY",
    "ModelTier",
    "ProviderFamily",
    "fallback_tier_for",
    "get_model_tier",
    "is_known_tier",
    # Classification
    "AssistedOutcome",
    "ClassificationContext",
    "ClassificationMethod",
    "ClassificationMode",
    "ClassificationResult",
    "ClassificationSignals",
    "Classified",
    "Complexity",
    "Degraded",
    "DegradeReason",
    "EntityData",
    "EntityType",
    "ModelClassificationSchema",
    "OutputType",
    "TaskType",
    "UserPreferences",
    # Memory
    "LEVEL_ORDER",
    "ContextChunk",
    "ContextRuleType",
    "HelpfulChunk",
    "HierarchyPosition",
    "IterativeResponse",
    "MemoryAnalytics",
    "MemoryDocumentInfo",
    "MemoryLevel",
    "MissingInfo",
    "MissingKeyword",
    "ParsedSection",
    "RequestType",
    "RetrievalResult",
    "SessionStatus",
    "SessionType",
    "SessionTypeStats",
    "UpdateSourceType",
    "UpdateStatus",
    "UpdateType",
    # Routing
    "AIRequest",
    "AIResponse",
    "BudgetDecision",
    "ClassificationPreview",
    "CostInfo",
    "ModelCompletion",
    "ModelInfo",
    "TokenEstimate",
    "TokenUsage",
]
