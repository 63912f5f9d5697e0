"""AI router services module"""

from airouter.services.budget import BudgetLedger, SQLBudgetLedger, UnlimitedBudgetLedger
from airouter.services.cache import ResponseCache, get_response_cache
from airouter.services.classifier import (
    HybridClassifier,
    ModelAssistedClassifier,
    PatternClassifier,
    TaskClassifier,
    get_task_classifier,
)
from airouter.services.llm import LLMClient, ModelProvider, close_llm_client, get_llm_client
from airouter.services.memory import MemoryService, get_memory_service
from airouter.services.org_settings import (
    ClassificationModeResolver,
    OrgSettingsService,
    StaticModeResolver,
)
from airouter.services.router import AIRouter, get_ai_router

__all__ = [
    # Classification
    "PatternClassifier",
    "ModelAssistedClassifier",
    "HybridClassifier",
    "TaskClassifier",
    "get_task_classifier",
    "ClassificationModeResolver",
    "OrgSettingsService",
    "StaticModeResolver",
    # Memory
    "MemoryService",
    "get_memory_service",
    # Routing
    "AIRouter",
    "get_ai_router",
    "BudgetLedger",
    "SQLBudgetLedger",
    "UnlimitedBudgetLedger",
    "ResponseCache",
    "get_response_cache",
    # LLM services
    "LLMClient",
    "ModelProvider",
    "get_llm_client",
    "close_llm_client",
]
