"""Request router: the orchestration entry point for model calls

For every request the router classifies the task, reserves budget, pulls initial
memory context, invokes the recommended tier with a single fallback, records usage
and returns a response with full provenance.
"""

import asyncio
import time
from contextlib import AsyncExitStack

from airouter.config import settings
from airouter.core.exceptions import BudgetExceededError, ModelUnavailableError
from airouter.core.models.classification import ClassificationContext, TaskType
from airouter.core.models.memory import HierarchyPosition, RetrievalResult, SessionType
from airouter.core.models.registry import MODEL_REGISTRY, ModelTier, get_model_tier
from airouter.core.models.routing import (
    AIRequest,
    AIResponse,
    ClassificationPreview,
    CostInfo,
    ModelCompletion,
    ModelInfo,
    TokenEstimate,
    TokenUsage,
)
from airouter.services.budget import BudgetLedger, SQLBudgetLedger
from airouter.services.cache import ResponseCache, get_response_cache
from airouter.services.classifier import TaskClassifier, get_task_classifier
from airouter.services.llm import ModelProvider, get_llm_client
from airouter.services.memory import MemoryService, get_memory_service
from airouter.services.metrics import MetricsCollector, route_duration_seconds, track_duration
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

CONTEXT_DELIMITER = "\n\n---\n\n"

SESSION_TYPE_BY_TASK = {
    TaskType.WRITE_CODE: SessionType.CODE_REVIEW,
    TaskType.REFACTOR: SessionType.CODE_REVIEW,
    TaskType.DEBUG: SessionType.CODE_REVIEW,
    TaskType.REVIEW: SessionType.CODE_REVIEW,
    TaskType.SUMMARIZE: SessionType.MEETING_SUMMARY,
    TaskType.ANALYZE: SessionType.TICKET_ANALYSIS,
    TaskType.CLASSIFY: SessionType.TICKET_ANALYSIS,
}


def build_prompt(prompt: str, context: RetrievalResult | None) -> str:
    """Prepend memory context to the request, separated by a delimiter"""
    if context is None or not context.chunks:
        return prompt
    return f"Context:\n{context.render()}{CONTEXT_DELIMITER}Request:\n{prompt}"


def cost_breakdown(tier: ModelTier, prompt_tokens: int, completion_tokens: int) -> CostInfo:
    """Cost of a call at a tier's rates, with a human-readable breakdown"""
    prompt_cost = tier.prompt_cost(prompt_tokens)
    completion_cost = tier.completion_cost(completion_tokens)
    return CostInfo(
        usd=prompt_cost + completion_cost,
        breakdown=(
            f"Prompt: {prompt_tokens} tokens (${prompt_cost:.4f}), "
            f"Completion: {completion_tokens} tokens (${completion_cost:.4f})"
        ),
    )


class AIRouter:
    """Route requests to the right model tier within budget"""

    def __init__(
        self,
        classifier: TaskClassifier | None = None,
        memory: MemoryService | None = None,
        budget: BudgetLedger | None = None,
        provider: ModelProvider | None = None,
        cache: ResponseCache | None = None,
        model_timeout: float | None = None,
    ):
        """Initialize the router

        Args:
            classifier: Task classifier (default: shared instance)
            memory: Memory service (default: shared instance)
            budget: Budget ledger (default: SQL ledger on org_ai_configs)
            provider: Model provider (default: shared OpenRouter client)
            cache: Response cache; caching is off when None
            model_timeout: Seconds allowed per model attempt
        """
        self.classifier = classifier or get_task_classifier()
        self.memory = memory or get_memory_service()
        self.budget = budget or SQLBudgetLedger()
        self._provider = provider
        self.cache = cache
        self.model_timeout = model_timeout or settings.model_timeout_seconds

    @property
    def provider(self) -> ModelProvider:
        """Lazy-load the model provider"""
        if self._provider is None:
            self._provider = get_llm_client()
        return self._provider

    # ========================================================================
    # Routing
    # ========================================================================

    @staticmethod
    def estimate_cost(tier: ModelTier, prompt: str, max_tokens: int | None = None) -> float:
        """Expected cost before the call: prompt estimate plus the completion allowance"""
        completion_tokens = max_tokens or settings.default_completion_estimate
        return tier.estimate_cost(TokenEstimate.count(prompt), completion_tokens)

    async def _invoke(self, tier: ModelTier, prompt: str, request: AIRequest) -> ModelCompletion:
        """One bounded attempt against a tier"""
        start = time.perf_counter()
        completion = await asyncio.wait_for(
            self.provider.complete(
                tier,
                prompt,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            ),
            timeout=self.model_timeout,
        )
        prompt_tokens = completion.prompt_tokens or 0
        completion_tokens = completion.completion_tokens or 0
        MetricsCollector.record_model_call(
            tier.key,
            time.perf_counter() - start,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_usd=tier.estimate_cost(prompt_tokens, completion_tokens),
        )
        return completion

    async def _invoke_with_fallback(
        self, primary: ModelTier, fallback: ModelTier, prompt: str, request: AIRequest
    ) -> tuple[ModelTier, ModelCompletion]:
        """Call the primary tier, then the fallback tier exactly once

        Raises:
            ModelUnavailableError: If both attempts fail
        """
        try:
            return primary, await self._invoke(primary, prompt, request)
        except Exception as e:
            primary_error = str(e) or type(e).__name__
            MetricsCollector.record_model_error(primary.key, type(e).__name__)
            logger.warning(
                f"Model {primary.key} failed ({primary_error}), falling back to {fallback.key}"
            )

        MetricsCollector.record_fallback(primary.key, fallback.key)
        try:
            return fallback, await self._invoke(fallback, prompt, request)
        except Exception as e:
            fallback_error = str(e) or type(e).__name__
            MetricsCollector.record_model_error(fallback.key, type(e).__name__)
            logger.error(f"Fallback model {fallback.key} also failed: {fallback_error}")
            raise ModelUnavailableError(
                primary.key, fallback.key, primary_error, fallback_error
            ) from e

    async def _cached_response(self, cache_key: str) -> AIResponse | None:
        cached = await self.cache.get_response(cache_key)
        MetricsCollector.record_cache(cached is not None)
        if cached is None:
            return None
        return cached.model_copy(
            update={
                "cached": True,
                "cost": CostInfo(usd=0.0, breakdown="Served from cache"),
                "memory_session_id": None,
                "latency_ms": 0,
            }
        )

    @track_duration(route_duration_seconds)
    async def route(self, request: AIRequest) -> AIResponse:
        """
        Answer a request with the best model tier the organization can afford

        Args:
            request: Inbound request

        Returns:
            Model output with classification, token counts, cost and latency

        Raises:
            BudgetExceededError: The organization's budget disallows the request
            ModelUnavailableError: Both the recommended tier and its fallback failed
            UnknownModelTierError: A forced or fallback tier is not registered
        """
        start = time.perf_counter()

        classification = await self.classifier.classify(
            request.prompt, request.org_id, request.context, force_model=request.force_model
        )
        primary = get_model_tier(classification.recommended_model)
        fallback = get_model_tier(classification.fallback_model)

        cache_key = None
        if self.cache is not None and not request.memory_keywords:
            cache_key = ResponseCache.response_key(
                request.org_id, primary.key, request.prompt, request.max_tokens, request.temperature
            )
            cached = await self._cached_response(cache_key)
            if cached is not None:
                MetricsCollector.record_route(cached.model_tier, "cached")
                cached.latency_ms = int((time.perf_counter() - start) * 1000)
                return cached

        estimated_usd = self.estimate_cost(primary, request.prompt, request.max_tokens)
        decision = await self.budget.check_budget(request.org_id, primary.key, estimated_usd)
        if not decision.allowed:
            MetricsCollector.record_budget_rejection()
            MetricsCollector.record_route(primary.key, "budget_rejected")
            raise BudgetExceededError(request.org_id, decision.reason or "Budget exceeded")

        usage_recorded = False
        try:
            async with AsyncExitStack() as stack:
                context = None
                if request.memory_keywords:
                    context = await stack.enter_async_context(
                        self.memory.retrieval_session(
                            HierarchyPosition(
                                org_id=request.org_id,
                                user_id=request.user_id,
                                domain_id=request.domain_id,
                                project_id=request.project_id,
                                circle_id=request.circle_id,
                            ),
                            SESSION_TYPE_BY_TASK.get(classification.task_type, SessionType.CHAT),
                            request.memory_keywords,
                            max_tokens=settings.router_memory_max_tokens,
                        )
                    )

                prompt = build_prompt(request.prompt, context)
                tier, completion = await self._invoke_with_fallback(
                    primary, fallback, prompt, request
                )

                prompt_tokens = completion.prompt_tokens
                if prompt_tokens is None:
                    prompt_tokens = TokenEstimate.count(prompt)
                completion_tokens = completion.completion_tokens
                if completion_tokens is None:
                    completion_tokens = TokenEstimate.count(completion.content)

                response = AIResponse(
                    content=completion.content,
                    model=tier.display_name,
                    model_tier=tier.key,
                    tokens_used=TokenUsage(
                        prompt=prompt_tokens,
                        completion=completion_tokens,
                        total=prompt_tokens + completion_tokens,
                    ),
                    cost=cost_breakdown(tier, prompt_tokens, completion_tokens),
                    classification=classification,
                    memory_session_id=context.session_id if context else None,
                    fallback_used=tier.key != primary.key,
                )

                await self.budget.record_usage(
                    request.org_id, response, decision.reserved_usd, reserved=decision.reserved
                )
                usage_recorded = True
        except BaseException:
            if decision.reserved and not usage_recorded:
                await self.budget.release(request.org_id, decision.reserved_usd)
            MetricsCollector.record_route(primary.key, "failed")
            raise

        response.latency_ms = int((time.perf_counter() - start) * 1000)
        MetricsCollector.record_route(tier.key, "fallback" if response.fallback_used else "success")

        if cache_key is not None:
            await self.cache.set_response(cache_key, response)

        logger.info(
            f"Routed request for org {request.org_id} to {tier.key} "
            f"({classification.task_type.value}, {response.tokens_used.total} tokens, "
            f"${response.cost.usd:.4f}, {response.latency_ms}ms)"
        )
        return response

    # ========================================================================
    # Read-only helpers
    # ========================================================================

    async def preview_classification(
        self, prompt: str, org_id: str, context: ClassificationContext | None = None
    ) -> ClassificationPreview:
        """
        Classification plus cost estimate for UI display

        Touches neither the budget ledger, the memory service, the response cache
        nor the routed model.

        Args:
            prompt: Request text
            org_id: Organization whose classification mode applies
            context: Optional structural context

        Returns:
            Recommended tier, task type and estimated cost
        """
        classification = await self.classifier.classify(prompt, org_id, context)
        tier = get_model_tier(classification.recommended_model)
        estimated_usd = self.estimate_cost(tier, prompt)

        return ClassificationPreview(
            recommended_model=tier.display_name,
            model_tier=tier.key,
            task_type=classification.task_type,
            estimated_cost=f"${estimated_usd:.4f}",
            estimated_cost_usd=estimated_usd,
            reasoning=classification.reasoning,
            classification=classification,
        )

    @staticmethod
    def available_models() -> list[ModelInfo]:
        """Registered tiers for UI display"""
        return [
            ModelInfo(
                key=tier.key,
                name=tier.display_name,
                provider=tier.provider.value,
                cost_per_1k=tier.cost_per_1k_prompt + tier.cost_per_1k_completion,
                supports_code=tier.supports_code,
            )
            for tier in MODEL_REGISTRY.values()
        ]


# Singleton instance
_ai_router: AIRouter | None = None


def get_ai_router() -> AIRouter:
    """Get or create the router singleton"""
    global _ai_router

    if _ai_router is None:
        _ai_router = AIRouter(cache=get_response_cache())

    return _ai_router
