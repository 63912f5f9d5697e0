"""Task classification: which model tier and task type best fit a request

Three strategies sit behind one interface:

- PatternClassifier: regex scoring of code-leaning vs prose-leaning signals, no I/O
- ModelAssistedClassifier: one bounded call to a low-cost model, degrading to
  pattern scoring on any failure
- HybridClassifier: pattern scoring first, escalating to the model only when the
  pattern result is ambiguous

TaskClassifier picks the strategy from the organization's classification mode and
handles forced model selection before any strategy runs.
"""

import asyncio
import json
import re
from typing import Protocol

from airouter.config import settings
from airouter.core.exceptions import UnknownModelTierError
from airouter.core.models.classification import (
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
    EntityType,
    ModelClassificationSchema,
    OutputType,
    TaskType,
)
from airouter.core.models.registry import (
    MODEL_REGISTRY,
    ProviderFamily,
    fallback_tier_for,
    get_model_tier,
)
from airouter.services.llm import ModelProvider, get_llm_client
from airouter.services.metrics import MetricsCollector
from airouter.services.org_settings import ClassificationModeResolver, OrgSettingsService
from airouter.utils.json_utils import parse_llm_json
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

MAX_CONFIDENCE_FROM_PATTERNS = 0.95
ACCEPT_CONFIDENCE = 0.7
ESCALATE_CONFIDENCE = 0.5
MAX_REQUEST_CHARS_FOR_MODEL = 500


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


# ============================================================================
# Signal Patterns
# ============================================================================

CODE_VERB_PATTERNS = _compile(
    r"\b(write|create|implement|build|generate|make|add|develop)\b",
    r"\b(fix|debug|repair|resolve|patch)\b",
    r"\b(refactor|rewrite|optimize|improve|enhance)\b",
    r"\b(update|modify|change|edit)\s+(the\s+)?(code|function|class|component)",
)
CODE_OUTPUT_PATTERNS = _compile(
    r"\bgive\s+me\s+(the\s+)?code\b",
    r"\bcode\s+(for|to|that)\b",
    r"\bimplement(ation)?\b",
    r"\bwrite\s+(a|the)\s+(function|class|component|api|endpoint)",
)
CODE_CONTEXT_PATTERNS = _compile(
    r"\.(ts|js|tsx|jsx|py|java|go|rs|cpp|c|rb|php)\b",
    r"\bin\s+\w+\.(ts|js|py)\b",
    r"\bPR\s*#?\d+\b",
    r"\bpull\s+request\b",
)

PROSE_VERB_PATTERNS = _compile(
    r"\b(explain|describe|tell\s+me|what\s+(is|are|does))\b",
    r"\b(summarize|summary|recap)\b",
    r"\b(analyze|analysis|review)\s+(the\s+)?(meeting|standup|discussion)",
    r"\b(list|show|find|search|get)\s+(all|the)\b",
    r"\b(classify|categorize|assign|prioritize)\b",
)
PROSE_QUESTION_PATTERNS = _compile(
    r"\bwhat\s+(is|are|does|did|should)\b",
    r"\bhow\s+(does|do|did|to|can)\b",
    r"\bwhy\s+(is|are|does|did)\b",
    r"\bwhen\s+(should|did|does)\b",
    r"\bwho\s+(should|is|are)\b",
    r"\?\Z",  # End of text only, not before a trailing newline
)
PROSE_ENTITY_PATTERNS = _compile(
    r"\bmeeting\b",
    r"\bstandup\b",
    r"\bticket\s+(description|summary)\b",
    r"\brequirement(s)?\b",
    r"\bdocument(ation)?\b",
)

AMBIGUOUS_PATTERNS = _compile(
    r"\bhelp\s+(me\s+)?(with|on)\b",
    r"\blook\s+at\b",
    r"\bcheck\s+(this|the)\b",
    r"\bcan\s+you\b",
    r"\bi\s+need\s+(to|a)\b",
    r"\bplease\b",
)

# First match wins
TASK_TYPE_RULES: tuple[tuple[re.Pattern, TaskType], ...] = (
    (re.compile(r"\b(write|create|implement|build|generate)\b", re.IGNORECASE), TaskType.WRITE_CODE),
    (re.compile(r"\b(fix|debug|repair)\b", re.IGNORECASE), TaskType.DEBUG),
    (re.compile(r"\b(refactor|rewrite|optimize)\b", re.IGNORECASE), TaskType.REFACTOR),
    (re.compile(r"\b(explain|describe|what)\b", re.IGNORECASE), TaskType.EXPLAIN),
    (re.compile(r"\b(summarize|summary)\b", re.IGNORECASE), TaskType.SUMMARIZE),
    (re.compile(r"\b(classify|assign|categorize)\b", re.IGNORECASE), TaskType.CLASSIFY),
    (re.compile(r"\b(analyze|analysis)\b", re.IGNORECASE), TaskType.ANALYZE),
    (re.compile(r"\breview\b", re.IGNORECASE), TaskType.REVIEW),
)

# Structural deltas: (side, points). Ticket type and priority match case-sensitively
ENTITY_TYPE_DELTAS = {
    EntityType.PR: ("code", 30),
    EntityType.MEETING: ("prose", 30),
}
TICKET_TYPE_DELTAS = {
    "bug": ("code", 20),
    "spike": ("prose", 20),
}
PRIORITY_DELTAS = {
    "critical": ("code", 10),
}


def output_type_for(code_percentage: int) -> OutputType:
    if code_percentage > 50:
        return OutputType.CODE
    if code_percentage > 20:
        return OutputType.MIXED
    return OutputType.TEXT


def is_ambiguous(request_text: str) -> bool:
    """Whether the request uses hedged phrasing that pattern scoring reads poorly"""
    return any(pattern.search(request_text) for pattern in AMBIGUOUS_PATTERNS)


def detect_task_type(request_text: str) -> TaskType:
    for pattern, task_type in TASK_TYPE_RULES:
        if pattern.search(request_text):
            return task_type
    return TaskType.OTHER


class ClassificationStrategy(Protocol):
    async def classify(
        self, request_text: str, context: ClassificationContext | None = None
    ) -> ClassificationResult: ...


# ============================================================================
# Pattern Scoring
# ============================================================================


class PatternClassifier:
    """Pure pattern scoring, no I/O

    Every matching pattern adds its points, so a request matching two verb
    patterns ("write ... fix") scores 40 twice.
    """

    def __init__(
        self,
        code_tier: str | None = None,
        prose_tier: str | None = None,
    ):
        self.code_tier = code_tier or settings.code_model_tier
        self.prose_tier = prose_tier or settings.prose_model_tier

    def score(
        self, request_text: str, context: ClassificationContext | None = None
    ) -> ClassificationResult:
        """Classify synchronously"""
        code_score = 0
        prose_score = 0
        action_verb: str | None = None
        matched_context: list[str] = []

        for pattern in CODE_VERB_PATTERNS:
            match = pattern.search(request_text)
            if match:
                code_score += 40
                action_verb = match.group(0).lower()
        for pattern in CODE_OUTPUT_PATTERNS:
            if pattern.search(request_text):
                code_score += 30
        for pattern in CODE_CONTEXT_PATTERNS:
            match = pattern.search(request_text)
            if match:
                code_score += 20
                matched_context.append(match.group(0))

        for pattern in PROSE_VERB_PATTERNS:
            match = pattern.search(request_text)
            if match:
                prose_score += 40
                if action_verb is None:
                    action_verb = match.group(0).lower()
        for pattern in PROSE_QUESTION_PATTERNS:
            if pattern.search(request_text):
                prose_score += 25
        for pattern in PROSE_ENTITY_PATTERNS:
            if pattern.search(request_text):
                prose_score += 20

        if context is not None:
            data = context.entity_data
            deltas = [
                ENTITY_TYPE_DELTAS.get(context.entity_type) if context.entity_type else None,
                TICKET_TYPE_DELTAS.get(data.ticket_type) if data else None,
                PRIORITY_DELTAS.get(data.priority) if data else None,
            ]
            for delta in deltas:
                if delta is None:
                    continue
                side, points = delta
                if side == "code":
                    code_score += points
                else:
                    prose_score += points

        # Ties go to prose
        code_leaning = code_score > prose_score
        confidence = min(max(code_score, prose_score) / 100, MAX_CONFIDENCE_FROM_PATTERNS)

        task_type = detect_task_type(request_text)
        if code_leaning:
            code_percentage = 90 if task_type == TaskType.WRITE_CODE else 70
        else:
            code_percentage = 20 if task_type == TaskType.EXPLAIN else 10

        recommended = self.code_tier if code_leaning else self.prose_tier

        return ClassificationResult(
            task_type=task_type,
            code_percentage=code_percentage,
            recommended_model=recommended,
            fallback_model=fallback_tier_for(recommended),
            confidence=confidence,
            reasoning=f"Keyword analysis: code={code_score}, prose={prose_score}",
            method=ClassificationMethod.PATTERN,
            signals=ClassificationSignals(
                action_verb=action_verb,
                output_type=output_type_for(code_percentage),
                entity_type=context.entity_type if context else None,
                complexity=Complexity.MEDIUM,
                matched_context=matched_context,
            ),
        )

    async def classify(
        self, request_text: str, context: ClassificationContext | None = None
    ) -> ClassificationResult:
        return self.score(request_text, context)


# ============================================================================
# Model-Assisted Classification
# ============================================================================

CLASSIFIER_SYSTEM_PROMPT = (
    "You are a task classifier for a software development assistant. "
    "Decide how much of an ideal answer to the request is code and which model should "
    "answer it. Respond with a single JSON object and nothing else."
)


class ModelAssistedClassifier:
    """Classification by one call to a low-cost model

    The call is never retried. Any failure (error, timeout, unparseable output, unknown
    tier) yields a Degraded outcome and the pattern result is used instead.
    """

    def __init__(
        self,
        provider: ModelProvider | None = None,
        pattern: PatternClassifier | None = None,
        tier_key: str | None = None,
        timeout: float | None = None,
    ):
        self._provider = provider
        self.pattern = pattern or PatternClassifier()
        self.tier_key = tier_key or settings.classifier_model_tier
        self.timeout = timeout if timeout is not None else settings.classifier_timeout_seconds

    @property
    def provider(self) -> ModelProvider:
        """Lazy-load the provider so pattern-only setups never build an HTTP client"""
        if self._provider is None:
            self._provider = get_llm_client()
        return self._provider

    def build_prompt(self, request_text: str, context: ClassificationContext | None) -> str:
        """Prompt with the request truncated and structural context summarized"""
        tiers = ", ".join(
            f"{key} ({'code' if tier.supports_code else 'prose'})"
            for key, tier in MODEL_REGISTRY.items()
        )
        task_types = ", ".join(task_type.value for task_type in TaskType)
        context_summary = json.dumps(context.summary()) if context else "none"

        return f"""Classify this request.

Return JSON with exactly these fields:
{{
  "code_percentage": <0-100, share of the ideal answer that is code>,
  "task_type": "<one of: {task_types}>",
  "complexity": "<low|medium|high>",
  "recommended_model": "<one of the model keys below>",
  "confidence": <0.0-1.0>,
  "reasoning": "<one short sentence>"
}}

Models: {tiers}
- Use a code model when the answer is mostly code or code changes
- Use a prose model for summaries, explanations and classification

Request: "{request_text[:MAX_REQUEST_CHARS_FOR_MODEL]}"
Context: {context_summary}"""

    async def attempt(
        self, request_text: str, context: ClassificationContext | None = None
    ) -> AssistedOutcome:
        """One model call, returned as Classified or Degraded; never raises"""
        try:
            tier = get_model_tier(self.tier_key)
        except UnknownModelTierError as e:
            return Degraded(DegradeReason.UNKNOWN_TIER, str(e))

        try:
            completion = await asyncio.wait_for(
                self.provider.complete(
                    tier,
                    self.build_prompt(request_text, context),
                    max_tokens=settings.classifier_max_tokens,
                    temperature=0.0,
                    system_prompt=CLASSIFIER_SYSTEM_PROMPT,
                    json_schema=ModelClassificationSchema.model_json_schema(),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return Degraded(DegradeReason.TIMEOUT, f"no answer within {self.timeout}s")
        except Exception as e:
            return Degraded(DegradeReason.CALL_FAILED, str(e))

        try:
            parsed = ModelClassificationSchema.model_validate(parse_llm_json(completion.content))
        except ValueError as e:
            return Degraded(DegradeReason.PARSE_FAILED, str(e))

        if parsed.recommended_model not in MODEL_REGISTRY:
            return Degraded(
                DegradeReason.UNKNOWN_TIER, f"model suggested '{parsed.recommended_model}'"
            )

        return Classified(
            ClassificationResult(
                task_type=parsed.task_type,
                code_percentage=parsed.code_percentage,
                recommended_model=parsed.recommended_model,
                fallback_model=fallback_tier_for(parsed.recommended_model),
                confidence=parsed.confidence,
                reasoning=parsed.reasoning,
                method=ClassificationMethod.MODEL_ASSISTED,
                signals=ClassificationSignals(
                    output_type=output_type_for(parsed.code_percentage),
                    entity_type=context.entity_type if context else None,
                    complexity=parsed.complexity,
                ),
            )
        )

    async def classify(
        self, request_text: str, context: ClassificationContext | None = None
    ) -> ClassificationResult:
        outcome = await self.attempt(request_text, context)
        if isinstance(outcome, Classified):
            return outcome.result

        logger.warning(
            f"Model-assisted classification degraded ({outcome.reason.value}): "
            f"{outcome.detail}. Falling back to pattern scoring."
        )
        MetricsCollector.record_degradation(outcome.reason.value)
        return self.pattern.score(request_text, context)


# ============================================================================
# Hybrid
# ============================================================================


class HybridClassifier:
    """Pattern scoring, escalating to the model only for unclear requests"""

    def __init__(self, pattern: PatternClassifier, assisted: ModelAssistedClassifier):
        self.pattern = pattern
        self.assisted = assisted

    def should_escalate(self, request_text: str, pattern_result: ClassificationResult) -> bool:
        if pattern_result.confidence >= ACCEPT_CONFIDENCE:
            return False
        return is_ambiguous(request_text) or pattern_result.confidence < ESCALATE_CONFIDENCE

    async def classify(
        self, request_text: str, context: ClassificationContext | None = None
    ) -> ClassificationResult:
        result = self.pattern.score(request_text, context)
        if not self.should_escalate(request_text, result):
            return result

        logger.debug(
            f"Pattern confidence {result.confidence:.2f} is inconclusive, "
            "escalating to model-assisted classification"
        )
        return await self.assisted.classify(request_text, context)


# ============================================================================
# Entry Point
# ============================================================================


def forced_result(tier_key: str) -> ClassificationResult:
    """Synthetic classification for an explicit model override

    Raises:
        UnknownModelTierError: If the forced tier is not registered
    """
    tier = get_model_tier(tier_key)
    is_anthropic = tier.provider == ProviderFamily.ANTHROPIC
    return ClassificationResult(
        task_type=TaskType.OTHER,
        code_percentage=70 if is_anthropic else 30,
        recommended_model=tier.key,
        fallback_model=fallback_tier_for(tier.key),
        confidence=1.0,
        reasoning="User forced model selection",
        method=ClassificationMethod.FORCED,
        signals=ClassificationSignals(output_type=OutputType.MIXED),
    )


class TaskClassifier:
    """Classify requests using each organization's configured strategy"""

    def __init__(
        self,
        mode_resolver: ClassificationModeResolver | None = None,
        provider: ModelProvider | None = None,
        pattern: PatternClassifier | None = None,
        assisted: ModelAssistedClassifier | None = None,
    ):
        self.mode_resolver = mode_resolver or OrgSettingsService()
        self.pattern = pattern or PatternClassifier()
        self.assisted = assisted or ModelAssistedClassifier(provider=provider, pattern=self.pattern)
        self.strategies: dict[ClassificationMode, ClassificationStrategy] = {
            ClassificationMode.COST: self.pattern,
            ClassificationMode.ACCURACY: self.assisted,
            ClassificationMode.HYBRID: HybridClassifier(self.pattern, self.assisted),
        }

    async def classify(
        self,
        request_text: str,
        org_id: str,
        context: ClassificationContext | None = None,
        force_model: str | None = None,
    ) -> ClassificationResult:
        """
        Classify a request

        Args:
            request_text: Natural-language request
            org_id: Organization whose classification mode applies
            context: Optional structural context
            force_model: Registry key to use regardless of content

        Returns:
            Classification result

        Raises:
            UnknownModelTierError: If a forced model is not registered
        """
        forced = force_model
        if forced is None and context and context.user_preferences:
            prefs = context.user_preferences
            if prefs.force_model:
                forced = prefs.preferred_model or settings.code_model_tier

        if forced is not None:
            result = forced_result(forced)
            MetricsCollector.record_classification("forced", result.method.value, result.confidence)
            return result

        mode = await self.mode_resolver.get_classification_mode(org_id)
        result = await self.strategies[mode].classify(request_text, context)

        logger.debug(
            f"Classified request for org {org_id} ({mode.value}): {result.task_type.value} -> "
            f"{result.recommended_model} [{result.method.value}, {result.confidence:.2f}]"
        )
        MetricsCollector.record_classification(mode.value, result.method.value, result.confidence)
        return result


# Singleton instance
_task_classifier: TaskClassifier | None = None


def get_task_classifier() -> TaskClassifier:
    """Get or create the task classifier singleton"""
    global _task_classifier

    if _task_classifier is None:
        _task_classifier = TaskClassifier()

    return _task_classifier
