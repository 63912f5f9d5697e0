"""Tests for task classification"""

import json

import pytest

from airouter.core.exceptions import ModelInvocationError, UnknownModelTierError
from airouter.core.models.classification import (
    ClassificationContext,
    ClassificationMethod,
    ClassificationMode,
    Classified,
    Complexity,
    Degraded,
    DegradeReason,
    EntityData,
    EntityType,
    OutputType,
    TaskType,
    UserPreferences,
)
from airouter.core.models.routing import ModelCompletion
from airouter.services.classifier import (
    HybridClassifier,
    ModelAssistedClassifier,
    PatternClassifier,
    TaskClassifier,
    forced_result,
    is_ambiguous,
)
from airouter.services.org_settings import OrgSettingsService, StaticModeResolver
from tests.conftest import FakeProvider


def classifier_reply(**overrides) -> str:
    payload = {
        "code_percentage": 80,
        "task_type": "write_code",
        "complexity": "HIGH",
        "recommended_model": "claude-opus",
        "confidence": 0.85,
        "reasoning": "Mostly UI code",
    }
    payload.update(overrides)
    return json.dumps(payload)


class TestPatternClassifier:
    """Test regex scoring"""

    @pytest.fixture
    def classifier(self):
        return PatternClassifier(code_tier="claude-sonnet", prose_tier="gemini-flash")

    def test_code_request_with_file_reference(self, classifier):
        """Test a code-writing request naming a TypeScript file"""
        result = classifier.score("Write a function to fix the login bug in auth.ts")

        assert result.task_type == TaskType.WRITE_CODE
        assert result.recommended_model == "claude-sonnet"
        assert result.fallback_model == "gemini-pro"
        assert result.code_percentage == 90
        assert result.confidence == 0.95
        assert result.method == ClassificationMethod.PATTERN
        assert ".ts" in result.signals.matched_context
        assert result.signals.output_type == OutputType.CODE
        assert result.signals.action_verb == "fix"

    def test_standup_question_goes_to_prose_tier(self, classifier):
        """Test a question about a standup meeting"""
        result = classifier.score("What did we discuss in the standup meeting?")

        assert result.task_type == TaskType.EXPLAIN
        assert result.recommended_model == "gemini-flash"
        assert result.fallback_model == "claude-sonnet"
        assert result.code_percentage == 20
        assert result.confidence == pytest.approx(0.9)
        assert result.signals.output_type == OutputType.TEXT
        assert result.reasoning == "Keyword analysis: code=0, prose=90"

    def test_overlapping_verb_patterns_add_up(self, classifier):
        """Documented quirk: two verb patterns matching one request both add 40 points"""
        result = classifier.score("write and fix")

        assert result.reasoning == "Keyword analysis: code=80, prose=0"
        assert result.confidence == pytest.approx(0.8)

    def test_confidence_is_capped(self, classifier):
        """Test that pattern confidence never exceeds 0.95"""
        result = classifier.score(
            "Write a function and implement code for the class in app.py, fix PR #12"
        )
        assert result.confidence == 0.95

    def test_no_signals_tie_goes_to_prose(self, classifier):
        """Test that an empty score tie recommends the prose tier"""
        result = classifier.score("hello there")

        assert result.recommended_model == "gemini-flash"
        assert result.task_type == TaskType.OTHER
        assert result.confidence == 0.0
        assert result.code_percentage == 10

    def test_summarize_request(self, classifier):
        """Test summarization requests"""
        result = classifier.score("Summarize the standup meeting notes")

        assert result.task_type == TaskType.SUMMARIZE
        assert result.recommended_model == "gemini-flash"
        assert result.code_percentage == 10
        assert result.signals.action_verb == "summarize"

    def test_pr_context_pushes_toward_code(self, classifier):
        """Test that a pull request context adds code points"""
        context = ClassificationContext(entity_type=EntityType.PR)
        result = classifier.score("Look at this", context)

        assert result.recommended_model == "claude-sonnet"
        assert result.code_percentage == 70
        assert result.confidence == pytest.approx(0.3)
        assert result.signals.entity_type == EntityType.PR

    def test_ticket_deltas(self, classifier):
        """Test bug tickets and critical priority add code points, spikes add prose points"""
        bug = ClassificationContext(
            entity_type=EntityType.TICKET,
            entity_data=EntityData(ticket_type="bug", priority="critical"),
        )
        spike = ClassificationContext(
            entity_type=EntityType.TICKET, entity_data=EntityData(ticket_type="spike")
        )

        assert classifier.score("Look at this", bug).reasoning == (
            "Keyword analysis: code=30, prose=0"
        )
        assert classifier.score("Look at this", spike).reasoning == (
            "Keyword analysis: code=0, prose=20"
        )

    def test_ticket_fields_match_case_sensitively(self, classifier):
        """Test that capitalized ticket type and priority add no points"""
        context = ClassificationContext(
            entity_type=EntityType.TICKET,
            entity_data=EntityData(ticket_type="Bug", priority="Critical"),
        )

        assert classifier.score("Look at this", context).reasoning == (
            "Keyword analysis: code=0, prose=0"
        )

    def test_question_mark_must_end_the_text(self, classifier):
        """Test that a question mark followed by whitespace is not a question"""
        assert classifier.score("Ready?").reasoning == "Keyword analysis: code=0, prose=25"
        assert classifier.score("Ready? ").reasoning == "Keyword analysis: code=0, prose=0"
        assert classifier.score("Ready?\n").reasoning == "Keyword analysis: code=0, prose=0"

    def test_scoring_is_deterministic(self, classifier):
        """Test that identical input gives identical output"""
        text = "Refactor the payment component"
        assert classifier.score(text) == classifier.score(text)

    def test_ambiguity_detection(self):
        """Test hedged phrasing detection"""
        assert is_ambiguous("Can you help me with the checkout page")
        assert is_ambiguous("please look at the build")
        assert not is_ambiguous("Write a function to parse dates")


class TestModelAssistedClassifier:
    """Test the single-call model classifier and its degradation paths"""

    @pytest.mark.asyncio
    async def test_successful_classification(self):
        """Test that a valid model answer becomes the result"""
        provider = FakeProvider({"gemini-flash": classifier_reply()})
        classifier = ModelAssistedClassifier(provider=provider, tier_key="gemini-flash")

        outcome = await classifier.attempt("Can you help me with the checkout page")

        assert isinstance(outcome, Classified)
        result = outcome.result
        assert result.method == ClassificationMethod.MODEL_ASSISTED
        assert result.task_type == TaskType.WRITE_CODE
        assert result.recommended_model == "claude-opus"
        assert result.fallback_model == "gemini-pro"
        assert result.signals.complexity == Complexity.HIGH
        assert provider.called_tiers == ["gemini-flash"]
        assert provider.calls[0]["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_fenced_json_is_accepted(self):
        """Test that markdown-fenced JSON is parsed"""
        provider = FakeProvider({"gemini-flash": f"```json\n{classifier_reply()}\n```"})
        classifier = ModelAssistedClassifier(provider=provider, tier_key="gemini-flash")

        outcome = await classifier.attempt("anything")
        assert isinstance(outcome, Classified)

    @pytest.mark.asyncio
    async def test_call_failure_degrades(self):
        """Test that a provider error degrades to pattern scoring"""
        provider = FakeProvider({"gemini-flash": ModelInvocationError("gemini-flash", "HTTP 500")})
        classifier = ModelAssistedClassifier(provider=provider, tier_key="gemini-flash")

        outcome = await classifier.attempt("Write a parser")
        assert isinstance(outcome, Degraded)
        assert outcome.reason == DegradeReason.CALL_FAILED

        result = await classifier.classify("Write a parser")
        assert result.method == ClassificationMethod.PATTERN
        assert result.task_type == TaskType.WRITE_CODE

    @pytest.mark.asyncio
    async def test_timeout_degrades(self):
        """Test that a slow classifier call degrades instead of blocking"""
        provider = FakeProvider(
            {"gemini-flash": classifier_reply()}, delays={"gemini-flash": 1.0}
        )
        classifier = ModelAssistedClassifier(
            provider=provider, tier_key="gemini-flash", timeout=0.05
        )

        outcome = await classifier.attempt("Write a parser")
        assert isinstance(outcome, Degraded)
        assert outcome.reason == DegradeReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_unparseable_output_degrades(self):
        """Test that prose or out-of-range values degrade"""
        for reply in ["I think this is code", classifier_reply(confidence=1.5), "[1, 2]"]:
            provider = FakeProvider({"gemini-flash": reply})
            classifier = ModelAssistedClassifier(provider=provider, tier_key="gemini-flash")

            outcome = await classifier.attempt("Write a parser")
            assert isinstance(outcome, Degraded)
            assert outcome.reason == DegradeReason.PARSE_FAILED

    @pytest.mark.asyncio
    async def test_unknown_suggested_tier_degrades(self):
        """Test that a tier missing from the registry degrades"""
        provider = FakeProvider({"gemini-flash": classifier_reply(recommended_model="gpt-99")})
        classifier = ModelAssistedClassifier(provider=provider, tier_key="gemini-flash")

        outcome = await classifier.attempt("Write a parser")
        assert isinstance(outcome, Degraded)
        assert outcome.reason == DegradeReason.UNKNOWN_TIER

    @pytest.mark.asyncio
    async def test_unknown_classifier_tier_degrades_without_call(self):
        """Test that a misconfigured classifier tier never calls the provider"""
        provider = FakeProvider()
        classifier = ModelAssistedClassifier(provider=provider, tier_key="missing-tier")

        outcome = await classifier.attempt("Write a parser")
        assert isinstance(outcome, Degraded)
        assert outcome.reason == DegradeReason.UNKNOWN_TIER
        assert provider.calls == []

    def test_prompt_truncates_request(self):
        """Test that only the first 500 characters of the request are sent"""
        classifier = ModelAssistedClassifier(provider=FakeProvider(), tier_key="gemini-flash")
        prompt = classifier.build_prompt("x" * 600 + "TAIL", None)

        assert "x" * 500 in prompt
        assert "TAIL" not in prompt


class TestHybridClassifier:
    """Test escalation policy"""

    @pytest.mark.asyncio
    async def test_confident_pattern_result_is_not_escalated(self):
        """Test that confident pattern results skip the model"""
        provider = FakeProvider({"gemini-flash": classifier_reply()})
        pattern = PatternClassifier()
        hybrid = HybridClassifier(pattern, ModelAssistedClassifier(provider, pattern))

        result = await hybrid.classify("Write a function to fix the login bug in auth.ts")

        assert result.method == ClassificationMethod.PATTERN
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_ambiguous_request_is_escalated(self):
        """Test that low-confidence ambiguous requests call the model once"""
        provider = FakeProvider({"gemini-flash": classifier_reply()})
        pattern = PatternClassifier()
        hybrid = HybridClassifier(
            pattern, ModelAssistedClassifier(provider, pattern, tier_key="gemini-flash")
        )

        result = await hybrid.classify("Can you help me with the checkout page")

        assert result.method == ClassificationMethod.MODEL_ASSISTED
        assert result.recommended_model == "claude-opus"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_escalation_failure_returns_pattern_result(self):
        """Test that a failed escalation still produces a result"""
        provider = FakeProvider({"gemini-flash": RuntimeError("boom")})
        pattern = PatternClassifier()
        hybrid = HybridClassifier(
            pattern, ModelAssistedClassifier(provider, pattern, tier_key="gemini-flash")
        )

        result = await hybrid.classify("Can you help me with the checkout page")

        assert result.method == ClassificationMethod.PATTERN
        assert len(provider.calls) == 1


class TestForcedClassification:
    """Test forced model selection"""

    def test_forced_anthropic_tier(self):
        """Test forced result for an Anthropic tier"""
        result = forced_result("claude-opus")

        assert result.method == ClassificationMethod.FORCED
        assert result.confidence == 1.0
        assert result.task_type == TaskType.OTHER
        assert result.code_percentage == 70
        assert result.fallback_model == "gemini-pro"
        assert result.reasoning == "User forced model selection"

    def test_forced_google_tier(self):
        """Test forced result for a Google tier"""
        result = forced_result("gemini-pro")

        assert result.code_percentage == 30
        assert result.fallback_model == "claude-sonnet"

    def test_forced_unknown_tier_raises(self):
        """Test that forcing an unregistered tier is an error"""
        with pytest.raises(UnknownModelTierError):
            forced_result("gpt-99")


class TestTaskClassifier:
    """Test mode resolution and the forced short-circuit"""

    @pytest.mark.asyncio
    async def test_force_model_skips_scoring_and_mode_lookup(self):
        """Test that force_model returns before any strategy runs"""
        provider = FakeProvider()
        classifier = TaskClassifier(
            mode_resolver=StaticModeResolver(ClassificationMode.ACCURACY), provider=provider
        )

        result = await classifier.classify("Write code", "org-1", force_model="gemini-pro")

        assert result.method == ClassificationMethod.FORCED
        assert result.recommended_model == "gemini-pro"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_user_preference_forces_model(self):
        """Test forcing through user preferences"""
        classifier = TaskClassifier(mode_resolver=StaticModeResolver("cost"))
        context = ClassificationContext(
            user_preferences=UserPreferences(preferred_model="claude-opus", force_model=True)
        )

        result = await classifier.classify("Summarize this", "org-1", context)

        assert result.method == ClassificationMethod.FORCED
        assert result.recommended_model == "claude-opus"

    @pytest.mark.asyncio
    async def test_preferred_model_without_force_is_ignored(self):
        """Test that a preference alone does not force"""
        classifier = TaskClassifier(mode_resolver=StaticModeResolver("cost"))
        context = ClassificationContext(
            user_preferences=UserPreferences(preferred_model="claude-opus", force_model=False)
        )

        result = await classifier.classify("Summarize this meeting", "org-1", context)

        assert result.method == ClassificationMethod.PATTERN

    @pytest.mark.asyncio
    async def test_accuracy_mode_calls_model(self):
        """Test that accuracy mode always uses the model"""
        provider = FakeProvider({"gemini-flash": classifier_reply()})
        classifier = TaskClassifier(
            mode_resolver=StaticModeResolver(ClassificationMode.ACCURACY), provider=provider
        )

        result = await classifier.classify(
            "Write a function to fix the login bug in auth.ts", "org-1"
        )

        assert result.method == ClassificationMethod.MODEL_ASSISTED
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_org_mode_is_read_from_settings_store(self):
        """Test per-organization mode resolution with the default for unknown orgs"""
        settings_service = OrgSettingsService()
        await settings_service.configure("org-cost", classification_mode="cost")

        assert await settings_service.get_classification_mode("org-cost") == ClassificationMode.COST
        assert (
            await settings_service.get_classification_mode("org-unknown")
            == ClassificationMode.HYBRID
        )

    @pytest.mark.asyncio
    async def test_invalid_stored_mode_falls_back_to_default(self):
        """Test that a corrupt mode value does not break classification"""
        from airouter.storage.database import get_session
        from airouter.storage.models import OrgAIConfigDB

        async with get_session() as session:
            session.add(OrgAIConfigDB(org_id="org-bad", classification_mode="turbo"))

        mode = await OrgSettingsService().get_classification_mode("org-bad")
        assert mode == ClassificationMode.HYBRID

    @pytest.mark.asyncio
    async def test_model_completion_with_usage_is_accepted(self):
        """Test that provider token counts do not affect parsing"""
        provider = FakeProvider(
            {
                "gemini-flash": ModelCompletion(
                    content=classifier_reply(), prompt_tokens=120, completion_tokens=40
                )
            }
        )
        classifier = TaskClassifier(mode_resolver=StaticModeResolver("accuracy"), provider=provider)

        result = await classifier.classify("Can you help me", "org-1")
        assert result.recommended_model == "claude-opus"
