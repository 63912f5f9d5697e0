"""Static registry of model tiers with cost and capability metadata"""

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field

from airouter.core.exceptions import UnknownModelTierError


class ProviderFamily(str, Enum):
    """Provider family backing a model tier"""

    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENAI = "openai"


class ModelTier(BaseModel):
    """One named backing model with fixed cost and capability metadata"""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Registry key, e.g. 'claude-sonnet'")
    model_id: str = Field(..., description="Provider model identifier")
    provider_model: str = Field(..., description="Identifier sent to the completion gateway")
    display_name: str = Field(..., description="Human-readable model name")
    provider: ProviderFamily
    cost_per_1k_prompt: float = Field(..., ge=0.0, description="USD per 1000 prompt tokens")
    cost_per_1k_completion: float = Field(
        ..., ge=0.0, description="USD per 1000 completion tokens"
    )
    max_output_tokens: int = Field(..., gt=0)
    supports_code: bool

    def prompt_cost(self, prompt_tokens: int) -> float:
        return (prompt_tokens / 1000) * self.cost_per_1k_prompt

    def completion_cost(self, completion_tokens: int) -> float:
        return (completion_tokens / 1000) * self.cost_per_1k_completion

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Cost in USD for the given token counts"""
        return self.prompt_cost(prompt_tokens) + self.completion_cost(completion_tokens)


_TIERS = (
    ModelTier(
        key="claude-opus",
        model_id="claude-3-opus-20240229",
        provider_model="anthropic/claude-3-opus",
        display_name="Claude 3 Opus",
        provider=ProviderFamily.ANTHROPIC,
        cost_per_1k_prompt=0.015,
        cost_per_1k_completion=0.075,
        max_output_tokens=4096,
        supports_code=True,
    ),
    ModelTier(
        key="claude-sonnet",
        model_id="claude-sonnet-4-20250514",
        provider_model="anthropic/claude-sonnet-4",
        display_name="Claude Sonnet 4",
        provider=ProviderFamily.ANTHROPIC,
        cost_per_1k_prompt=0.003,
        cost_per_1k_completion=0.015,
        max_output_tokens=8192,
        supports_code=True,
    ),
    ModelTier(
        key="gemini-pro",
        model_id="gemini-1.5-pro",
        provider_model="google/gemini-pro-1.5",
        display_name="Gemini 1.5 Pro",
        provider=ProviderFamily.GOOGLE,
        cost_per_1k_prompt=0.00125,
        cost_per_1k_completion=0.005,
        max_output_tokens=8192,
        supports_code=True,
    ),
    ModelTier(
        key="gemini-flash",
        model_id="gemini-1.5-flash",
        provider_model="google/gemini-flash-1.5",
        display_name="Gemini 1.5 Flash",
        provider=ProviderFamily.GOOGLE,
        cost_per_1k_prompt=0.000075,
        cost_per_1k_completion=0.0003,
        max_output_tokens=8192,
        supports_code=False,
    ),
)

# Read-only view; tiers are loaded once at import and never mutated
MODEL_REGISTRY: Mapping[str, ModelTier] = MappingProxyType({tier.key: tier for tier in _TIERS})

# Cross-provider pairing so a provider outage never takes out both attempts
_FALLBACK_BY_PROVIDER = {
    ProviderFamily.ANTHROPIC: "gemini-pro",
    ProviderFamily.GOOGLE: "claude-sonnet",
    ProviderFamily.OPENAI: "claude-sonnet",
}


def get_model_tier(key: str) -> ModelTier:
    """Look up a tier by registry key

    Raises:
        UnknownModelTierError: If the key is not registered
    """
    try:
        return MODEL_REGISTRY[key]
    except KeyError:
        raise UnknownModelTierError(key) from None


def is_known_tier(key: str) -> bool:
    return key in MODEL_REGISTRY


def fallback_tier_for(key: str) -> str:
    """Registry key of the fallback tier paired with the given tier"""
    return _FALLBACK_BY_PROVIDER[get_model_tier(key).provider]
