"""Model provider client for OpenRouter-compatible chat completion APIs"""

import os
from typing import Any, Protocol, runtime_checkable

import httpx

from airouter.config import settings
from airouter.core.exceptions import ModelInvocationError
from airouter.core.models.registry import ModelTier
from airouter.core.models.routing import ModelCompletion
from airouter.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ModelProvider(Protocol):
    """Prompt in, text plus token counts out; may fail or hang"""

    async def complete(
        self,
        tier: ModelTier,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> ModelCompletion: ...


def build_response_format(schema_name: str, schema: dict[str, Any]) -> dict[str, Any]:
    """response_format payload requesting structured JSON output"""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": schema_name,
            "strict": True,
            "schema": schema,
        },
    }


class LLMClient:
    """Client for chat completions via OpenRouter or OpenAI-compatible APIs

    Each call is a single attempt. Retries and fallback are the router's job, so a
    failure here surfaces immediately as ModelInvocationError.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client

        Args:
            api_key: API key (defaults to OPENROUTER_API_KEY)
            base_url: Base URL for the API (OpenRouter by default)
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key or settings.openrouter_api_key or os.getenv("OPENROUTER_API_KEY")
        if not self.api_key:
            raise ValueError(
                "API key required. Set OPENROUTER_API_KEY in .env file, environment variable, "
                "or pass api_key parameter"
            )

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def complete(
        self,
        tier: ModelTier,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> ModelCompletion:
        """
        Run one chat completion against a model tier

        Args:
            tier: Registry tier to call
            prompt: User message
            max_tokens: Completion limit (capped at the tier's max output tokens)
            temperature: Sampling temperature
            system_prompt: Optional system message
            json_schema: Request structured output matching this JSON schema

        Returns:
            Completion text and provider-reported token counts

        Raises:
            ModelInvocationError: On transport errors, non-2xx responses or malformed bodies
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: dict[str, Any] = {
            "model": tier.provider_model,
            "messages": messages,
            "max_tokens": min(max_tokens or tier.max_output_tokens, tier.max_output_tokens),
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if json_schema:
            payload["response_format"] = build_response_format(
                json_schema.get("title", "response"), json_schema
            )

        headers = {}
        if "openrouter.ai" in self.base_url:
            headers["X-Title"] = settings.app_name

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers
            )
        except httpx.TimeoutException as e:
            raise ModelInvocationError(tier.key, f"timed out: {e}") from e
        except httpx.RequestError as e:
            raise ModelInvocationError(tier.key, f"network error: {e}") from e

        if response.status_code >= 400:
            raise ModelInvocationError(
                tier.key, f"HTTP {response.status_code}: {response.text[:500]}"
            )

        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ModelInvocationError(tier.key, f"malformed response: {e}") from e

        if content is None:
            raise ModelInvocationError(tier.key, "empty completion")

        usage = data.get("usage") or {}
        logger.debug(
            f"Completion from {tier.key}: {usage.get('prompt_tokens')} prompt / "
            f"{usage.get('completion_tokens')} completion tokens"
        )

        return ModelCompletion(
            content=content,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
            finish_reason=choice.get("finish_reason"),
        )

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):  # noqa: ANN001
        await self.close()


# Singleton instance
_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    """Get or create the LLM client singleton"""
    global _llm_client

    if _llm_client is None:
        _llm_client = LLMClient(
            base_url=settings.openrouter_base_url,
            timeout=settings.model_timeout_seconds,
        )

    return _llm_client


async def close_llm_client():
    """Close the global LLM client"""
    global _llm_client

    if _llm_client is not None:
        await _llm_client.close()
        _llm_client = None
