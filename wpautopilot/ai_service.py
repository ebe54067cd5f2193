"""
AI Service: provider-agnostic chat completions for WP Autopilot.

Wraps the Anthropic and OpenAI async SDKs behind one call:

    response = await service.chat_completion(messages, model, options)
    response.content, response.tokens_used, response.cost

Every call carries an explicit timeout. Timeouts and SDK failures are
raised as UpstreamError with a readable message; a failed call reports no
token usage.

Usage:
    from wpautopilot.ai_service import get_ai_service

    ai = get_ai_service()
    resp = await ai.chat_completion(
        [{"role": "system", "content": "You are an editor."},
         {"role": "user", "content": "Summarise this..."}],
        model=ai.model_for("summarize"),
    )
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

from wpautopilot.config import (
    AI_PROVIDER,
    AI_TIMEOUT_SECONDS,
    ANTHROPIC_API_KEY,
    DEFAULT_AI_MODEL,
    OPENAI_API_KEY,
)
from wpautopilot.errors import UpstreamError

logger = logging.getLogger("ai_service")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

# ---------------------------------------------------------------------------
# Model catalog
# ---------------------------------------------------------------------------

MODEL_SONNET = "claude-sonnet-4-20250514"
MODEL_HAIKU = "claude-haiku-4-5-20251001"
MODEL_GPT4O = "gpt-4o"
MODEL_GPT4O_MINI = "gpt-4o-mini"

DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ModelInfo:
    """Pricing is USD per 1K tokens."""

    model_id: str
    provider: str
    input_cost_per_1k: float
    output_cost_per_1k: float
    max_output_tokens: int = 4096


MODEL_CATALOG: dict[str, ModelInfo] = {
    info.model_id: info
    for info in (
        ModelInfo(MODEL_SONNET, "anthropic", 0.003, 0.015, 8192),
        ModelInfo(MODEL_HAIKU, "anthropic", 0.001, 0.005, 8192),
        ModelInfo("claude-3-opus-20240229", "anthropic", 0.015, 0.075),
        ModelInfo("claude-3-sonnet-20240229", "anthropic", 0.003, 0.015),
        ModelInfo("claude-3-haiku-20240307", "anthropic", 0.00025, 0.00125),
        ModelInfo(MODEL_GPT4O, "openai", 0.005, 0.015),
        ModelInfo(MODEL_GPT4O_MINI, "openai", 0.00015, 0.0006, 16384),
        ModelInfo("gpt-4-turbo", "openai", 0.01, 0.03),
        ModelInfo("gpt-3.5-turbo", "openai", 0.0005, 0.0015),
    )
}

# Which model each pipeline feature uses, per provider
FEATURE_MODELS: dict[str, dict[str, str]] = {
    "anthropic": {
        "generate": MODEL_SONNET,
        "rewrite": MODEL_SONNET,
        "outline": MODEL_SONNET,
        "summarize": MODEL_HAIKU,
        "titles": MODEL_HAIKU,
        "seo-meta": MODEL_HAIKU,
        "keywords": MODEL_HAIKU,
        "image-terms": MODEL_HAIKU,
    },
    "openai": {
        "generate": MODEL_GPT4O,
        "rewrite": MODEL_GPT4O,
        "outline": MODEL_GPT4O,
        "summarize": MODEL_GPT4O_MINI,
        "titles": MODEL_GPT4O_MINI,
        "seo-meta": MODEL_GPT4O_MINI,
        "keywords": MODEL_GPT4O_MINI,
        "image-terms": MODEL_GPT4O_MINI,
    },
}


def provider_for_model(model: str) -> str:
    info = MODEL_CATALOG.get(model)
    if info is not None:
        return info.provider
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith(("gpt", "o1", "o3", "o4")):
        return "openai"
    raise UpstreamError(f"Unknown AI model: {model!r}")


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost of one call; unknown models are priced at zero."""
    info = MODEL_CATALOG.get(model)
    if info is None:
        return 0.0
    cost = (input_tokens / 1000.0) * info.input_cost_per_1k
    cost += (output_tokens / 1000.0) * info.output_cost_per_1k
    return round(cost, 6)


# ---------------------------------------------------------------------------
# Response type
# ---------------------------------------------------------------------------


@dataclass
class AIResponse:
    content: str
    tokens_used: int
    cost: float
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class AIProvider:
    """One vendor SDK. ``complete`` returns (text, input_tokens, output_tokens)."""

    name = "base"

    async def complete(
        self,
        messages: list[dict[str, str]],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> tuple[str, int, int]:
        raise NotImplementedError


class AnthropicProvider(AIProvider):
    name = "anthropic"

    def __init__(self, api_key: str = ANTHROPIC_API_KEY) -> None:
        self.api_key = api_key
        self._client = None

    def _ensure_client(self) -> None:
        """Lazily initialize the async Anthropic client."""
        if self._client is None:
            import anthropic

            if not self.api_key:
                raise UpstreamError(
                    "ANTHROPIC_API_KEY is not set; cannot call Anthropic models",
                    provider=self.name,
                )
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)

    async def complete(self, messages, model, max_tokens, temperature):
        import anthropic

        self._ensure_client()
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        chat = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m.get("role") in ("user", "assistant")
        ]
        response = await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system if system else anthropic.NOT_GIVEN,
            messages=chat,
        )
        text = "".join(
            getattr(block, "text", "") for block in (response.content or [])
        )
        usage = response.usage
        return text, int(getattr(usage, "input_tokens", 0) or 0), int(getattr(usage, "output_tokens", 0) or 0)


class OpenAIProvider(AIProvider):
    name = "openai"

    def __init__(self, api_key: str = OPENAI_API_KEY) -> None:
        self.api_key = api_key
        self._client = None

    def _ensure_client(self) -> None:
        if self._client is None:
            from openai import AsyncOpenAI

            if not self.api_key:
                raise UpstreamError(
                    "OPENAI_API_KEY is not set; cannot call OpenAI models",
                    provider=self.name,
                )
            self._client = AsyncOpenAI(api_key=self.api_key)

    async def complete(self, messages, model, max_tokens, temperature):
        self._ensure_client()
        response = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        usage = response.usage
        if usage is None:
            return text, 0, 0
        return text, int(usage.prompt_tokens or 0), int(usage.completion_tokens or 0)


# ---------------------------------------------------------------------------
# AIService
# ---------------------------------------------------------------------------


class AIService:
    """Routes chat completions to the right provider with a hard timeout."""

    def __init__(
        self,
        providers: Optional[dict[str, AIProvider]] = None,
        default_provider: str = AI_PROVIDER,
        timeout: float = AI_TIMEOUT_SECONDS,
    ) -> None:
        self.providers: dict[str, AIProvider] = providers or {
            "anthropic": AnthropicProvider(),
            "openai": OpenAIProvider(),
        }
        if default_provider not in FEATURE_MODELS:
            logger.warning("Unknown AI provider %r, falling back to anthropic", default_provider)
            default_provider = "anthropic"
        self.default_provider = default_provider
        self.timeout = timeout

    def model_for(self, feature: str) -> str:
        """Model used for a pipeline feature (generate, seo-meta, ...)."""
        if DEFAULT_AI_MODEL and feature in ("generate", "rewrite"):
            return DEFAULT_AI_MODEL
        models = FEATURE_MODELS[self.default_provider]
        return models.get(feature, models["generate"])

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> AIResponse:
        """
        Run one chat completion.

        Parameters
        ----------
        messages : list of dict
            ``{"role": "system" | "user" | "assistant", "content": str}``.
        model : str, optional
            Model id; defaults to the provider's "generate" model.
        options : dict, optional
            ``max_tokens``, ``temperature``, ``timeout`` (seconds).

        Raises
        ------
        UpstreamError
            On timeout, missing credentials, or any provider failure.
        """
        options = options or {}
        model = model or self.model_for("generate")
        provider_name = provider_for_model(model)
        provider = self.providers.get(provider_name)
        if provider is None:
            raise UpstreamError(f"No AI provider configured for {provider_name}", provider=provider_name)

        timeout = float(options.get("timeout", self.timeout))
        max_tokens = int(options.get("max_tokens", DEFAULT_MAX_TOKENS))
        temperature = float(options.get("temperature", DEFAULT_TEMPERATURE))

        logger.debug(
            "AI call: provider=%s model=%s max_tokens=%d timeout=%.0fs messages=%d",
            provider_name, model, max_tokens, timeout, len(messages),
        )
        start_time = time.monotonic()
        try:
            text, input_tokens, output_tokens = await asyncio.wait_for(
                provider.complete(messages, model, max_tokens, temperature),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("AI call to %s timed out after %.0fs", model, timeout)
            raise UpstreamError(
                f"AI request to {model} timed out after {timeout:g}s",
                provider=provider_name,
            ) from exc
        except UpstreamError:
            raise
        except Exception as exc:
            elapsed = time.monotonic() - start_time
            logger.error("AI call failed after %.1fs: %s", elapsed, exc)
            raise UpstreamError(
                f"{provider_name} API error: {exc}",
                status_code=int(getattr(exc, "status_code", 0) or 0),
                provider=provider_name,
            ) from exc

        elapsed = time.monotonic() - start_time
        cost = calculate_cost(model, input_tokens, output_tokens)
        logger.debug(
            "AI response: %d chars in %.1fs (input_tokens=%d, output_tokens=%d, cost=$%.4f)",
            len(text), elapsed, input_tokens, output_tokens, cost,
        )
        return AIResponse(
            content=text,
            tokens_used=input_tokens + output_tokens,
            cost=cost,
            model=model,
            provider=provider_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_seconds=round(elapsed, 3),
        )


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    return _FENCE_RE.sub("", text.strip()).strip()


def extract_json(text: str) -> Any:
    """Parse JSON from a model reply, tolerating fences and leading prose.

    Raises ValueError when no JSON value can be recovered.
    """
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    match = re.search(r"(\{[\s\S]*\}|\[[\s\S]*\])", cleaned)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass
    raise ValueError(f"Could not parse JSON from AI response: {cleaned[:200]}")


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_ai_service_instance: Optional[AIService] = None


def get_ai_service() -> AIService:
    """Get the global AIService singleton."""
    global _ai_service_instance
    if _ai_service_instance is None:
        _ai_service_instance = AIService()
    return _ai_service_instance
