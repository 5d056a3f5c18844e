"""Language oracle client.

Routes requests through LiteLLM so any provider model can back a tier.
Every failure mode (transport error, timeout, open circuit, empty
completion) is surfaced as ``OracleError`` so callers have exactly one
exception to degrade on.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol

from litellm import acompletion

from replywise.core.circuit_breaker import CircuitBreaker, CircuitOpenError
from replywise.core.exceptions import OracleError
from replywise.core.config import Settings
from replywise.core.model_config import ModelConfig, ModelTier, build_model_routes

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*")


@dataclass(frozen=True)
class OracleResponse:
    """Text returned by the oracle plus token accounting."""

    text: str
    tokens_used: int = 0
    model: str = ""


class LanguageOracle(Protocol):
    """Capability used for pattern extraction and draft generation."""

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tier: ModelTier = ModelTier.STANDARD,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> OracleResponse: ...


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences and stray backticks around a payload.

    Oracles frequently wrap JSON in ```json ... ``` even when told not to.

    Args:
        text: Raw oracle output.

    Returns:
        The text with fences removed and surrounding whitespace trimmed.
    """
    cleaned = text
    if "```" in cleaned:
        cleaned = _FENCE_RE.sub("", cleaned)
    return cleaned.strip().strip("`").strip()


class LiteLLMOracle:
    """Async oracle backed by LiteLLM ``acompletion``.

    Each call is bounded by the tier's timeout and passes through a
    circuit breaker so a failing provider is skipped quickly.
    """

    def __init__(
        self,
        routes: dict[ModelTier, ModelConfig],
        api_key: str = "",
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        """Initialize the oracle.

        Args:
            routes: Tier to model configuration mapping.
            api_key: Provider API key passed through to LiteLLM.
            circuit_breaker: Breaker guarding the provider.
        """
        self._routes = routes
        self._api_key = api_key
        self._breaker = circuit_breaker or CircuitBreaker("language_oracle")

    async def _complete(
        self,
        config: ModelConfig,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> Any:
        kwargs: dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        return await asyncio.wait_for(acompletion(**kwargs), timeout=config.timeout)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tier: ModelTier = ModelTier.STANDARD,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> OracleResponse:
        """Generate text for the given prompts.

        Args:
            system_prompt: System instructions.
            user_prompt: User message content.
            tier: Cost/quality tier used to pick the model.
            temperature: Override the tier temperature.
            max_tokens: Override the tier max tokens.

        Returns:
            OracleResponse with the completion text and tokens used.

        Raises:
            OracleError: On any failure, including timeouts and empty output.
        """
        config = self._routes.get(tier) or self._routes[ModelTier.STANDARD]
        effective_temperature = temperature if temperature is not None else config.temperature
        effective_max_tokens = max_tokens if max_tokens is not None else config.max_tokens
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        logger.debug(
            "Calling language oracle",
            extra={"model": config.model, "tier": tier.value, "max_tokens": effective_max_tokens},
        )

        start = time.monotonic()
        try:
            response = await self._breaker.call_async(
                self._complete, config, messages, effective_temperature, effective_max_tokens
            )
        except CircuitOpenError as e:
            raise OracleError(str(e), model=config.model) from e
        except TimeoutError as e:
            logger.warning(
                "Language oracle timed out after %.1fs (model=%s)", config.timeout, config.model
            )
            raise OracleError(f"Oracle call timed out after {config.timeout}s", model=config.model) from e
        except Exception as e:
            logger.warning("Language oracle call failed (model=%s): %s", config.model, e)
            raise OracleError(f"Oracle call failed: {e}", model=config.model) from e

        latency_ms = int((time.monotonic() - start) * 1000)
        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise OracleError("Oracle returned a malformed completion", model=config.model) from e

        if not text.strip():
            raise OracleError("Oracle returned an empty completion", model=config.model)

        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) or 0

        logger.debug(
            "Language oracle call completed",
            extra={"model": config.model, "latency_ms": latency_ms, "tokens_used": tokens_used},
        )

        return OracleResponse(
            text=str(text),
            tokens_used=int(tokens_used),
            model=str(getattr(response, "model", None) or config.model),
        )


def build_oracle(settings: Settings) -> LiteLLMOracle:
    """LiteLLM oracle routed and circuit-guarded as configured."""
    breaker = CircuitBreaker(
        "language_oracle",
        failure_threshold=settings.LLM_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.LLM_CIRCUIT_RECOVERY_SECONDS,
    )
    return LiteLLMOracle(
        build_model_routes(settings),
        api_key=settings.LLM_API_KEY.get_secret_value(),
        circuit_breaker=breaker,
    )
