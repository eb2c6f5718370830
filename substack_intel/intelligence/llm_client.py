"""
LLM provider clients.

``LLMClient`` is the seam the extraction engine depends on; the OpenAI
implementation translates SDK failures into ``AuthError``,
``ExtractionError`` (retryable) and ``LLMRequestError`` so callers never
see provider exception types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

import openai
import structlog
from openai import OpenAI

from substack_intel.core.config import LLMConfig
from substack_intel.core.exceptions import AuthError, ConfigurationError, ExtractionError, LLMRequestError
from substack_intel.utils.reliability import AdaptiveRateLimiter

logger = structlog.get_logger(__name__)

# Client errors the provider asks callers to retry
_RETRYABLE_CLIENT_STATUSES = (408, 409)


@dataclass(slots=True)
class LLMResponse:
    """Text returned by a completion call."""

    text: str
    model: Optional[str] = None
    total_tokens: Optional[int] = None


class LLMClient(Protocol):
    def complete(self, system_prompt: str, user_prompt: str, json_mode: bool = True) -> LLMResponse:
        ...


class EmbeddingClient(Protocol):
    def embed(self, texts: List[str]) -> List[List[float]]:
        ...


def _map_openai_error(error: Exception, operation: str) -> Exception:
    details = {"operation": operation, "error_type": type(error).__name__}
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(f"OpenAI rejected credentials during {operation}", details)
    if isinstance(error, openai.RateLimitError):
        return ExtractionError(f"OpenAI rate limit during {operation}", details)
    if isinstance(error, openai.APITimeoutError):
        return ExtractionError(f"OpenAI timed out during {operation}", details)
    if isinstance(error, openai.APIConnectionError):
        return ExtractionError(f"OpenAI connection failed during {operation}", details)
    if isinstance(error, openai.InternalServerError):
        return ExtractionError(f"OpenAI server error during {operation}", details)
    if isinstance(error, openai.APIStatusError) and error.status_code < 500:
        if error.status_code in _RETRYABLE_CLIENT_STATUSES:
            return ExtractionError(f"OpenAI request timed out or conflicted during {operation}", details)
        details["status_code"] = error.status_code
        return LLMRequestError(
            f"OpenAI rejected the request during {operation} ({error.status_code})",
            status_code=error.status_code,
            details=details,
        )
    return ExtractionError(f"OpenAI request failed during {operation}: {error}", details)


class OpenAILLMClient:
    """Chat completions and embeddings through the OpenAI SDK."""

    def __init__(
        self,
        config: LLMConfig,
        client: Optional[OpenAI] = None,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
    ):
        self.config = config
        self._client = client
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(
            calls_per_second=config.rate_limit_per_second, burst_size=3
        )

    @property
    def client(self) -> OpenAI:
        """Lazy initialization of OpenAI client."""
        if self._client is None:
            if not self.config.openai_api_key:
                raise ConfigurationError("OPENAI_API_KEY is not configured")
            # Retries are owned by the extraction retry policy
            self._client = OpenAI(
                api_key=self.config.openai_api_key,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def complete(self, system_prompt: str, user_prompt: str, json_mode: bool = True) -> LLMResponse:
        kwargs = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.config.temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        self.rate_limiter.acquire(timeout=60.0)
        try:
            response = self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            self.rate_limiter.on_error()
            mapped = _map_openai_error(e, "chat.completions")
            logger.warning("LLM call failed", model=self.config.model, **mapped.details)
            raise mapped from e

        self.rate_limiter.on_success()
        usage = getattr(response, "usage", None)
        text = response.choices[0].message.content if response.choices else ""
        return LLMResponse(
            text=text or "",
            model=getattr(response, "model", None) or self.config.model,
            total_tokens=getattr(usage, "total_tokens", None),
        )

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        self.rate_limiter.acquire(timeout=60.0)
        try:
            response = self.client.embeddings.create(
                model=self.config.embedding_model,
                input=texts,
                dimensions=self.config.embedding_dimensions,
            )
        except openai.OpenAIError as e:
            self.rate_limiter.on_error()
            mapped = _map_openai_error(e, "embeddings")
            logger.warning("Embedding call failed", model=self.config.embedding_model, **mapped.details)
            raise mapped from e

        self.rate_limiter.on_success()
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]
