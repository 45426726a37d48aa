"""Completion service interface and the Ollama implementation."""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from postmortem_kg.config import settings
from postmortem_kg.llm.exceptions import (
    LLMConnectionError,
    LLMModelNotFoundError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
)

logger = logging.getLogger(__name__)

# Only transport-level hiccups are retried. Timeouts and auth failures
# surface to the caller immediately.
provider_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception_type((LLMConnectionError, LLMRateLimitError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class BaseLLM(ABC):
    """Base class for completion providers."""

    model: str = ""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'ollama', 'claude')."""
        pass

    @abstractmethod
    async def generate(self, prompt: str, max_tokens: int | None = None, **kwargs: Any) -> str:
        """Generate plain text from a prompt.

        Raises:
            LLMError: A typed subclass describing the provider failure
        """
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """Check if the LLM service is accessible and healthy."""
        pass

    async def is_available(self) -> bool:
        """Lightweight check if provider is configured.

        This checks configuration (e.g., API key exists) without making
        network requests. Override in subclasses as needed.
        """
        return True


class OllamaLLM(BaseLLM):
    """Ollama LLM client."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_LLM_MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "ollama"

    async def is_available(self) -> bool:
        """Check if Ollama is configured (URL exists)."""
        return bool(self.base_url)

    @provider_retry
    async def generate(self, prompt: str, max_tokens: int | None = None, **kwargs: Any) -> str:
        """Generate text from a prompt using Ollama."""
        options = dict(kwargs.pop("options", {}))
        if max_tokens:
            options["num_predict"] = max_tokens

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/generate",
                    json={
                        "model": self.model,
                        "prompt": prompt,
                        "stream": False,
                        "options": options,
                        **kwargs,
                    },
                )
            except httpx.TimeoutException as e:
                raise LLMTimeoutError(
                    f"Request timed out: {e}", provider=self.provider_name, timeout=self.timeout
                ) from e
            except httpx.TransportError as e:
                raise LLMConnectionError(
                    f"Failed to connect: {e}", provider=self.provider_name
                ) from e

            if response.status_code == 404:
                raise LLMModelNotFoundError(
                    f"Model '{self.model}' not found", provider=self.provider_name, model=self.model
                )
            if response.status_code == 429:
                raise LLMRateLimitError("Rate limit exceeded", provider=self.provider_name)
            if response.status_code >= 500:
                raise LLMConnectionError(
                    f"Server error {response.status_code}", provider=self.provider_name
                )
            if response.status_code >= 400:
                raise LLMResponseError(
                    f"Request rejected with status {response.status_code}",
                    provider=self.provider_name,
                )

            data = response.json()
            return data.get("response", "")

    async def check_health(self) -> bool:
        """Check if Ollama is accessible."""
        if not self.base_url:
            return False
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                return response.status_code == 200
        except Exception as e:
            logger.error(f"Ollama health check failed: {e}")
            return False
