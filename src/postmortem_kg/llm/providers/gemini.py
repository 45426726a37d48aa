"""Gemini (Vertex AI) LLM implementation."""

import asyncio
import logging
from typing import Any

from postmortem_kg.config import settings
from postmortem_kg.llm.base import BaseLLM, provider_retry
from postmortem_kg.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMProviderNotConfiguredError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
)

logger = logging.getLogger(__name__)


class GeminiLLM(BaseLLM):
    """Gemini LLM client using Google Cloud Vertex AI."""

    def __init__(
        self,
        project: str | None = None,
        location: str | None = None,
        model: str | None = None,
        max_output_tokens: int = 8192,
        temperature: float = 0.7,
    ):
        """Initialize Gemini LLM client.

        Args:
            project: GCP project ID (defaults to settings.vertex_project)
            location: GCP region (defaults to settings.VERTEX_AI_LOCATION)
            model: Model name (defaults to settings.VERTEX_AI_LLM_MODEL)
            max_output_tokens: Default maximum tokens in response
            temperature: Sampling temperature (0.0-1.0)
        """
        self.project = project or settings.vertex_project
        self.location = location or settings.VERTEX_AI_LOCATION
        self.model = model or settings.VERTEX_AI_LLM_MODEL
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self._model = None
        self._initialized = False

        if not self.project:
            logger.warning("Vertex AI project not configured for Gemini")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "gemini"

    async def is_available(self) -> bool:
        """Check if Gemini is configured (project ID exists)."""
        return bool(self.project and self.location)

    def _initialize(self):
        """Lazy initialization of Gemini model."""
        if self._initialized:
            return

        try:
            import vertexai
            from vertexai.generative_models import GenerativeModel
        except ImportError as e:
            raise LLMProviderNotConfiguredError(
                "google-cloud-aiplatform not installed. "
                "Install with: pip install 'postmortem-kg[vertex]'",
                provider=self.provider_name,
            ) from e

        vertexai.init(project=self.project, location=self.location)
        self._model = GenerativeModel(self.model)
        self._initialized = True
        logger.info(
            f"Initialized Gemini LLM: model={self.model}, "
            f"project={self.project}, location={self.location}"
        )

    def _handle_error(self, error: Exception):
        """Convert Google API errors to LLM exceptions."""
        error_str = str(error).lower()

        if "quota" in error_str or "rate" in error_str or "429" in error_str:
            raise LLMRateLimitError(
                f"Rate limit exceeded: {error}",
                provider=self.provider_name,
            ) from error
        elif "permission" in error_str or "403" in error_str or "401" in error_str:
            raise LLMAuthenticationError(
                f"Permission denied: {error}",
                provider=self.provider_name,
            ) from error
        elif "deadline" in error_str or "timeout" in error_str:
            raise LLMTimeoutError(
                f"Request timed out: {error}",
                provider=self.provider_name,
            ) from error
        else:
            raise LLMConnectionError(
                f"API error: {error}",
                provider=self.provider_name,
            ) from error

    @provider_retry
    async def generate(self, prompt: str, max_tokens: int | None = None, **kwargs: Any) -> str:
        """Generate text from a prompt using Gemini.

        Raises:
            LLMAuthenticationError: If project is not configured
            LLMRateLimitError: If rate limit is exceeded
            LLMConnectionError: If connection fails
        """
        if not self.project:
            raise LLMAuthenticationError(
                "Vertex AI project not configured", provider=self.provider_name
            )

        self._initialize()

        from vertexai.generative_models import GenerationConfig

        config = GenerationConfig(
            max_output_tokens=max_tokens or self.max_output_tokens,
            temperature=kwargs.get("temperature", self.temperature),
        )

        try:
            # Run synchronous generate in executor
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self._model.generate_content(prompt, generation_config=config),
            )
        except Exception as e:
            self._handle_error(e)

        return self._response_text(response)

    def _response_text(self, response: Any) -> str:
        """Candidate text of a response, as LLMResponseError when it has none.

        Vertex AI raises ValueError from ``response.text`` when the candidate
        was blocked or carries no parts.
        """
        if not response.candidates:
            raise LLMResponseError("Response contained no candidates", provider=self.provider_name)
        try:
            return response.text
        except ValueError as e:
            raise LLMResponseError(
                f"Response has no usable text: {e}", provider=self.provider_name
            ) from e

    async def check_health(self) -> bool:
        """Check if Gemini API is accessible."""
        if not self.project:
            logger.warning("Gemini health check: No project configured")
            return False

        try:
            self._initialize()

            from vertexai.generative_models import GenerationConfig

            config = GenerationConfig(max_output_tokens=1, temperature=0.0)

            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self._model.generate_content("Hi", generation_config=config),
            )

            return bool(response.candidates)

        except Exception as e:
            logger.error(f"Gemini health check failed: {type(e).__name__}: {e}")
            return False
