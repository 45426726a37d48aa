"""Completion service: provider interface, implementations and errors."""

from postmortem_kg.llm.base import BaseLLM, OllamaLLM
from postmortem_kg.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMModelNotFoundError,
    LLMProviderNotConfiguredError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
)
from postmortem_kg.llm.factory import (
    get_available_providers,
    get_llm,
    get_provider,
    register_provider,
)

__all__ = [
    # Base classes
    "BaseLLM",
    "OllamaLLM",
    # Factory functions
    "get_llm",
    "get_provider",
    "get_available_providers",
    "register_provider",
    # Exceptions
    "LLMError",
    "LLMConnectionError",
    "LLMTimeoutError",
    "LLMAuthenticationError",
    "LLMModelNotFoundError",
    "LLMRateLimitError",
    "LLMResponseError",
    "LLMProviderNotConfiguredError",
]
