"""Completion provider lookup for drafting, synthesis and the writing assistant.

Providers register a zero-argument constructor under a lowercase name.
Constructors import their module lazily, so the optional Vertex AI SDK is
only needed when Gemini is actually chosen.
"""

import logging
from typing import Callable, TypeVar

from postmortem_kg.config import settings
from postmortem_kg.llm.base import BaseLLM
from postmortem_kg.llm.exceptions import LLMProviderNotConfiguredError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PROVIDER_REGISTRY: dict[str, Callable[[], BaseLLM]] = {}

# Fallback order when LLM_PROVIDER is empty or unusable; each entry pairs a
# provider with the setting that must be present before it is tried
_AUTO_SELECT: list[tuple[str, Callable[[], str]]] = [
    ("claude", lambda: settings.ANTHROPIC_API_KEY),
    ("gemini", lambda: settings.vertex_project),
    ("ollama", lambda: settings.OLLAMA_BASE_URL),
]


def register_provider(name: str) -> Callable[[Callable[[], T]], Callable[[], T]]:
    """Register ``factory`` as the constructor for provider ``name``."""

    def decorator(factory: Callable[[], T]) -> Callable[[], T]:
        _PROVIDER_REGISTRY[name.lower()] = factory
        logger.debug(f"Registered completion provider {name}")
        return factory

    return decorator


def get_available_providers() -> list[str]:
    """Names accepted by ``LLM_PROVIDER``."""
    return list(_PROVIDER_REGISTRY.keys())


def get_provider(name: str) -> BaseLLM:
    """Construct the provider registered as ``name`` (case-insensitive).

    Raises:
        LLMProviderNotConfiguredError: If no provider has that name
    """
    factory = _PROVIDER_REGISTRY.get(name.lower())
    if factory is None:
        raise LLMProviderNotConfiguredError(
            f"Unknown provider '{name}'. Available: {', '.join(get_available_providers())}",
            provider=name,
        )
    return factory()


async def get_llm(provider: str | None = None) -> BaseLLM:
    """Completion provider for the current request.

    An explicit ``provider`` or ``LLM_PROVIDER`` wins when it reports
    itself available. Otherwise the first provider whose credentials are
    set is used: Claude, Gemini, then Ollama.

    Raises:
        LLMProviderNotConfiguredError: If nothing usable is configured
    """
    requested = provider or settings.LLM_PROVIDER
    if requested:
        llm = get_provider(requested)
        if await llm.is_available():
            logger.info(f"Using completion provider {llm.provider_name}")
            return llm
        logger.warning(f"Completion provider '{requested}' is not usable, trying fallbacks")

    for name, configured in _AUTO_SELECT:
        if not configured():
            continue
        llm = get_provider(name)
        if await llm.is_available():
            logger.info(f"Falling back to completion provider {name}")
            return llm

    raise LLMProviderNotConfiguredError(
        "No completion provider configured. Set LLM_PROVIDER, ANTHROPIC_API_KEY, "
        "VERTEX_AI_PROJECT/GCP_PROJECT_ID or OLLAMA_BASE_URL.",
        provider="none",
    )


@register_provider("ollama")
def _ollama() -> BaseLLM:
    from postmortem_kg.llm.base import OllamaLLM

    return OllamaLLM()


@register_provider("claude")
def _claude() -> BaseLLM:
    from postmortem_kg.llm.providers.claude import ClaudeLLM

    return ClaudeLLM()


@register_provider("gemini")
def _gemini() -> BaseLLM:
    from postmortem_kg.llm.providers.gemini import GeminiLLM

    return GeminiLLM()
