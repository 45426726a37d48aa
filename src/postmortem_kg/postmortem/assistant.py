"""AI writing assistant for postmortem authors."""

import asyncio
import logging

from postmortem_kg.config import settings
from postmortem_kg.llm import BaseLLM, LLMTimeoutError, get_llm
from postmortem_kg.postmortem.prompts import (
    EXPANDABLE_SECTIONS,
    build_coaching_prompt,
    build_expansion_prompt,
    build_quality_check_prompt,
)

logger = logging.getLogger(__name__)


class PostmortemAssistant:
    """Quality review, methodology coaching and section expansion.

    Postmortems are passed in their camelCase payload form. Provider errors
    propagate as ``LLMError`` subclasses; a call that outlives ``timeout``
    raises ``LLMTimeoutError``.
    """

    def __init__(
        self,
        llm: BaseLLM | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ):
        self.llm = llm
        self.max_tokens = max_tokens or settings.ASSISTANT_MAX_TOKENS
        self.timeout = timeout or settings.ASSISTANT_TIMEOUT

    async def _get_llm(self) -> BaseLLM:
        if self.llm is None:
            self.llm = await get_llm()
        return self.llm

    async def _complete(self, prompt: str) -> str:
        llm = await self._get_llm()
        try:
            text = await asyncio.wait_for(
                llm.generate(prompt, max_tokens=self.max_tokens), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise LLMTimeoutError(
                f"Assistant call exceeded {self.timeout}s",
                provider=llm.provider_name,
                timeout=self.timeout,
            ) from e
        return text.strip()

    async def check_quality(self, postmortem: dict) -> str:
        """Structured quality assessment of the whole postmortem."""
        feedback = await self._complete(build_quality_check_prompt(postmortem))
        logger.info(f"Quality check for postmortem {postmortem.get('id')} done")
        return feedback

    async def ask(self, question: str, postmortem: dict) -> str:
        """Answer a methodology question about the postmortem."""
        if not question or not question.strip():
            raise ValueError("Question must not be empty")
        return await self._complete(build_coaching_prompt(question.strip(), postmortem))

    async def expand(self, section: str, current_content: str | None, postmortem: dict) -> str:
        """Expand a free-text section.

        Args:
            section: ``businessImpactDescription`` or ``mitigationDescription``
            current_content: Text the author has so far
            postmortem: Postmortem payload for context

        Raises:
            ValueError: If the section cannot be expanded
        """
        if section not in EXPANDABLE_SECTIONS:
            allowed = ", ".join(EXPANDABLE_SECTIONS)
            raise ValueError(f"Section '{section}' cannot be expanded. Allowed: {allowed}")
        return await self._complete(build_expansion_prompt(section, current_content, postmortem))
