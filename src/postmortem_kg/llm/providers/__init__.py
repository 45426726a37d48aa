"""Completion provider implementations."""

from postmortem_kg.llm.providers.claude import ClaudeLLM
from postmortem_kg.llm.providers.gemini import GeminiLLM

__all__ = ["ClaudeLLM", "GeminiLLM"]
