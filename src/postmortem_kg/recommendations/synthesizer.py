"""LLM synthesis of recommendations from similar past incidents."""

import asyncio
import logging
from typing import Any

from postmortem_kg.config import settings
from postmortem_kg.llm import BaseLLM, LLMTimeoutError, get_llm
from postmortem_kg.parsing import find_json_array
from postmortem_kg.postmortem.models import IncidentContext
from postmortem_kg.recommendations.models import Recommendation
from postmortem_kg.vectorstore.retriever import SimilarPostmortem

logger = logging.getLogger(__name__)

_EXCERPT_LENGTH = 200


def _excerpt(text: str | None) -> str:
    if not text:
        return "N/A"
    return text[:_EXCERPT_LENGTH] + ("..." if len(text) > _EXCERPT_LENGTH else "")


def build_synthesis_prompt(incident: IncidentContext, candidates: list[SimilarPostmortem]) -> str:
    """Prompt asking for a strict JSON array of recommendations."""
    similar = "\n".join(
        f"""
{idx}. {c.incident_number} - {c.title} (Similarity: {c.similarity_score * 100:.1f}%)
   - Severity: {c.severity}
   - Impact: {_excerpt(c.business_impact)}
   - Resolution: {_excerpt(c.mitigation)}"""
        for idx, c in enumerate(candidates, start=1)
    )

    return f"""You are an expert SRE analyzing incident patterns. Based on similar past incidents, provide actionable recommendations for the current incident.

**Current Incident:**
- Number: {incident.incident_number}
- Title: {incident.title}
- Description: {incident.description or 'N/A'}
- Severity: {incident.severity}
- Problem: {incident.problem_statement or 'Under investigation'}

**Similar Past Incidents:**
{similar}

Generate 3-5 specific, actionable recommendations for investigating and resolving the current incident. For each recommendation:
1. Reference the similar incident number
2. Explain what was learned from that incident
3. Provide specific actions to try

Format as JSON array:
[
  {{
    "referenceIncident": "INC-XXXX",
    "recommendation": "Brief recommendation title",
    "details": "Detailed explanation of what to try and why",
    "actions": ["Specific action 1", "Specific action 2"]
  }}
]

Only reference incidents from the list above. Return ONLY the JSON array, no other text."""


def _actions(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [a.strip() for a in value if isinstance(a, str) and a.strip()]


def parse_recommendations(
    text: str, candidates: list[SimilarPostmortem]
) -> list[Recommendation]:
    """Validate model output against the retrieved candidates.

    Items must name a retrieved incident and carry a non-empty
    recommendation. The first item per referenced incident wins. Similarity
    always comes from the retriever, never from the model.
    """
    items = find_json_array(text, require_objects=True)
    if items is None:
        logger.warning("Synthesis output contained no JSON array of recommendations")
        return []

    by_number = {c.incident_number.strip().lower(): c for c in candidates}
    recommendations: list[Recommendation] = []
    seen: set[str] = set()

    for item in items:
        if not isinstance(item, dict):
            continue
        reference = str(item.get("referenceIncident") or "").strip().lower()
        candidate = by_number.get(reference)
        title = item.get("recommendation")
        if candidate is None or not isinstance(title, str) or not title.strip():
            logger.debug(f"Dropping recommendation item for '{reference}'")
            continue
        if candidate.incident_id in seen:
            continue
        seen.add(candidate.incident_id)

        details = item.get("details")
        recommendations.append(
            Recommendation(
                incident_id=candidate.incident_id,
                incident_number=candidate.incident_number,
                title=candidate.title,
                severity=candidate.severity,
                similarity_score=candidate.similarity_score,
                recommendation=title.strip(),
                details=details.strip() if isinstance(details, str) else "",
                actions=_actions(item.get("actions")),
            )
        )

    dropped = len(items) - len(recommendations)
    if dropped:
        logger.warning(f"Dropped {dropped} of {len(items)} synthesized recommendations")
    return recommendations


class RecommendationSynthesizer:
    """Asks the completion provider for recommendations and validates them."""

    def __init__(
        self,
        llm: BaseLLM | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ):
        self.llm = llm
        self.max_tokens = max_tokens or settings.SYNTHESIS_MAX_TOKENS
        self.timeout = timeout or settings.SYNTHESIS_TIMEOUT

    async def _get_llm(self) -> BaseLLM:
        if self.llm is None:
            self.llm = await get_llm()
        return self.llm

    async def synthesize(
        self, incident: IncidentContext, candidates: list[SimilarPostmortem]
    ) -> list[Recommendation]:
        """Synthesize recommendations for ``incident`` from ``candidates``.

        Raises:
            LLMTimeoutError: If the provider does not answer within the timeout
            LLMError: If the provider call fails
        """
        if not candidates:
            return []
        llm = await self._get_llm()
        prompt = build_synthesis_prompt(incident, candidates)
        try:
            text = await asyncio.wait_for(
                llm.generate(prompt, max_tokens=self.max_tokens), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise LLMTimeoutError(
                f"Synthesis exceeded {self.timeout}s",
                provider=llm.provider_name,
                timeout=self.timeout,
            ) from e
        logger.debug(f"Synthesis raw output: {text}")
        return parse_recommendations(text, candidates)
