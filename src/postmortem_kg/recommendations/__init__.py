"""Similar-incident recommendations with a time-boxed cache."""

from postmortem_kg.recommendations.cache import RecommendationCache
from postmortem_kg.recommendations.models import Recommendation, RecommendationResult
from postmortem_kg.recommendations.service import RecommendationService
from postmortem_kg.recommendations.synthesizer import (
    RecommendationSynthesizer,
    build_synthesis_prompt,
    parse_recommendations,
)

__all__ = [
    "Recommendation",
    "RecommendationCache",
    "RecommendationResult",
    "RecommendationService",
    "RecommendationSynthesizer",
    "build_synthesis_prompt",
    "parse_recommendations",
]
