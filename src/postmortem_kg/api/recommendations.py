"""Similar-incident recommendation endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from postmortem_kg.api.schemas import RecommendationsResponse
from postmortem_kg.llm import LLMError
from postmortem_kg.postmortem.exceptions import IncidentNotFoundError
from postmortem_kg.recommendations.models import RecommendationResult
from postmortem_kg.recommendations.service import RecommendationService
from postmortem_kg.vectorstore.exceptions import DimensionMismatchError, EmbeddingError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["recommendations"])


def get_recommendation_service() -> RecommendationService:
    return RecommendationService()


@router.get(
    "/incidents/{incident_id}/recommendations",
    response_model=RecommendationsResponse,
    response_model_exclude_none=True,
)
async def get_recommendations(
    incident_id: str,
    refresh: bool = False,
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Recommendations from similar past incidents.

    Returns 200 with ``available=false`` when no provider is configured, and
    502 with ``error`` set when a provider call fails.
    """
    try:
        result = await service.get_recommendations(incident_id, force_refresh=refresh)
    except IncidentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (LLMError, EmbeddingError, DimensionMismatchError) as e:
        logger.error(f"Recommendations failed for incident {incident_id}: {e}")
        return JSONResponse(
            status_code=502, content=RecommendationResult.failed(str(e)).to_dict()
        )

    return result.to_dict()
