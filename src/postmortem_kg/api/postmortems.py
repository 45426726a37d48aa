"""Postmortem API endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from postmortem_kg.api.schemas import (
    AssistRequest,
    AssistResponse,
    GenerateRequest,
    GenerateResponse,
    GenerationStatusResponse,
    IndexResponse,
    PostmortemEnvelope,
    PostmortemPatch,
    PostmortemResponse,
)
from postmortem_kg.llm import LLMError, LLMProviderNotConfiguredError
from postmortem_kg.locks import IncidentBusyError
from postmortem_kg.postmortem.assistant import PostmortemAssistant
from postmortem_kg.postmortem.exceptions import (
    GenerationStageError,
    IncidentNotFoundError,
    InvalidIncidentStateError,
    InvalidStatusTransitionError,
    PostmortemNotFoundError,
)
from postmortem_kg.postmortem.generator import PostmortemGenerator
from postmortem_kg.postmortem.service import PostmortemService
from postmortem_kg.vectorstore.exceptions import (
    EmbeddingError,
    EmbeddingProviderNotConfiguredError,
)
from postmortem_kg.vectorstore.indexer import EmbeddingIndexer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["postmortems"])


def get_postmortem_service() -> PostmortemService:
    return PostmortemService()


def get_generator() -> PostmortemGenerator:
    return PostmortemGenerator()


def get_assistant() -> PostmortemAssistant:
    return PostmortemAssistant()


def get_indexer() -> EmbeddingIndexer:
    return EmbeddingIndexer()


@router.get("/incidents/{incident_id}/postmortem", response_model=PostmortemEnvelope)
async def get_postmortem(
    incident_id: str,
    service: PostmortemService = Depends(get_postmortem_service),
) -> PostmortemEnvelope:
    """Get the postmortem for an incident (null if none exists yet)."""
    try:
        payload = await service.get(incident_id)
    except IncidentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return PostmortemEnvelope(postmortem=payload)


@router.patch("/incidents/{incident_id}/postmortem", response_model=PostmortemResponse)
async def update_postmortem(
    incident_id: str,
    patch: PostmortemPatch,
    background_tasks: BackgroundTasks,
    actor: str = Header(..., alias="X-Actor"),
    service: PostmortemService = Depends(get_postmortem_service),
) -> PostmortemResponse:
    """Update postmortem fields; publishing schedules knowledge-graph indexing."""
    try:
        outcome = await service.update(incident_id, patch.model_dump(exclude_unset=True), actor)
    except (IncidentNotFoundError, PostmortemNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if outcome.index_postmortem_id:
        background_tasks.add_task(service.index_published, outcome.index_postmortem_id)
    return PostmortemResponse(**outcome.postmortem)


@router.post("/incidents/{incident_id}/postmortem/generate", response_model=GenerateResponse)
async def generate_postmortem(
    incident_id: str,
    request: GenerateRequest | None = None,
    actor: str = Header(..., alias="X-Actor"),
    generator: PostmortemGenerator = Depends(get_generator),
    service: PostmortemService = Depends(get_postmortem_service),
) -> GenerateResponse:
    """Generate postmortem sections (all, or the requested subset) with AI."""
    stages = request.stages if request else None
    try:
        result = await generator.generate(incident_id, actor, stages)
    except IncidentBusyError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except IncidentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidIncidentStateError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except LLMProviderNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except GenerationStageError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "stage": e.stage, "provider": e.provider},
        ) from e

    return GenerateResponse(
        incidentId=result.incident_id,
        postmortemId=result.postmortem_id,
        completedStages=[stage.value for stage in result.completed_stages],
        appliedStages=[stage.value for stage in result.applied_stages],
        postmortem=await service.get(incident_id),
    )


@router.get(
    "/incidents/{incident_id}/postmortem/status", response_model=GenerationStatusResponse
)
async def get_generation_status(
    incident_id: str,
    generator: PostmortemGenerator = Depends(get_generator),
) -> GenerationStatusResponse:
    """Stage progress of the latest generation run."""
    status = await generator.get_generation_status(incident_id)
    if status is None:
        return GenerationStatusResponse(incidentId=incident_id)
    return GenerationStatusResponse(**status.to_dict())


@router.post("/incidents/{incident_id}/postmortem/assist", response_model=AssistResponse)
async def assist(
    incident_id: str,
    request: AssistRequest,
    service: PostmortemService = Depends(get_postmortem_service),
    assistant: PostmortemAssistant = Depends(get_assistant),
) -> AssistResponse:
    """AI quality check, methodology coaching, or section expansion."""
    postmortem = request.postmortem
    if postmortem is None:
        try:
            postmortem = await service.get(incident_id)
        except IncidentNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        if postmortem is None:
            raise HTTPException(status_code=404, detail="Postmortem not found")

    try:
        if request.action == "check":
            return AssistResponse(feedback=await assistant.check_quality(postmortem))
        if request.action == "ask":
            return AssistResponse(answer=await assistant.ask(request.question or "", postmortem))
        return AssistResponse(
            expandedContent=await assistant.expand(
                request.section or "", request.currentContent, postmortem
            )
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except LLMProviderNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except LLMError as e:
        logger.error(f"Assistant {request.action} failed for incident {incident_id}: {e}")
        raise HTTPException(
            status_code=502, detail={"error": str(e), "provider": e.provider}
        ) from e


@router.get("/postmortems", response_model=list[PostmortemResponse])
async def list_postmortems(
    status: str | None = None,
    service: PostmortemService = Depends(get_postmortem_service),
) -> list[PostmortemResponse]:
    """List postmortems, newest first, optionally filtered by status."""
    try:
        rows = await service.list_postmortems(status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'") from e
    return [PostmortemResponse(**row) for row in rows]


@router.post("/postmortems/{postmortem_id}/index", response_model=IndexResponse)
async def index_postmortem(
    postmortem_id: str,
    indexer: EmbeddingIndexer = Depends(get_indexer),
) -> IndexResponse:
    """(Re)index a published postmortem into the knowledge graph."""
    try:
        result = await indexer.index_postmortem(postmortem_id)
    except PostmortemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except EmbeddingProviderNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except EmbeddingError as e:
        raise HTTPException(
            status_code=502, detail={"error": str(e), "provider": e.provider}
        ) from e

    if not result.indexed:
        raise HTTPException(status_code=409, detail="Only published postmortems are indexed")
    return IndexResponse(
        postmortemId=result.postmortem_id,
        indexed=result.indexed,
        version=result.version,
        dimension=result.dimension,
    )


@router.post("/postmortems/index-pending")
async def index_pending(
    indexer: EmbeddingIndexer = Depends(get_indexer),
) -> dict[str, int]:
    """Retry indexing for published postmortems that are not indexed yet."""
    try:
        return await indexer.index_pending()
    except EmbeddingProviderNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
