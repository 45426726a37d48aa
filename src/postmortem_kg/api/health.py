"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from postmortem_kg.db.database import async_session_maker
from postmortem_kg.llm import LLMProviderNotConfiguredError, get_llm
from postmortem_kg.vectorstore.embeddings import get_embeddings
from postmortem_kg.vectorstore.exceptions import EmbeddingProviderNotConfiguredError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Basic health check - returns ok if the service is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def ready() -> dict[str, Any]:
    """
    Readiness check - verifies dependent services.

    Checks:
    - Database: a trivial query succeeds
    - LLM: completion provider configuration (missing provider is a warning)
    - Embeddings: embedding provider configuration (missing provider is a warning)
    """
    services: dict[str, str] = {}
    all_ok = True

    # Check database
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        services["database"] = "ok"
    except SQLAlchemyError as e:
        services["database"] = f"error: {type(e).__name__}"
        all_ok = False

    # Check LLM (provider-agnostic, configuration only)
    try:
        llm = await get_llm()
        services["llm"] = f"ok ({llm.provider_name})"
    except LLMProviderNotConfiguredError:
        services["llm"] = "warning: no provider configured"
        # Recommendations degrade to available=false, the service still works

    # Check embeddings
    try:
        embeddings = get_embeddings()
        if await embeddings.is_available():
            services["embeddings"] = f"ok ({embeddings.provider_name})"
        else:
            services["embeddings"] = f"warning: {embeddings.provider_name} not configured"
    except EmbeddingProviderNotConfiguredError:
        services["embeddings"] = "warning: no provider configured"

    status = "ready" if all_ok else "degraded"
    return {"status": status, "services": services}
