"""Database module."""

from postmortem_kg.db.database import (
    async_session_maker,
    create_engine,
    create_session_maker,
    engine,
    get_session,
    init_db,
)
from postmortem_kg.db.models import (
    Base,
    GenerationState,
    Incident,
    IncidentRecommendation,
    Postmortem,
    PostmortemEmbedding,
)

__all__ = [
    "Base",
    "GenerationState",
    "Incident",
    "IncidentRecommendation",
    "Postmortem",
    "PostmortemEmbedding",
    "async_session_maker",
    "create_engine",
    "create_session_maker",
    "engine",
    "get_session",
    "init_db",
]
