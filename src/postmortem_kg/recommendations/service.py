"""Recommendations for an incident under investigation.

Flow on a cache miss: query text from the incident's live fields ->
embedding -> similarity ranking over published postmortems -> LLM synthesis
-> atomic cache swap. The cache is an optimization only: read or write
failures fall back to (or skip) caching without failing the request.
"""

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postmortem_kg.config import settings
from postmortem_kg.db.database import async_session_maker
from postmortem_kg.incidents import get_context
from postmortem_kg.llm import BaseLLM, LLMProviderNotConfiguredError, get_llm
from postmortem_kg.locks import KeyedLocks
from postmortem_kg.postmortem.models import IncidentContext
from postmortem_kg.recommendations.cache import RecommendationCache
from postmortem_kg.recommendations.models import Recommendation, RecommendationResult
from postmortem_kg.recommendations.synthesizer import RecommendationSynthesizer
from postmortem_kg.vectorstore.embeddings import BaseEmbeddings, get_embeddings
from postmortem_kg.vectorstore.exceptions import (
    EmbeddingError,
    EmbeddingProviderNotConfiguredError,
)
from postmortem_kg.vectorstore.indexer import build_incident_query_text
from postmortem_kg.vectorstore.retriever import SimilarityRetriever

logger = logging.getLogger(__name__)

# Process-wide: one refresh per incident at a time
refresh_locks = KeyedLocks()


class RecommendationService:
    """Cache check, retrieval and synthesis for one incident at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        llm: BaseLLM | None = None,
        embeddings: BaseEmbeddings | None = None,
        cache: RecommendationCache | None = None,
        retriever: SimilarityRetriever | None = None,
        top_n: int | None = None,
        locks: KeyedLocks | None = None,
    ):
        """Initialize the service.

        Args:
            session_factory: Session factory (defaults to the app database)
            llm: Completion provider (defaults to the configured provider)
            embeddings: Embedding provider (defaults to the configured one)
            cache: Recommendation cache store
            retriever: Similarity retriever
            top_n: Candidates passed to synthesis
            locks: Per-incident refresh locks
        """
        self.session_factory = session_factory or async_session_maker
        self._llm = llm
        self._embeddings = embeddings
        self.cache = cache or RecommendationCache(self.session_factory)
        self.retriever = retriever or SimilarityRetriever(self.session_factory)
        self.top_n = top_n if top_n is not None else settings.RECOMMENDATION_TOP_N
        self.locks = locks or refresh_locks

    async def _resolve_providers(self) -> tuple[BaseLLM, BaseEmbeddings] | str:
        """Configured providers, or a message explaining why the feature is off."""
        try:
            embeddings = self._embeddings or get_embeddings()
        except EmbeddingProviderNotConfiguredError as e:
            return f"Recommendations unavailable: {e}"
        if not await embeddings.is_available():
            return f"Recommendations unavailable: {embeddings.provider_name} embeddings not configured"

        try:
            llm = self._llm or await get_llm()
        except LLMProviderNotConfiguredError as e:
            return f"Recommendations unavailable: {e}"

        self._embeddings, self._llm = embeddings, llm
        return llm, embeddings

    async def _read_cache(self, incident_id: str) -> list[Recommendation] | None:
        try:
            return await self.cache.get_fresh(incident_id)
        except SQLAlchemyError as e:
            logger.warning(f"Recommendation cache read failed for {incident_id}, recomputing: {e}")
            return None

    async def _write_cache(self, incident_id: str, recommendations: list[Recommendation]) -> None:
        try:
            await self.cache.replace(incident_id, recommendations)
        except SQLAlchemyError as e:
            logger.error(f"Recommendation cache write failed for {incident_id}: {e}")

    async def get_recommendations(
        self, incident_id: str, force_refresh: bool = False
    ) -> RecommendationResult:
        """Recommendations for an incident, from cache when fresh.

        Args:
            incident_id: Incident under investigation
            force_refresh: Skip the cache and recompute

        Returns:
            RecommendationResult; ``available=False`` when no provider is
            configured

        Raises:
            IncidentNotFoundError: If the incident does not exist
            EmbeddingError: If the embedding provider fails
            LLMError: If synthesis fails (the previous cache stays intact)
            DimensionMismatchError: If the index holds vectors of another size
        """
        providers = await self._resolve_providers()
        if isinstance(providers, str):
            logger.info(providers)
            return RecommendationResult.unavailable(providers)
        llm, embeddings = providers

        async with self.session_factory() as session:
            await get_context(session, incident_id)

        if not force_refresh:
            cached = await self._read_cache(incident_id)
            if cached is not None:
                logger.info(f"Returning cached recommendations for incident {incident_id}")
                return RecommendationResult(available=True, cached=True, recommendations=cached)

        async with self.locks.hold(incident_id):
            if not force_refresh:
                # A refresh that finished while we waited is fresh enough
                cached = await self._read_cache(incident_id)
                if cached is not None:
                    return RecommendationResult(available=True, cached=True, recommendations=cached)

            async with self.session_factory() as session:
                incident = await get_context(session, incident_id)

            recommendations = await self._compute(incident, llm, embeddings)
            await self._write_cache(incident_id, recommendations)

        return RecommendationResult(available=True, cached=False, recommendations=recommendations)

    async def _compute(
        self, incident: IncidentContext, llm: BaseLLM, embeddings: BaseEmbeddings
    ) -> list[Recommendation]:
        query_text = build_incident_query_text(incident)
        logger.info(f"Generating query embedding for incident {incident.incident_number}")
        try:
            query_vector = await asyncio.wait_for(
                embeddings.embed_query(query_text), timeout=settings.EMBEDDING_TIMEOUT
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"Query embedding timed out after {settings.EMBEDDING_TIMEOUT}s",
                provider=embeddings.provider_name,
            ) from e

        candidates = await self.retriever.find_similar(incident.id, query_vector, self.top_n)
        if not candidates:
            logger.info(f"No similar postmortems for incident {incident.incident_number}")
            return []

        synthesizer = RecommendationSynthesizer(llm)
        recommendations = await synthesizer.synthesize(incident, candidates)
        logger.info(
            f"Synthesized {len(recommendations)} recommendations for incident "
            f"{incident.incident_number} from {len(candidates)} candidates"
        )
        return recommendations
