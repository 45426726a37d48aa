"""Embedding indexer for published postmortems.

Each published postmortem is rendered into a canonical text blob, embedded,
and upserted into ``postmortem_embeddings`` keyed by postmortem id. Indexing
is best-effort relative to publishing: a failure is recorded on the
postmortem (``index_status=failed``) and can be retried later.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postmortem_kg.config import settings
from postmortem_kg.db.database import async_session_maker
from postmortem_kg.db.models import Postmortem, PostmortemEmbedding, utcnow
from postmortem_kg.incidents import get_context
from postmortem_kg.locks import KeyedLocks
from postmortem_kg.postmortem.exceptions import PostmortemNotFoundError
from postmortem_kg.postmortem.models import (
    CausalFactor,
    IncidentContext,
    IndexStatus,
    PostmortemStatus,
)
from postmortem_kg.postmortem.store import load_causal_analysis
from postmortem_kg.vectorstore.embeddings import BaseEmbeddings, get_embeddings
from postmortem_kg.vectorstore.exceptions import DimensionMismatchError, EmbeddingError

logger = logging.getLogger(__name__)

# One index write per postmortem at a time
_index_locks = KeyedLocks()


def build_source_text(
    incident: IncidentContext,
    impact_description: str | None,
    mitigation_description: str | None,
    causal_factors: list[CausalFactor] | None = None,
) -> str:
    """Render the canonical embedding text.

    Fixed order: identity, severity, description, business impact, problem
    statement, causes, mitigation, then one line per causal factor. Empty
    parts are skipped.
    """
    parts = [
        f"Incident: {incident.incident_number} - {incident.title}",
        f"Severity: {incident.severity}",
    ]
    if incident.description:
        parts.append(f"Description: {incident.description}")
    if impact_description:
        parts.append(f"Impact: {impact_description}")
    if incident.problem_statement:
        parts.append(f"Problem: {incident.problem_statement}")
    if incident.causes:
        parts.append(f"Causes: {incident.causes}")
    if mitigation_description:
        parts.append(f"Resolution: {mitigation_description}")
    for factor in causal_factors or []:
        parts.append(f"{factor.interception_layer.value}: {factor.cause} - {factor.description}")
    return "\n\n".join(parts)


def build_postmortem_text(incident: IncidentContext, postmortem: Postmortem) -> str:
    """Canonical text of a stored postmortem."""
    return build_source_text(
        incident,
        postmortem.business_impact_description,
        postmortem.mitigation_description,
        load_causal_analysis(postmortem.causal_analysis),
    )


def build_incident_query_text(incident: IncidentContext) -> str:
    """Query text from the incident's live fields.

    The incident may not have a published postmortem yet, so impact and
    steps-to-resolve stand in for the postmortem sections.
    """
    return build_source_text(incident, incident.impact, incident.steps_to_resolve)


@dataclass
class IndexResult:
    """Outcome of indexing one postmortem."""

    postmortem_id: str
    indexed: bool
    version: int | None = None
    dimension: int | None = None
    reason: str | None = None


class EmbeddingIndexer:
    """Embeds published postmortems and upserts their vectors."""

    def __init__(
        self,
        embeddings: BaseEmbeddings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        timeout: float | None = None,
    ):
        """Initialize the indexer.

        Args:
            embeddings: Embedding provider (defaults to the configured one)
            session_factory: Session factory (defaults to the app database)
            timeout: Seconds allowed for one embedding call
        """
        self._embeddings = embeddings
        self.session_factory = session_factory or async_session_maker
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT

    @property
    def embeddings(self) -> BaseEmbeddings:
        """Lazy-load the embedding provider."""
        if self._embeddings is None:
            self._embeddings = get_embeddings()
        return self._embeddings

    async def index_postmortem(self, postmortem_id: str) -> IndexResult:
        """Embed a published postmortem and upsert its vector.

        Drafts are skipped. Re-indexing overwrites the existing row and bumps
        its version.

        Raises:
            PostmortemNotFoundError: If the postmortem does not exist
            EmbeddingError: If the provider fails (recorded on the postmortem)
        """
        async with _index_locks.hold(postmortem_id):
            async with self.session_factory() as session:
                postmortem = await session.get(Postmortem, postmortem_id)
                if postmortem is None:
                    raise PostmortemNotFoundError(postmortem_id)
                if postmortem.status != PostmortemStatus.PUBLISHED.value:
                    logger.info(f"Skipping index of draft postmortem {postmortem_id}")
                    return IndexResult(postmortem_id, indexed=False, reason="not published")
                incident = await get_context(session, postmortem.incident_id)
                source_text = build_postmortem_text(incident, postmortem)

            logger.info(
                f"Embedding postmortem {postmortem_id} ({incident.incident_number}), "
                f"{len(source_text)} characters"
            )
            try:
                vector = await self._embed(source_text)
            except EmbeddingError as e:
                await self._mark_failed(postmortem_id, str(e))
                raise

            async with self.session_factory() as session:
                row = await self._upsert(session, postmortem_id, incident, source_text, vector)
                postmortem = await session.get(Postmortem, postmortem_id)
                postmortem.index_status = IndexStatus.INDEXED.value
                postmortem.index_error = None
                await session.commit()
                version = row.version

        logger.info(f"Indexed postmortem {postmortem_id} (v{version}, dim={len(vector)})")
        return IndexResult(postmortem_id, indexed=True, version=version, dimension=len(vector))

    async def _embed(self, text: str) -> list[float]:
        provider = self.embeddings
        try:
            vector = await asyncio.wait_for(provider.embed_single(text), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"Embedding timed out after {self.timeout}s", provider=provider.provider_name
            ) from e

        # The index holds one vector size per model
        if len(vector) != provider.dimension:
            mismatch = DimensionMismatchError(
                provider.dimension, len(vector), f"model {provider.model_name}"
            )
            raise EmbeddingError(str(mismatch), provider=provider.provider_name) from mismatch
        return vector

    async def _upsert(
        self,
        session: AsyncSession,
        postmortem_id: str,
        incident: IncidentContext,
        source_text: str,
        vector: list[float],
    ) -> PostmortemEmbedding:
        metadata = json.dumps(
            {
                "incidentNumber": incident.incident_number,
                "severity": incident.severity,
                "processedAt": utcnow().isoformat(),
            }
        )
        result = await session.execute(
            select(PostmortemEmbedding).where(PostmortemEmbedding.postmortem_id == postmortem_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = PostmortemEmbedding(postmortem_id=postmortem_id, incident_id=incident.id, version=1)
            session.add(row)
        else:
            row.version += 1

        row.vector = json.dumps(vector)
        row.dimension = len(vector)
        row.source_text = source_text
        row.provider = self.embeddings.provider_name
        row.model = self.embeddings.model_name
        row.embedding_metadata = metadata
        row.created_at = utcnow()
        await session.flush()
        return row

    async def _mark_failed(self, postmortem_id: str, message: str) -> None:
        logger.error(f"Indexing postmortem {postmortem_id} failed: {message}")
        async with self.session_factory() as session:
            postmortem = await session.get(Postmortem, postmortem_id)
            if postmortem is not None:
                postmortem.index_status = IndexStatus.FAILED.value
                postmortem.index_error = message
                await session.commit()

    async def index_pending(self) -> dict[str, int]:
        """Retry indexing for published postmortems not yet indexed.

        Returns:
            Counts of ``indexed`` and ``failed`` postmortems

        Raises:
            EmbeddingProviderNotConfiguredError: If no provider is configured
        """
        provider = self.embeddings
        logger.info(f"Retrying pending index writes with {provider.provider_name}")

        async with self.session_factory() as session:
            result = await session.execute(
                select(Postmortem.id)
                .where(Postmortem.status == PostmortemStatus.PUBLISHED.value)
                .where(
                    Postmortem.index_status.in_(
                        [
                            IndexStatus.PENDING.value,
                            IndexStatus.FAILED.value,
                            IndexStatus.NOT_INDEXED.value,
                        ]
                    )
                )
                .order_by(Postmortem.published_at)
            )
            postmortem_ids = list(result.scalars().all())

        stats = {"indexed": 0, "failed": 0}
        for postmortem_id in postmortem_ids:
            try:
                outcome = await self.index_postmortem(postmortem_id)
            except EmbeddingError:
                # Recorded on the postmortem by index_postmortem
                stats["failed"] += 1
                continue
            if outcome.indexed:
                stats["indexed"] += 1

        logger.info(f"Index retry finished: {stats['indexed']} indexed, {stats['failed']} failed")
        return stats
