"""Postmortem read/edit/publish workflow.

Publishing commits first; indexing runs afterwards and never rolls the
publish back. Callers decide whether indexing runs inline (CLI) or as a
background task (API).
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postmortem_kg.db.database import async_session_maker
from postmortem_kg.incidents import get_incident
from postmortem_kg.postmortem.models import PostmortemStatus
from postmortem_kg.postmortem.store import PostmortemStore, to_payload
from postmortem_kg.vectorstore.exceptions import EmbeddingError
from postmortem_kg.vectorstore.indexer import EmbeddingIndexer, IndexResult

logger = logging.getLogger(__name__)


@dataclass
class UpdateOutcome:
    """Committed postmortem plus the id to index, if publishing requested it."""

    postmortem: dict[str, Any]
    index_postmortem_id: str | None = None


class PostmortemService:
    """Entry point for postmortem reads and manual edits."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        indexer: EmbeddingIndexer | None = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self._indexer = indexer

    @property
    def indexer(self) -> EmbeddingIndexer:
        if self._indexer is None:
            self._indexer = EmbeddingIndexer(session_factory=self.session_factory)
        return self._indexer

    async def get(self, incident_id: str) -> dict[str, Any] | None:
        """The incident's postmortem payload, or None if none exists yet.

        Raises:
            IncidentNotFoundError: If the incident does not exist
        """
        async with self.session_factory() as session:
            incident = await get_incident(session, incident_id)
            postmortem = await PostmortemStore(session).get_by_incident(incident_id)
            return to_payload(postmortem, incident) if postmortem else None

    async def update(
        self, incident_id: str, patch: dict[str, Any], actor: str | None
    ) -> UpdateOutcome:
        """Apply a manual patch and commit it.

        Raises:
            PostmortemNotFoundError: If the incident has no postmortem
            InvalidStatusTransitionError: For published -> draft
            ValueError: For malformed field values
        """
        async with self.session_factory() as session:
            incident = await get_incident(session, incident_id)
            result = await PostmortemStore(session).update_fields(incident_id, patch)
            await session.commit()
            payload = to_payload(result.postmortem, incident)

        logger.info(
            f"Postmortem for {incident.incident_number} updated by {actor or 'unknown'}: "
            f"{', '.join(sorted(patch))}"
        )
        return UpdateOutcome(
            postmortem=payload,
            index_postmortem_id=result.postmortem.id if result.index_requested else None,
        )

    async def publish(self, incident_id: str, actor: str | None) -> UpdateOutcome:
        """Shortcut for a status-only patch to ``published``."""
        return await self.update(incident_id, {"status": PostmortemStatus.PUBLISHED.value}, actor)

    async def index_published(self, postmortem_id: str) -> IndexResult | None:
        """Best-effort indexing after a publish.

        Failures are recorded on the postmortem (``index_status=failed``) for
        ``index_pending`` to retry, and reported as None.
        """
        try:
            return await self.indexer.index_postmortem(postmortem_id)
        except EmbeddingError as e:
            logger.warning(f"Postmortem {postmortem_id} published but not indexed: {e}")
            return None

    async def list_postmortems(self, status: str | None = None) -> list[dict[str, Any]]:
        """All postmortems with incident summary, newest first."""
        async with self.session_factory() as session:
            rows = await PostmortemStore(session).list_postmortems(status)
            return [to_payload(postmortem, incident) for postmortem, incident in rows]
