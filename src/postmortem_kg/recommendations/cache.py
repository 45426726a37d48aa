"""Time-boxed recommendation cache.

Rows are keyed by (incident, recommended incident) and carry their rank so a
cache hit replays the exact synthesized order. A refresh swaps the whole set
for an incident inside one transaction, so concurrent readers see either the
old set or the new one.
"""

import json
import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postmortem_kg.config import settings
from postmortem_kg.db.database import async_session_maker
from postmortem_kg.db.models import IncidentRecommendation, utcnow
from postmortem_kg.recommendations.models import Recommendation

logger = logging.getLogger(__name__)


class RecommendationCache:
    """Read-by-incident with freshness filter, and atomic replace."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl: timedelta | None = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.ttl = ttl if ttl is not None else settings.recommendation_cache_ttl

    async def get_fresh(self, incident_id: str) -> list[Recommendation] | None:
        """Cached recommendations updated within the TTL, in rank order.

        Returns:
            The cached list, or None on a miss (no fresh rows, or a payload
            that no longer parses)
        """
        if self.ttl <= timedelta(0):
            return None

        cutoff = utcnow() - self.ttl
        async with self.session_factory() as session:
            result = await session.execute(
                select(IncidentRecommendation)
                .where(IncidentRecommendation.incident_id == incident_id)
                .where(IncidentRecommendation.updated_at > cutoff)
                .order_by(IncidentRecommendation.rank, IncidentRecommendation.id)
            )
            rows = list(result.scalars().all())

        if not rows:
            return None
        try:
            return [Recommendation.from_dict(json.loads(row.payload)) for row in rows]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cached recommendations for {incident_id}: {e}")
            return None

    async def replace(self, incident_id: str, recommendations: list[Recommendation]) -> None:
        """Swap all rows for ``incident_id`` with ``recommendations``."""
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(IncidentRecommendation).where(
                        IncidentRecommendation.incident_id == incident_id
                    )
                )
                session.add_all(
                    IncidentRecommendation(
                        incident_id=incident_id,
                        recommended_incident_id=rec.incident_id,
                        similarity_score=rec.similarity_score,
                        rank=rank,
                        payload=json.dumps(rec.to_dict()),
                        updated_at=now,
                    )
                    for rank, rec in enumerate(recommendations)
                )
        logger.info(f"Cached {len(recommendations)} recommendations for incident {incident_id}")
