"""Brute-force cosine similarity over published postmortem embeddings."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postmortem_kg.config import settings
from postmortem_kg.db.database import async_session_maker
from postmortem_kg.db.models import Incident, Postmortem, PostmortemEmbedding, as_utc
from postmortem_kg.postmortem.models import PostmortemStatus
from postmortem_kg.vectorstore.exceptions import DimensionMismatchError

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float] | np.ndarray, b: list[float] | np.ndarray) -> float:
    """Cosine similarity of two equal-length vectors, clipped to [-1, 1].

    A zero vector has no direction; its similarity to anything is 0.0.

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    if vec_a.shape != vec_b.shape:
        raise DimensionMismatchError(vec_a.size, vec_b.size)

    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(vec_a, vec_b) / norm, -1.0, 1.0))


def rank_by_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)
    return np.clip(scores, -1.0, 1.0)


@dataclass
class SimilarPostmortem:
    """A ranked candidate from the published-postmortem index."""

    postmortem_id: str
    incident_id: str
    incident_number: str
    title: str
    severity: str
    similarity_score: float
    business_impact: str | None = None
    mitigation: str | None = None
    published_at: datetime | None = None
    source_text: str = ""


class SimilarityRetriever:
    """Ranks published postmortems by similarity to a query vector."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = session_factory or async_session_maker

    async def find_similar(
        self,
        incident_id: str,
        query_vector: list[float],
        top_n: int | None = None,
    ) -> list[SimilarPostmortem]:
        """Top-N published postmortems, highest similarity first.

        The querying incident's own postmortem is never a candidate. No
        relevance floor is applied. Ties keep index insertion order.

        Raises:
            DimensionMismatchError: If any stored vector differs in length
                from the query
        """
        if top_n is None:
            top_n = settings.RECOMMENDATION_TOP_N
        if top_n <= 0:
            return []

        async with self.session_factory() as session:
            result = await session.execute(
                select(PostmortemEmbedding, Postmortem, Incident)
                .join(Postmortem, PostmortemEmbedding.postmortem_id == Postmortem.id)
                .join(Incident, Postmortem.incident_id == Incident.id)
                .where(Postmortem.status == PostmortemStatus.PUBLISHED.value)
                .where(Postmortem.incident_id != incident_id)
                .order_by(PostmortemEmbedding.id)
            )
            rows = result.all()

        if not rows:
            logger.info(f"No published postmortems to compare against for incident {incident_id}")
            return []

        query = np.asarray(query_vector, dtype=float)
        vectors = []
        for embedding, postmortem, _ in rows:
            vector = json.loads(embedding.vector)
            if len(vector) != query.size:
                raise DimensionMismatchError(
                    query.size, len(vector), context=f"postmortem {postmortem.id}"
                )
            vectors.append(vector)

        scores = rank_by_similarity(query, np.asarray(vectors, dtype=float))
        order = np.argsort(-scores, kind="stable")[:top_n]

        candidates = []
        for index in order:
            embedding, postmortem, incident = rows[int(index)]
            candidates.append(
                SimilarPostmortem(
                    postmortem_id=postmortem.id,
                    incident_id=incident.id,
                    incident_number=incident.incident_number,
                    title=incident.title,
                    severity=incident.severity,
                    similarity_score=float(scores[index]),
                    business_impact=postmortem.business_impact_description,
                    mitigation=postmortem.mitigation_description,
                    published_at=as_utc(postmortem.published_at),
                    source_text=embedding.source_text,
                )
            )

        logger.debug(
            f"Ranked {len(rows)} postmortems for incident {incident_id}, "
            f"top score {candidates[0].similarity_score:.3f}"
        )
        return candidates
