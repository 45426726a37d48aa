"""SQLAlchemy models for incidents, postmortems and the knowledge graph.

TABLES:
- incidents: the consumed incident record (owned by the host application)
- postmortems: structured postmortem, one per incident
- postmortem_generation_state: stage progress of chunked generation
- postmortem_embeddings: one live vector per postmortem
- incident_recommendations: time-boxed recommendation cache

JSON-shaped columns are stored as Text and parsed through the domain types
in ``postmortem_kg.postmortem.models``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Incident(Base):
    """Incident record consumed by postmortem generation and recommendations."""

    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    incident_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), default="medium")
    status: Mapped[str] = mapped_column(String(32), default="open", index=True)

    # Investigation fields
    problem_statement: Mapped[str | None] = mapped_column(Text, nullable=True)
    impact: Mapped[str | None] = mapped_column(Text, nullable=True)
    causes: Mapped[str | None] = mapped_column(Text, nullable=True)
    steps_to_resolve: Mapped[str | None] = mapped_column(Text, nullable=True)

    # People (display names)
    lead_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    reporter_name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # JSON fields stored as text
    services: Mapped[str] = mapped_column(Text, default="[]")  # [{serviceName, teamName}]
    timeline: Mapped[str] = mapped_column(Text, default="[]")  # [{type, description, createdAt, userName}]

    # Timestamps
    detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships (deleting an incident removes everything derived from it)
    postmortem: Mapped["Postmortem | None"] = relationship(
        "Postmortem",
        back_populates="incident",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    generation_state: Mapped["GenerationState | None"] = relationship(
        "GenerationState", uselist=False, cascade="all, delete-orphan", passive_deletes=True,
    )
    recommendations: Mapped[list["IncidentRecommendation"]] = relationship(
        "IncidentRecommendation",
        foreign_keys="IncidentRecommendation.incident_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    recommended_in: Mapped[list["IncidentRecommendation"]] = relationship(
        "IncidentRecommendation",
        foreign_keys="IncidentRecommendation.recommended_incident_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Incident(number={self.incident_number}, status={self.status})>"


class Postmortem(Base):
    """Structured postmortem for one incident."""

    __tablename__ = "postmortems"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id", ondelete="CASCADE"), unique=True, index=True
    )
    status: Mapped[str] = mapped_column(String(16), default="draft", index=True)  # draft, published
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Business impact
    business_impact_application: Mapped[str | None] = mapped_column(String(256), nullable=True)
    business_impact_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    business_impact_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    business_impact_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minutes
    business_impact_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_impact_affected_countries: Mapped[str] = mapped_column(Text, default="[]")  # JSON array
    business_impact_regulatory_reporting: Mapped[bool] = mapped_column(Boolean, default=False)
    business_impact_regulatory_entity: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Mitigation
    mitigation_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Causal analysis (JSON array of causal factors)
    causal_analysis: Mapped[str] = mapped_column(Text, default="[]")

    # Knowledge graph indexing: not_indexed, pending, indexed, failed
    index_status: Mapped[str] = mapped_column(String(16), default="not_indexed")
    index_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    incident: Mapped["Incident"] = relationship("Incident", back_populates="postmortem")
    embedding: Mapped["PostmortemEmbedding | None"] = relationship(
        "PostmortemEmbedding",
        back_populates="postmortem",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Postmortem(incident_id={self.incident_id}, status={self.status})>"


class GenerationState(Base):
    """Progress of the most recent chunked generation run for an incident."""

    __tablename__ = "postmortem_generation_state"

    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id", ondelete="CASCADE"), primary_key=True
    )
    running: Mapped[bool] = mapped_column(Boolean, default=False)
    stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    completed_stages: Mapped[str] = mapped_column(Text, default="[]")  # JSON array
    failed_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<GenerationState(incident_id={self.incident_id}, stage={self.stage}, running={self.running})>"


class PostmortemEmbedding(Base):
    """Vector embedding of a published postmortem (one live row per postmortem)."""

    __tablename__ = "postmortem_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    postmortem_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("postmortems.id", ondelete="CASCADE"), unique=True, index=True
    )
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id", ondelete="CASCADE"), index=True
    )

    vector: Mapped[str] = mapped_column(Text)  # JSON array of floats
    dimension: Mapped[int] = mapped_column(Integer)
    source_text: Mapped[str] = mapped_column(Text)
    provider: Mapped[str] = mapped_column(String(64), default="")
    model: Mapped[str] = mapped_column(String(128), default="")
    embedding_metadata: Mapped[str] = mapped_column(Text, default="{}")  # JSON object

    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    postmortem: Mapped["Postmortem"] = relationship("Postmortem", back_populates="embedding")

    def __repr__(self) -> str:
        return f"<PostmortemEmbedding(postmortem_id={self.postmortem_id}, v={self.version}, dim={self.dimension})>"


class IncidentRecommendation(Base):
    """Cached recommendation of a past incident for a query incident."""

    __tablename__ = "incident_recommendations"
    __table_args__ = (
        UniqueConstraint("incident_id", "recommended_incident_id", name="uq_recommendation_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id", ondelete="CASCADE"), index=True
    )
    recommended_incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id", ondelete="CASCADE")
    )
    similarity_score: Mapped[float] = mapped_column(Float)
    rank: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[str] = mapped_column(Text)  # JSON object
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<IncidentRecommendation(incident_id={self.incident_id}, "
            f"recommended={self.recommended_incident_id}, score={self.similarity_score:.3f})>"
        )
