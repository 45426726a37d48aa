"""Data models and enums for structured postmortems."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class PostmortemStatus(str, Enum):
    """Postmortem lifecycle status."""

    DRAFT = "draft"
    PUBLISHED = "published"


class IndexStatus(str, Enum):
    """Knowledge-graph indexing status of a postmortem."""

    NOT_INDEXED = "not_indexed"
    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class InterceptionLayer(str, Enum):
    """Swiss cheese model layers where a failure could have been intercepted."""

    DEFINE = "define"
    DESIGN = "design"
    BUILD = "build"
    TEST = "test"
    RELEASE = "release"
    DEPLOY = "deploy"
    OPERATE = "operate"
    RESPONSE = "response"


class Priority(str, Enum):
    """Action item priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class GenerationStage(str, Enum):
    """Sections produced by chunked generation, one completion each."""

    BUSINESS_IMPACT = "business_impact"
    MITIGATION = "mitigation"
    CAUSAL_ANALYSIS = "causal_analysis"

    @property
    def marker(self) -> str:
        """Section marker as it appears in completion text."""
        return f"[{self.value.upper()}]"


# Canonical execution order
STAGE_ORDER: tuple[GenerationStage, ...] = (
    GenerationStage.BUSINESS_IMPACT,
    GenerationStage.MITIGATION,
    GenerationStage.CAUSAL_ANALYSIS,
)

TERMINAL_INCIDENT_STATUSES = frozenset({"resolved", "closed"})

UNKNOWN_APPLICATION = "Unknown Application"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass
class ActionItem:
    """A follow-up action attached to a causal factor."""

    description: str
    priority: Priority = Priority.MEDIUM

    @classmethod
    def from_dict(cls, data: Any) -> "ActionItem | None":
        """Validate one action item; None if it has no description."""
        if isinstance(data, str):
            data = {"description": data}
        if not isinstance(data, dict):
            return None
        description = _text(data.get("description"))
        if not description:
            return None
        try:
            priority = Priority(_text(data.get("priority")).lower())
        except ValueError:
            priority = Priority.MEDIUM
        return cls(description=description, priority=priority)

    def to_dict(self) -> dict[str, str]:
        return {"description": self.description, "priority": self.priority.value}


@dataclass
class CausalFactor:
    """One systemic cause identified by the causal analysis."""

    interception_layer: InterceptionLayer
    cause: str
    description: str
    sub_cause: str | None = None
    action_items: list[ActionItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "CausalFactor | None":
        """Validate a raw factor.

        Returns None (the factor is dropped whole) when ``interceptionLayer``,
        ``cause`` or ``description`` is missing, or the layer is not a known
        interception layer.
        """
        if not isinstance(data, dict):
            return None

        layer = _text(data.get("interceptionLayer")).lower()
        cause = _text(data.get("cause"))
        description = _text(data.get("description"))
        if not (layer and cause and description):
            return None
        try:
            interception_layer = InterceptionLayer(layer)
        except ValueError:
            logger.debug(f"Dropping causal factor with unknown layer '{layer}'")
            return None

        raw_items = data.get("actionItems")
        items = []
        if isinstance(raw_items, list):
            items = [item for item in map(ActionItem.from_dict, raw_items) if item]

        return cls(
            interception_layer=interception_layer,
            cause=cause,
            description=description,
            sub_cause=_text(data.get("subCause")) or None,
            action_items=items,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "interceptionLayer": self.interception_layer.value,
            "cause": self.cause,
            "description": self.description,
        }
        if self.sub_cause:
            data["subCause"] = self.sub_cause
        data["actionItems"] = [item.to_dict() for item in self.action_items]
        return data


def parse_causal_factors(items: Any) -> list[CausalFactor]:
    """Keep only the well-formed factors of a raw array, in order."""
    if not isinstance(items, list):
        return []
    factors = [factor for factor in map(CausalFactor.from_dict, items) if factor]
    dropped = len(items) - len(factors)
    if dropped:
        logger.warning(f"Dropped {dropped} of {len(items)} causal factors missing required fields")
    return factors


@dataclass
class BusinessImpact:
    """Business-impact section of a postmortem."""

    application: str
    start: datetime | None = None
    end: datetime | None = None
    duration_minutes: int | None = None
    description: str | None = None
    affected_countries: list[str] = field(default_factory=list)
    regulatory_reporting: bool = False
    regulatory_entity: str | None = None


@dataclass
class ExtractedSections:
    """Best-effort result of parsing one completion."""

    business_impact: BusinessImpact | None = None
    mitigation_description: str | None = None
    causal_analysis: list[CausalFactor] = field(default_factory=list)

    def has_stage(self, stage: GenerationStage) -> bool:
        """Whether extraction produced anything for ``stage``."""
        if stage == GenerationStage.BUSINESS_IMPACT:
            return self.business_impact is not None
        if stage == GenerationStage.MITIGATION:
            return bool(self.mitigation_description)
        return bool(self.causal_analysis)


@dataclass
class AffectedService:
    service_name: str
    team_name: str | None = None


@dataclass
class TimelineEvent:
    type: str
    description: str
    created_at: str | None = None
    user_name: str | None = None


@dataclass
class IncidentContext:
    """Read-only view of an incident, as consumed by generation and ranking."""

    id: str
    incident_number: str
    title: str
    severity: str
    status: str
    description: str | None = None
    problem_statement: str | None = None
    impact: str | None = None
    causes: str | None = None
    steps_to_resolve: str | None = None
    lead_name: str | None = None
    reporter_name: str | None = None
    detected_at: datetime | None = None
    resolved_at: datetime | None = None
    services: list[AffectedService] = field(default_factory=list)
    timeline: list[TimelineEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        """Resolved or closed."""
        return self.status in TERMINAL_INCIDENT_STATUSES


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _text(value).strip("\"'")
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compute_duration_minutes(start: datetime | None, end: datetime | None) -> int | None:
    """Whole minutes between ``start`` and ``end``.

    None when either boundary is missing or ``end`` precedes ``start``.
    """
    if start is None or end is None:
        return None
    seconds = (parse_timestamp(end) - parse_timestamp(start)).total_seconds()
    if seconds < 0:
        logger.warning(f"Impact end {end} precedes start {start}, leaving duration unset")
        return None
    return math.floor(seconds / 60)
