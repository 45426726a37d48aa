"""Structured postmortems: domain types, extraction, generation, storage."""

from postmortem_kg.postmortem.exceptions import (
    GenerationStageError,
    IncidentNotFoundError,
    InvalidIncidentStateError,
    InvalidStatusTransitionError,
    PostmortemError,
    PostmortemNotFoundError,
)
from postmortem_kg.postmortem.extractor import SectionExtractor
from postmortem_kg.postmortem.models import (
    STAGE_ORDER,
    ActionItem,
    AffectedService,
    BusinessImpact,
    CausalFactor,
    ExtractedSections,
    GenerationStage,
    IncidentContext,
    IndexStatus,
    InterceptionLayer,
    PostmortemStatus,
    Priority,
    TimelineEvent,
)

__all__ = [
    "STAGE_ORDER",
    "ActionItem",
    "AffectedService",
    "BusinessImpact",
    "CausalFactor",
    "ExtractedSections",
    "GenerationStage",
    "IncidentContext",
    "IndexStatus",
    "InterceptionLayer",
    "PostmortemStatus",
    "Priority",
    "TimelineEvent",
    "SectionExtractor",
    "PostmortemError",
    "IncidentNotFoundError",
    "PostmortemNotFoundError",
    "InvalidIncidentStateError",
    "InvalidStatusTransitionError",
    "GenerationStageError",
]
