"""API request and response schemas.

Field names are camelCase to match the payloads the UI already consumes.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

StageName = Literal["business_impact", "mitigation", "causal_analysis"]


class ActionItemSchema(BaseModel):
    """Follow-up action of a causal factor."""

    description: str
    priority: Literal["high", "medium", "low"] = "medium"


class CausalFactorSchema(BaseModel):
    """Causal factor as stored (already validated)."""

    interceptionLayer: str
    cause: str
    subCause: str | None = None
    description: str
    actionItems: list[ActionItemSchema] = Field(default_factory=list)


class PostmortemResponse(BaseModel):
    """Structured postmortem."""

    id: str
    incidentId: str
    status: Literal["draft", "published"]
    businessImpactApplication: str | None = None
    businessImpactStart: datetime | None = None
    businessImpactEnd: datetime | None = None
    businessImpactDuration: int | None = Field(default=None, description="Derived, whole minutes")
    businessImpactDescription: str | None = None
    businessImpactAffectedCountries: list[str] = Field(default_factory=list)
    businessImpactRegulatoryReporting: bool = False
    businessImpactRegulatoryEntity: str | None = None
    mitigationDescription: str | None = None
    causalAnalysis: list[CausalFactorSchema] = Field(default_factory=list)
    indexStatus: Literal["not_indexed", "pending", "indexed", "failed"] = "not_indexed"
    indexError: str | None = None
    createdBy: str | None = None
    createdAt: datetime | None = None
    updatedAt: datetime | None = None
    publishedAt: datetime | None = None
    incidentNumber: str | None = None
    incidentTitle: str | None = None
    incidentSeverity: str | None = None


class PostmortemEnvelope(BaseModel):
    """Postmortem of an incident; null until one is created."""

    postmortem: PostmortemResponse | None = None


class PostmortemPatch(BaseModel):
    """Partial manual update. Omitted fields are left unchanged."""

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "mitigationDescription": "Rolled back release 2024.01.3 and drained the queue.",
                "status": "published",
            }
        },
    )

    businessImpactApplication: str | None = None
    businessImpactStart: datetime | None = None
    businessImpactEnd: datetime | None = None
    businessImpactDuration: int | None = Field(
        default=None, description="Ignored; always derived from start and end"
    )
    businessImpactDescription: str | None = None
    businessImpactAffectedCountries: list[str] | None = None
    businessImpactRegulatoryReporting: bool | None = None
    businessImpactRegulatoryEntity: str | None = None
    mitigationDescription: str | None = None
    causalAnalysis: list[dict[str, Any]] | None = None
    status: Literal["draft", "published"] | None = None


class GenerateRequest(BaseModel):
    """Generation request; omit ``stages`` to run all of them."""

    stages: list[StageName] | None = Field(
        default=None, description="Subset of stages to (re)run, executed in canonical order"
    )


class GenerateResponse(BaseModel):
    """Result of a completed generation run."""

    incidentId: str
    postmortemId: str
    completedStages: list[StageName]
    appliedStages: list[StageName]
    postmortem: PostmortemResponse | None = None


class GenerationStatusResponse(BaseModel):
    """Stage state of the latest generation run."""

    incidentId: str
    running: bool = False
    stage: str | None = None
    completedStages: list[str] = Field(default_factory=list)
    failedStage: str | None = None
    lastError: str | None = None
    startedAt: datetime | None = None
    updatedAt: datetime | None = None


class AssistRequest(BaseModel):
    """Writing-assistant request.

    ``postmortem`` lets the caller send unsaved edits; the stored postmortem
    is used otherwise.
    """

    action: Literal["check", "ask", "expand"]
    question: str | None = None
    section: Literal["businessImpactDescription", "mitigationDescription"] | None = None
    currentContent: str | None = None
    postmortem: dict[str, Any] | None = None


class AssistResponse(BaseModel):
    """Assistant output; exactly one field is set depending on the action."""

    feedback: str | None = None
    answer: str | None = None
    expandedContent: str | None = None


class IndexResponse(BaseModel):
    """Result of (re)indexing a postmortem."""

    postmortemId: str
    indexed: bool
    version: int | None = None
    dimension: int | None = None


class RecommendationItem(BaseModel):
    """One recommendation referencing a similar past incident."""

    incidentId: str
    incidentNumber: str
    title: str
    severity: str
    similarityScore: float
    recommendation: str
    details: str = ""
    actions: list[str] = Field(default_factory=list)


class RecommendationsResponse(BaseModel):
    """Recommendations payload.

    ``available=false`` means the feature is not configured; ``error`` means
    the request failed and may be retried.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "available": True,
                "cached": False,
                "recommendations": [
                    {
                        "incidentId": "7c1e...",
                        "incidentNumber": "INC-0042",
                        "title": "Checkout latency spike",
                        "severity": "high",
                        "similarityScore": 0.87,
                        "recommendation": "Check connection pool saturation",
                        "details": "INC-0042 was caused by pool exhaustion after a deploy.",
                        "actions": ["Inspect pool metrics", "Roll back the latest deploy"],
                    }
                ],
            }
        }
    )

    available: bool
    cached: bool = False
    message: str | None = None
    error: str | None = None
    recommendations: list[RecommendationItem] = Field(default_factory=list)
