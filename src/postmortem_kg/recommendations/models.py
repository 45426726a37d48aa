"""Recommendation payload types.

Field names of ``to_dict`` output are the contract consumed by the UI.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Recommendation:
    """One synthesized recommendation referencing a similar past incident."""

    incident_id: str
    incident_number: str
    title: str
    severity: str
    similarity_score: float
    recommendation: str
    details: str = ""
    actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "incidentId": self.incident_id,
            "incidentNumber": self.incident_number,
            "title": self.title,
            "severity": self.severity,
            "similarityScore": self.similarity_score,
            "recommendation": self.recommendation,
            "details": self.details,
            "actions": list(self.actions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recommendation":
        return cls(
            incident_id=data["incidentId"],
            incident_number=data["incidentNumber"],
            title=data.get("title", ""),
            severity=data.get("severity", ""),
            similarity_score=float(data.get("similarityScore", 0.0)),
            recommendation=data.get("recommendation", ""),
            details=data.get("details", ""),
            actions=[str(action) for action in data.get("actions", [])],
        )


@dataclass
class RecommendationResult:
    """Response of a recommendation request.

    ``available=False`` means no provider is configured (hide the feature);
    ``error`` means the request failed and may be retried; an empty list
    with neither means there is nothing similar yet.
    """

    available: bool
    cached: bool = False
    recommendations: list[Recommendation] = field(default_factory=list)
    message: str | None = None
    error: str | None = None

    @classmethod
    def unavailable(cls, message: str) -> "RecommendationResult":
        return cls(available=False, message=message)

    @classmethod
    def failed(cls, error: str) -> "RecommendationResult":
        return cls(available=True, error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"available": self.available, "cached": self.cached}
        if self.message is not None:
            data["message"] = self.message
        if self.error is not None:
            data["error"] = self.error
        data["recommendations"] = [rec.to_dict() for rec in self.recommendations]
        return data
