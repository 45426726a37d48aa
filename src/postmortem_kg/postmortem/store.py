"""Postmortem persistence: drafts, section merges, manual patches, listing."""

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postmortem_kg.db.models import GenerationState, Incident, Postmortem, as_utc, utcnow
from postmortem_kg.postmortem.exceptions import (
    InvalidStatusTransitionError,
    PostmortemNotFoundError,
)
from postmortem_kg.postmortem.models import (
    CausalFactor,
    ExtractedSections,
    GenerationStage,
    IndexStatus,
    PostmortemStatus,
    compute_duration_minutes,
    parse_causal_factors,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


def dump_causal_analysis(factors: list[CausalFactor]) -> str:
    return json.dumps([factor.to_dict() for factor in factors])


def load_causal_analysis(raw: str | None) -> list[CausalFactor]:
    """Decode the stored causal-analysis column through the validating parser."""
    try:
        items = json.loads(raw or "[]")
    except json.JSONDecodeError:
        logger.warning("Stored causal analysis is not valid JSON, treating as empty")
        return []
    return parse_causal_factors(items)


def load_countries(raw: str | None) -> list[str]:
    try:
        value = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    return [str(code) for code in value] if isinstance(value, list) else []


def _normalize_countries(values: Any) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError("businessImpactAffectedCountries must be a list")
    countries: list[str] = []
    for value in values:
        code = str(value).strip()
        if code and code not in countries:
            countries.append(code)
    return countries


def _normalize_entity(value: Any) -> str | None:
    if value is None:
        return None
    entity = str(value).strip().strip("\"'").strip()
    if not entity or entity.lower() == "n/a":
        return None
    return entity


def _timestamp(name: str, value: Any):
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"{name} is not a valid ISO-8601 timestamp: {value!r}")
    return parsed


def to_payload(postmortem: Postmortem, incident: Incident | None = None) -> dict[str, Any]:
    """camelCase representation used by the API and the assistant."""
    start = as_utc(postmortem.business_impact_start)
    end = as_utc(postmortem.business_impact_end)
    published_at = as_utc(postmortem.published_at)
    payload = {
        "id": postmortem.id,
        "incidentId": postmortem.incident_id,
        "status": postmortem.status,
        "businessImpactApplication": postmortem.business_impact_application,
        "businessImpactStart": start.isoformat() if start else None,
        "businessImpactEnd": end.isoformat() if end else None,
        "businessImpactDuration": postmortem.business_impact_duration,
        "businessImpactDescription": postmortem.business_impact_description,
        "businessImpactAffectedCountries": load_countries(postmortem.business_impact_affected_countries),
        "businessImpactRegulatoryReporting": postmortem.business_impact_regulatory_reporting,
        "businessImpactRegulatoryEntity": postmortem.business_impact_regulatory_entity,
        "mitigationDescription": postmortem.mitigation_description,
        "causalAnalysis": [f.to_dict() for f in load_causal_analysis(postmortem.causal_analysis)],
        "indexStatus": postmortem.index_status,
        "indexError": postmortem.index_error,
        "createdBy": postmortem.created_by,
        "createdAt": as_utc(postmortem.created_at).isoformat() if postmortem.created_at else None,
        "updatedAt": as_utc(postmortem.updated_at).isoformat() if postmortem.updated_at else None,
        "publishedAt": published_at.isoformat() if published_at else None,
    }
    if incident is not None:
        payload["incidentNumber"] = incident.incident_number
        payload["incidentTitle"] = incident.title
        payload["incidentSeverity"] = incident.severity
    return payload


@dataclass
class PatchResult:
    """Outcome of a manual update."""

    postmortem: Postmortem
    index_requested: bool = False


class PostmortemStore:
    """CRUD over postmortems keyed by incident id.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, postmortem_id: str) -> Postmortem:
        postmortem = await self.session.get(Postmortem, postmortem_id)
        if postmortem is None:
            raise PostmortemNotFoundError(postmortem_id)
        return postmortem

    async def get_by_incident(self, incident_id: str) -> Postmortem | None:
        result = await self.session.execute(
            select(Postmortem).where(Postmortem.incident_id == incident_id)
        )
        return result.scalar_one_or_none()

    async def require_by_incident(self, incident_id: str) -> Postmortem:
        postmortem = await self.get_by_incident(incident_id)
        if postmortem is None:
            raise PostmortemNotFoundError(f"incident {incident_id}")
        return postmortem

    async def create_draft(self, incident_id: str, actor: str | None) -> Postmortem:
        """Return the incident's postmortem, creating an empty draft if needed."""
        postmortem = await self.get_by_incident(incident_id)
        if postmortem is None:
            postmortem = Postmortem(
                incident_id=incident_id,
                status=PostmortemStatus.DRAFT.value,
                created_by=actor,
            )
            self.session.add(postmortem)
            await self.session.flush()
            logger.info(f"Created draft postmortem {postmortem.id} for incident {incident_id}")
        return postmortem

    async def apply_sections(
        self,
        postmortem: Postmortem,
        sections: ExtractedSections,
        stages: tuple[GenerationStage, ...] | list[GenerationStage],
    ) -> list[GenerationStage]:
        """Overwrite the given stages' fields with extracted content.

        A stage whose extraction came back empty is left untouched.

        Returns:
            The stages that were written
        """
        applied = []
        for stage in stages:
            if not sections.has_stage(stage):
                logger.warning(
                    f"Extraction for {stage.value} was empty, keeping existing content "
                    f"of postmortem {postmortem.id}"
                )
                continue

            if stage == GenerationStage.BUSINESS_IMPACT:
                impact = sections.business_impact
                postmortem.business_impact_application = impact.application
                postmortem.business_impact_start = impact.start
                postmortem.business_impact_end = impact.end
                postmortem.business_impact_duration = impact.duration_minutes
                postmortem.business_impact_description = impact.description
                postmortem.business_impact_affected_countries = json.dumps(impact.affected_countries)
                postmortem.business_impact_regulatory_reporting = impact.regulatory_reporting
                postmortem.business_impact_regulatory_entity = impact.regulatory_entity
            elif stage == GenerationStage.MITIGATION:
                postmortem.mitigation_description = sections.mitigation_description
            else:
                postmortem.causal_analysis = dump_causal_analysis(sections.causal_analysis)
            applied.append(stage)

        if applied:
            postmortem.updated_at = utcnow()
            await self.session.flush()
        return applied

    async def update_fields(self, incident_id: str, patch: dict[str, Any]) -> PatchResult:
        """Apply a partial manual edit.

        ``businessImpactDuration`` is ignored and always re-derived from the
        boundaries. Causal analysis goes through the same filtering as
        extraction. Publishing stamps ``publishedAt`` once and requests
        (re-)indexing.

        Raises:
            PostmortemNotFoundError: If the incident has no postmortem
            InvalidStatusTransitionError: For published -> draft
            ValueError: For malformed field values
        """
        postmortem = await self.require_by_incident(incident_id)
        result = PatchResult(postmortem=postmortem)

        if "businessImpactApplication" in patch:
            postmortem.business_impact_application = patch["businessImpactApplication"]
        if "businessImpactStart" in patch:
            postmortem.business_impact_start = _timestamp("businessImpactStart", patch["businessImpactStart"])
        if "businessImpactEnd" in patch:
            postmortem.business_impact_end = _timestamp("businessImpactEnd", patch["businessImpactEnd"])
        if "businessImpactDescription" in patch:
            postmortem.business_impact_description = patch["businessImpactDescription"]
        if "businessImpactAffectedCountries" in patch:
            postmortem.business_impact_affected_countries = json.dumps(
                _normalize_countries(patch["businessImpactAffectedCountries"])
            )
        if "businessImpactRegulatoryReporting" in patch:
            postmortem.business_impact_regulatory_reporting = bool(
                patch["businessImpactRegulatoryReporting"]
            )
        if "businessImpactRegulatoryEntity" in patch:
            postmortem.business_impact_regulatory_entity = _normalize_entity(
                patch["businessImpactRegulatoryEntity"]
            )
        if not postmortem.business_impact_regulatory_reporting:
            postmortem.business_impact_regulatory_entity = None
        if "mitigationDescription" in patch:
            postmortem.mitigation_description = patch["mitigationDescription"]
        if "causalAnalysis" in patch:
            raw = patch["causalAnalysis"] or []
            if not isinstance(raw, list):
                raise ValueError("causalAnalysis must be a list")
            postmortem.causal_analysis = dump_causal_analysis(parse_causal_factors(raw))
        if "businessImpactDuration" in patch:
            logger.debug("Ignoring client-supplied duration, it is derived from start/end")

        postmortem.business_impact_duration = compute_duration_minutes(
            postmortem.business_impact_start, postmortem.business_impact_end
        )

        if "status" in patch and patch["status"] is not None:
            result.index_requested = self._transition(postmortem, patch["status"])

        postmortem.updated_at = utcnow()
        await self.session.flush()
        return result

    def _transition(self, postmortem: Postmortem, requested: str) -> bool:
        try:
            target = PostmortemStatus(requested)
        except ValueError as e:
            raise ValueError(f"Unknown postmortem status '{requested}'") from e

        current = PostmortemStatus(postmortem.status)
        if current == PostmortemStatus.PUBLISHED and target == PostmortemStatus.DRAFT:
            raise InvalidStatusTransitionError(current.value, target.value)
        if target == PostmortemStatus.DRAFT:
            return False

        postmortem.status = PostmortemStatus.PUBLISHED.value
        if postmortem.published_at is None:
            postmortem.published_at = utcnow()
        postmortem.index_status = IndexStatus.PENDING.value
        postmortem.index_error = None
        logger.info(f"Postmortem {postmortem.id} published, indexing requested")
        return True

    async def list_postmortems(
        self, status: PostmortemStatus | str | None = None
    ) -> list[tuple[Postmortem, Incident]]:
        """All postmortems with their incident, newest first."""
        query = select(Postmortem, Incident).join(Incident, Postmortem.incident_id == Incident.id)
        if status:
            query = query.where(Postmortem.status == PostmortemStatus(status).value)
        query = query.order_by(Postmortem.created_at.desc(), Postmortem.id)
        result = await self.session.execute(query)
        return [(row[0], row[1]) for row in result.all()]

    # Generation state

    async def get_generation_state(self, incident_id: str) -> GenerationState | None:
        return await self.session.get(GenerationState, incident_id)

    async def save_generation_state(self, incident_id: str, **fields: Any) -> GenerationState:
        state = await self.get_generation_state(incident_id)
        if state is None:
            state = GenerationState(incident_id=incident_id)
            self.session.add(state)
        for name, value in fields.items():
            setattr(state, name, value)
        state.updated_at = utcnow()
        await self.session.flush()
        return state
