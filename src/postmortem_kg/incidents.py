"""Access to the consumed incident record.

Incidents are owned by the host application. This module only reads them
into ``IncidentContext`` and offers an upsert used by imports and fixtures.
"""

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postmortem_kg.db.models import Incident, as_utc
from postmortem_kg.postmortem.exceptions import IncidentNotFoundError
from postmortem_kg.postmortem.models import (
    AffectedService,
    IncidentContext,
    TimelineEvent,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# camelCase import keys -> model attributes
_SCALAR_FIELDS = {
    "incidentNumber": "incident_number",
    "title": "title",
    "description": "description",
    "severity": "severity",
    "status": "status",
    "problemStatement": "problem_statement",
    "impact": "impact",
    "causes": "causes",
    "stepsToResolve": "steps_to_resolve",
    "leadName": "lead_name",
    "reporterName": "reporter_name",
}
_TIMESTAMP_FIELDS = {"detectedAt": "detected_at", "resolvedAt": "resolved_at"}


def _load_list(raw: str | None) -> list[Any]:
    try:
        value = json.loads(raw or "[]")
    except json.JSONDecodeError:
        logger.warning("Incident JSON column is not valid JSON, ignoring")
        return []
    return value if isinstance(value, list) else []


def to_context(incident: Incident) -> IncidentContext:
    """Convert an ORM incident into the domain view."""
    services = [
        AffectedService(service_name=s["serviceName"], team_name=s.get("teamName"))
        for s in _load_list(incident.services)
        if isinstance(s, dict) and s.get("serviceName")
    ]
    timeline = [
        TimelineEvent(
            type=e.get("type", "update"),
            description=e.get("description", ""),
            created_at=e.get("createdAt"),
            user_name=e.get("userName"),
        )
        for e in _load_list(incident.timeline)
        if isinstance(e, dict)
    ]
    timeline.sort(key=lambda e: e.created_at or "")

    return IncidentContext(
        id=incident.id,
        incident_number=incident.incident_number,
        title=incident.title,
        severity=incident.severity,
        status=incident.status,
        description=incident.description,
        problem_statement=incident.problem_statement,
        impact=incident.impact,
        causes=incident.causes,
        steps_to_resolve=incident.steps_to_resolve,
        lead_name=incident.lead_name,
        reporter_name=incident.reporter_name,
        detected_at=as_utc(incident.detected_at),
        resolved_at=as_utc(incident.resolved_at),
        services=services,
        timeline=timeline,
    )


async def get_incident(session: AsyncSession, incident_id: str) -> Incident:
    """Load an incident row.

    Raises:
        IncidentNotFoundError: If no incident has this id
    """
    incident = await session.get(Incident, incident_id)
    if incident is None:
        raise IncidentNotFoundError(incident_id)
    return incident


async def get_context(session: AsyncSession, incident_id: str) -> IncidentContext:
    """Load an incident as ``IncidentContext``."""
    return to_context(await get_incident(session, incident_id))


async def upsert_incident(session: AsyncSession, data: dict[str, Any]) -> Incident:
    """Insert or update an incident from a camelCase record.

    Matching is by ``id`` when given, else by ``incidentNumber``. The caller
    commits.
    """
    incident = None
    if data.get("id"):
        incident = await session.get(Incident, data["id"])
    if incident is None and data.get("incidentNumber"):
        result = await session.execute(
            select(Incident).where(Incident.incident_number == data["incidentNumber"])
        )
        incident = result.scalar_one_or_none()
    if incident is None:
        if not data.get("incidentNumber") or not data.get("title"):
            raise ValueError("New incidents need incidentNumber and title")
        incident = Incident(id=data["id"]) if data.get("id") else Incident()
        session.add(incident)
        logger.info(f"Importing incident {data['incidentNumber']}")

    for key, attr in _SCALAR_FIELDS.items():
        if key in data:
            setattr(incident, attr, data[key])
    for key, attr in _TIMESTAMP_FIELDS.items():
        if key in data:
            setattr(incident, attr, parse_timestamp(data[key]))
    if "services" in data:
        incident.services = json.dumps(data["services"] or [])
    if "timeline" in data:
        incident.timeline = json.dumps(data["timeline"] or [])

    await session.flush()
    return incident
