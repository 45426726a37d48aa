"""Shared fixtures: a file-backed SQLite database and fake providers."""

import json
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio

from postmortem_kg.db.database import create_engine, create_session_maker, init_db
from postmortem_kg.db.models import Incident, Postmortem, PostmortemEmbedding
from postmortem_kg.vectorstore.embeddings import reset_embeddings
from tests.fakes import FakeEmbeddings, FakeLLM, keyword_vector


@pytest.fixture(autouse=True)
def shared_embeddings():
    """Each test starts without cached embedding providers."""
    reset_embeddings()
    yield
    reset_embeddings()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings(vector_for=keyword_vector)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_maker(db_engine)


INCIDENT_DEFAULTS = {
    "title": "Payment API outage",
    "description": "Checkout requests failed with 500 errors",
    "severity": "high",
    "status": "resolved",
    "problem_statement": "Payment API returned errors for all checkouts",
    "impact": "Customers could not pay",
    "causes": "Connection pool exhausted",
    "steps_to_resolve": "Restarted the payment service",
    "lead_name": "Alex",
    "detected_at": datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc),
    "resolved_at": datetime(2024, 1, 1, 1, 30, tzinfo=timezone.utc),
    "services": json.dumps([{"serviceName": "payment-api", "teamName": "Payments"}]),
    "timeline": json.dumps(
        [
            {"type": "update", "description": "Rolled back", "createdAt": "2024-01-01T01:00:00Z"},
            {"type": "created", "description": "Alert fired", "createdAt": "2024-01-01T00:00:00Z"},
        ]
    ),
}


@pytest.fixture
def make_incident(session_factory):
    """Insert an incident and return its id."""

    async def _make(number: str = "INC-0001", **overrides: Any) -> str:
        fields = {**INCIDENT_DEFAULTS, "incident_number": number, **overrides}
        async with session_factory() as session:
            incident = Incident(**fields)
            session.add(incident)
            await session.commit()
            return incident.id

    return _make


@pytest.fixture
def make_published(session_factory, make_incident):
    """Insert an incident with a published, indexed postmortem and its vector."""

    async def _make(
        number: str,
        vector: list[float],
        title: str = "Past incident",
        mitigation: str = "Rolled back the release",
    ) -> tuple[str, str]:
        incident_id = await make_incident(number, title=title)
        async with session_factory() as session:
            postmortem = Postmortem(
                incident_id=incident_id,
                status="published",
                business_impact_description=f"{title} impact",
                mitigation_description=mitigation,
                index_status="indexed",
                published_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
            )
            session.add(postmortem)
            await session.flush()
            session.add(
                PostmortemEmbedding(
                    postmortem_id=postmortem.id,
                    incident_id=incident_id,
                    vector=json.dumps(vector),
                    dimension=len(vector),
                    source_text=title,
                    provider="fake",
                    model="fake-embedding",
                )
            )
            await session.commit()
            return incident_id, postmortem.id

    return _make
