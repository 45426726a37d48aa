"""Tests for the postmortem and recommendation API routes."""

import pytest
from httpx import ASGITransport, AsyncClient

from postmortem_kg.api.postmortems import (
    get_assistant,
    get_generator,
    get_indexer,
    get_postmortem_service,
)
from postmortem_kg.api.recommendations import get_recommendation_service
from postmortem_kg.llm import LLMConnectionError
from postmortem_kg.locks import InFlightRegistry, KeyedLocks
from postmortem_kg.main import app
from postmortem_kg.postmortem.assistant import PostmortemAssistant
from postmortem_kg.postmortem.generator import PostmortemGenerator
from postmortem_kg.postmortem.service import PostmortemService
from postmortem_kg.recommendations.service import RecommendationService
from postmortem_kg.vectorstore.exceptions import EmbeddingError
from postmortem_kg.vectorstore.indexer import EmbeddingIndexer
from tests.fakes import FakeEmbeddings, FakeLLM, keyword_vector
from tests.test_generator import BUSINESS_IMPACT, CAUSAL_ANALYSIS, MITIGATION
from tests.test_recommendations import SYNTHESIS

ACTOR = {"X-Actor": "U_AUTHOR"}


class Providers:
    """Mutable provider set the dependency overrides read from."""

    def __init__(self):
        self.llm = FakeLLM()
        self.embeddings = FakeEmbeddings(vector_for=keyword_vector)
        self.registry = InFlightRegistry("test generation")


@pytest.fixture
def providers() -> Providers:
    return Providers()


@pytest.fixture
async def client(session_factory, providers):
    """Async test client wired to the temporary database and fake providers."""

    def indexer() -> EmbeddingIndexer:
        return EmbeddingIndexer(embeddings=providers.embeddings, session_factory=session_factory)

    app.dependency_overrides[get_indexer] = indexer
    app.dependency_overrides[get_postmortem_service] = lambda: PostmortemService(
        session_factory=session_factory, indexer=indexer()
    )
    app.dependency_overrides[get_generator] = lambda: PostmortemGenerator(
        llm=providers.llm, session_factory=session_factory, registry=providers.registry
    )
    app.dependency_overrides[get_assistant] = lambda: PostmortemAssistant(llm=providers.llm)
    app.dependency_overrides[get_recommendation_service] = lambda: RecommendationService(
        session_factory=session_factory,
        llm=providers.llm,
        embeddings=providers.embeddings,
        locks=KeyedLocks(),
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _generate(client, providers, incident_id):
    providers.llm = FakeLLM([BUSINESS_IMPACT, MITIGATION, CAUSAL_ANALYSIS])
    return await client.post(f"/api/v1/incidents/{incident_id}/postmortem/generate", headers=ACTOR)


class TestPostmortemRoutes:
    """Tests for postmortem endpoints."""

    @pytest.mark.asyncio
    async def test_get_before_creation(self, client, make_incident):
        """Test an incident without a postmortem returns null."""
        incident_id = await make_incident()
        response = await client.get(f"/api/v1/incidents/{incident_id}/postmortem")

        assert response.status_code == 200
        assert response.json() == {"postmortem": None}

    @pytest.mark.asyncio
    async def test_get_unknown_incident(self, client):
        """Test an unknown incident is a 404."""
        response = await client.get("/api/v1/incidents/nope/postmortem")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_generate_and_status(self, client, providers, make_incident):
        """Test generation fills the postmortem and reports stage progress."""
        incident_id = await make_incident()

        response = await _generate(client, providers, incident_id)

        assert response.status_code == 200
        data = response.json()
        assert data["completedStages"] == ["business_impact", "mitigation", "causal_analysis"]
        assert data["postmortem"]["businessImpactApplication"] == "Payment API"
        assert data["postmortem"]["businessImpactDuration"] == 90

        status = await client.get(f"/api/v1/incidents/{incident_id}/postmortem/status")
        assert status.json()["running"] is False
        assert status.json()["completedStages"] == data["completedStages"]

    @pytest.mark.asyncio
    async def test_generate_requires_actor(self, client, make_incident):
        """Test mutating routes need the X-Actor header."""
        incident_id = await make_incident()
        response = await client.post(f"/api/v1/incidents/{incident_id}/postmortem/generate")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_generate_open_incident(self, client, make_incident):
        """Test generation for an unresolved incident is a 400."""
        incident_id = await make_incident(status="open")
        response = await client.post(
            f"/api/v1/incidents/{incident_id}/postmortem/generate", headers=ACTOR
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_generate_while_busy(self, client, providers, make_incident):
        """Test a concurrent generation request is a 409."""
        incident_id = await make_incident()
        async with providers.registry.claim(incident_id):
            response = await client.post(
                f"/api/v1/incidents/{incident_id}/postmortem/generate", headers=ACTOR
            )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_generate_stage_failure(self, client, providers, make_incident):
        """Test a provider failure is a 502 naming the stage and provider."""
        incident_id = await make_incident()
        providers.llm = FakeLLM([LLMConnectionError("refused", provider="fake")])

        response = await client.post(
            f"/api/v1/incidents/{incident_id}/postmortem/generate",
            headers=ACTOR,
            json={"stages": ["mitigation"]},
        )

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["stage"] == "mitigation"
        assert detail["provider"] == "fake"

    @pytest.mark.asyncio
    async def test_patch_and_publish_indexes(self, client, providers, make_incident):
        """Test publishing through PATCH commits and indexes in the background."""
        incident_id = await make_incident()
        await _generate(client, providers, incident_id)

        response = await client.patch(
            f"/api/v1/incidents/{incident_id}/postmortem",
            headers=ACTOR,
            json={"mitigationDescription": "Rolled back and added a canary", "status": "published"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "published"
        assert response.json()["publishedAt"] is not None

        stored = await client.get(f"/api/v1/incidents/{incident_id}/postmortem")
        assert stored.json()["postmortem"]["indexStatus"] == "indexed"
        assert providers.embeddings.calls == 1

    @pytest.mark.asyncio
    async def test_unpublish_rejected(self, client, providers, make_incident):
        """Test published -> draft is a 409."""
        incident_id = await make_incident()
        await _generate(client, providers, incident_id)
        url = f"/api/v1/incidents/{incident_id}/postmortem"
        await client.patch(url, headers=ACTOR, json={"status": "published"})

        response = await client.patch(url, headers=ACTOR, json={"status": "draft"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_patch_unknown_field(self, client, providers, make_incident):
        """Test unknown patch fields are rejected."""
        incident_id = await make_incident()
        await _generate(client, providers, incident_id)

        response = await client.patch(
            f"/api/v1/incidents/{incident_id}/postmortem", headers=ACTOR, json={"owner": "x"}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_patch_without_postmortem(self, client, make_incident):
        """Test patching before any postmortem exists is a 404."""
        incident_id = await make_incident()
        response = await client.patch(
            f"/api/v1/incidents/{incident_id}/postmortem",
            headers=ACTOR,
            json={"mitigationDescription": "x"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_with_status_filter(self, client, providers, make_incident):
        """Test listing filters by status and rejects unknown statuses."""
        first = await make_incident("INC-0001")
        second = await make_incident("INC-0002")
        await _generate(client, providers, first)
        await _generate(client, providers, second)
        await client.patch(
            f"/api/v1/incidents/{first}/postmortem", headers=ACTOR, json={"status": "published"}
        )

        published = await client.get("/api/v1/postmortems", params={"status": "published"})
        drafts = await client.get("/api/v1/postmortems", params={"status": "draft"})
        invalid = await client.get("/api/v1/postmortems", params={"status": "archived"})

        assert [p["incidentNumber"] for p in published.json()] == ["INC-0001"]
        assert [p["incidentNumber"] for p in drafts.json()] == ["INC-0002"]
        assert invalid.status_code == 400

    @pytest.mark.asyncio
    async def test_index_route(self, client, providers, make_incident):
        """Test manual indexing of drafts, unknown ids and published postmortems."""
        incident_id = await make_incident()
        generated = await _generate(client, providers, incident_id)
        postmortem_id = generated.json()["postmortemId"]

        draft = await client.post(f"/api/v1/postmortems/{postmortem_id}/index")
        missing = await client.post("/api/v1/postmortems/nope/index")
        await client.patch(
            f"/api/v1/incidents/{incident_id}/postmortem", headers=ACTOR, json={"status": "published"}
        )
        reindexed = await client.post(f"/api/v1/postmortems/{postmortem_id}/index")

        assert draft.status_code == 409
        assert missing.status_code == 404
        assert reindexed.status_code == 200
        assert reindexed.json()["version"] == 2

    @pytest.mark.asyncio
    async def test_index_provider_failure(self, client, providers, make_incident):
        """Test an embedding failure on manual indexing is a 502."""
        incident_id = await make_incident()
        generated = await _generate(client, providers, incident_id)
        providers.embeddings = FakeEmbeddings(error=EmbeddingError("down", provider="fake"))
        await client.patch(
            f"/api/v1/incidents/{incident_id}/postmortem", headers=ACTOR, json={"status": "published"}
        )

        response = await client.post(
            f"/api/v1/postmortems/{generated.json()['postmortemId']}/index"
        )

        assert response.status_code == 502
        assert response.json()["detail"]["provider"] == "fake"

    @pytest.mark.asyncio
    async def test_index_pending_route(self, client, providers, make_incident):
        """Test the retry route indexes published postmortems left pending."""
        incident_id = await make_incident()
        await _generate(client, providers, incident_id)
        providers.embeddings = FakeEmbeddings(error=EmbeddingError("down", provider="fake"))
        await client.patch(
            f"/api/v1/incidents/{incident_id}/postmortem", headers=ACTOR, json={"status": "published"}
        )

        providers.embeddings = FakeEmbeddings()
        response = await client.post("/api/v1/postmortems/index-pending")

        assert response.status_code == 200
        assert response.json() == {"indexed": 1, "failed": 0}


class TestAssistRoute:
    """Tests for the writing assistant endpoint."""

    @pytest.mark.asyncio
    async def test_check_uses_stored_postmortem(self, client, providers, make_incident):
        """Test a quality check runs against the stored postmortem."""
        incident_id = await make_incident()
        await _generate(client, providers, incident_id)
        providers.llm = FakeLLM(["Score: 8/10"])

        response = await client.post(
            f"/api/v1/incidents/{incident_id}/postmortem/assist", json={"action": "check"}
        )

        assert response.status_code == 200
        assert response.json()["feedback"] == "Score: 8/10"
        assert "Payment API" in providers.llm.prompts[0]

    @pytest.mark.asyncio
    async def test_ask_requires_question(self, client, make_incident):
        """Test an empty coaching question is a 400."""
        incident_id = await make_incident()
        response = await client.post(
            f"/api/v1/incidents/{incident_id}/postmortem/assist",
            json={"action": "ask", "question": " ", "postmortem": {"id": "draft"}},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_expand_section(self, client, providers, make_incident):
        """Test section expansion returns the expanded text."""
        incident_id = await make_incident()
        providers.llm = FakeLLM(["Longer mitigation text"])

        response = await client.post(
            f"/api/v1/incidents/{incident_id}/postmortem/assist",
            json={
                "action": "expand",
                "section": "mitigationDescription",
                "currentContent": "Rolled back",
                "postmortem": {"id": "draft", "mitigationDescription": "Rolled back"},
            },
        )

        assert response.status_code == 200
        assert response.json()["expandedContent"] == "Longer mitigation text"

    @pytest.mark.asyncio
    async def test_assist_without_postmortem(self, client, make_incident):
        """Test assisting before a postmortem exists is a 404."""
        incident_id = await make_incident()
        response = await client.post(
            f"/api/v1/incidents/{incident_id}/postmortem/assist", json={"action": "check"}
        )
        assert response.status_code == 404


class TestRecommendationRoute:
    """Tests for the recommendations endpoint."""

    @pytest.mark.asyncio
    async def test_recommendations_then_cached(self, client, providers, make_incident, make_published):
        """Test a fresh result followed by a cached one."""
        await make_published("INC-0010", [1.0, 0.0, 0.0], title="Database failover")
        await make_published("INC-0011", [0.0, 1.0, 0.0], title="Payment gateway timeout")
        incident_id = await make_incident("INC-0001")
        providers.llm = FakeLLM(default=SYNTHESIS)
        url = f"/api/v1/incidents/{incident_id}/recommendations"

        first = await client.get(url)
        second = await client.get(url)
        refreshed = await client.get(url, params={"refresh": "true"})

        assert first.status_code == 200
        assert first.json()["cached"] is False
        assert "error" not in first.json()
        assert first.json()["recommendations"][0]["incidentNumber"] == "INC-0011"
        assert second.json()["cached"] is True
        assert second.json()["recommendations"] == first.json()["recommendations"]
        assert refreshed.json()["cached"] is False
        assert providers.llm.calls == 2

    @pytest.mark.asyncio
    async def test_empty_knowledge_base(self, client, make_incident):
        """Test no published postmortems gives an empty, available result."""
        incident_id = await make_incident()
        response = await client.get(f"/api/v1/incidents/{incident_id}/recommendations")

        assert response.status_code == 200
        assert response.json() == {"available": True, "cached": False, "recommendations": []}

    @pytest.mark.asyncio
    async def test_provider_failure(self, client, providers, make_incident, make_published):
        """Test a synthesis failure is a 502 with an error payload."""
        await make_published("INC-0010", [1.0, 0.0, 0.0])
        incident_id = await make_incident("INC-0001")
        providers.llm = FakeLLM([LLMConnectionError("refused", provider="fake")])

        response = await client.get(f"/api/v1/incidents/{incident_id}/recommendations")

        assert response.status_code == 502
        body = response.json()
        assert body["available"] is True
        assert body["recommendations"] == []
        assert "refused" in body["error"]

    @pytest.mark.asyncio
    async def test_unknown_incident(self, client):
        """Test an unknown incident is a 404."""
        response = await client.get("/api/v1/incidents/nope/recommendations")
        assert response.status_code == 404
