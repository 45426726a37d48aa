"""Tests for recommendation synthesis, caching and the recommendation service."""

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from postmortem_kg.config import settings
from postmortem_kg.llm import LLMResponseError, LLMTimeoutError
from postmortem_kg.db.models import IncidentRecommendation
from postmortem_kg.locks import KeyedLocks
from postmortem_kg.postmortem.exceptions import IncidentNotFoundError
from postmortem_kg.postmortem.models import IncidentContext
from postmortem_kg.recommendations.cache import RecommendationCache
from postmortem_kg.recommendations.models import Recommendation
from postmortem_kg.recommendations.service import RecommendationService
from postmortem_kg.recommendations.synthesizer import (
    RecommendationSynthesizer,
    build_synthesis_prompt,
    parse_recommendations,
)
from postmortem_kg.vectorstore.exceptions import EmbeddingError
from postmortem_kg.vectorstore.retriever import SimilarPostmortem
from tests.fakes import FakeEmbeddings, FakeLLM, HangingLLM, keyword_vector

SYNTHESIS = json.dumps(
    [
        {
            "referenceIncident": "INC-0011",
            "recommendation": "Check the payment gateway timeouts",
            "details": "INC-0011 was a gateway timeout after a config push.",
            "actions": ["Inspect gateway latency", "Revert the last config push"],
        },
        {
            "referenceIncident": "INC-0010",
            "recommendation": "Look for database failover",
            "details": "INC-0010 degraded during a failover.",
            "actions": ["Check replica status"],
        },
    ]
)


def _candidate(number: str, score: float, incident_id: str | None = None) -> SimilarPostmortem:
    return SimilarPostmortem(
        postmortem_id=f"pm-{number}",
        incident_id=incident_id or f"id-{number}",
        incident_number=number,
        title=f"Title {number}",
        severity="high",
        similarity_score=score,
        business_impact="x" * 300,
        mitigation=None,
    )


def _service(session_factory, llm, embeddings, **kwargs) -> RecommendationService:
    return RecommendationService(
        session_factory=session_factory,
        llm=llm,
        embeddings=embeddings,
        locks=KeyedLocks(),
        **kwargs,
    )


@pytest.fixture
async def history(make_published):
    """Two published postmortems: a database incident and a payment incident."""
    await make_published("INC-0010", [1.0, 0.0, 0.0], title="Database failover")
    await make_published("INC-0011", [0.0, 1.0, 0.0], title="Payment gateway timeout")


class TestParseRecommendations:
    """Tests for validating synthesized output."""

    def test_valid_items_take_retriever_similarity(self):
        """Test items map to candidates and keep retrieval scores."""
        candidates = [_candidate("INC-0011", 0.92), _candidate("INC-0010", 0.41)]
        recs = parse_recommendations(SYNTHESIS, candidates)

        assert [r.incident_number for r in recs] == ["INC-0011", "INC-0010"]
        assert recs[0].similarity_score == 0.92
        assert recs[0].title == "Title INC-0011"
        assert recs[0].actions == ["Inspect gateway latency", "Revert the last config push"]

    def test_unknown_reference_is_dropped(self):
        """Test items naming incidents outside the candidates are dropped."""
        text = json.dumps(
            [
                {"referenceIncident": "INC-9999", "recommendation": "Made up"},
                {"referenceIncident": "inc-0011", "recommendation": "Real one"},
            ]
        )
        recs = parse_recommendations(text, [_candidate("INC-0011", 0.9)])
        assert [r.recommendation for r in recs] == ["Real one"]

    def test_first_item_per_incident_wins(self):
        """Test duplicate references keep the first item."""
        text = json.dumps(
            [
                {"referenceIncident": "INC-0011", "recommendation": "First"},
                {"referenceIncident": "INC-0011", "recommendation": "Second"},
            ]
        )
        recs = parse_recommendations(text, [_candidate("INC-0011", 0.9)])
        assert [r.recommendation for r in recs] == ["First"]

    def test_empty_recommendation_is_dropped(self):
        """Test items without recommendation text are dropped."""
        text = json.dumps([{"referenceIncident": "INC-0011", "recommendation": "  "}])
        assert parse_recommendations(text, [_candidate("INC-0011", 0.9)]) == []

    def test_fenced_output(self):
        """Test output wrapped in a code fence is parsed."""
        text = f"```json\n{SYNTHESIS}\n```"
        recs = parse_recommendations(text, [_candidate("INC-0010", 0.5)])
        assert [r.incident_number for r in recs] == ["INC-0010"]

    def test_prose_output(self):
        """Test output without an array yields nothing."""
        assert parse_recommendations("I have no suggestions.", [_candidate("INC-0010", 0.5)]) == []

    def test_prompt_lists_candidates(self):
        """Test the synthesis prompt carries candidates and truncated excerpts."""
        incident = IncidentContext(
            id="i", incident_number="INC-0001", title="Checkout down", severity="high", status="open"
        )
        prompt = build_synthesis_prompt(incident, [_candidate("INC-0011", 0.875)])

        assert "INC-0011 - Title INC-0011 (Similarity: 87.5%)" in prompt
        assert "x" * 200 + "..." in prompt
        assert "Resolution: N/A" in prompt
        assert "Under investigation" in prompt


class TestRecommendationSynthesizer:
    """Tests for the synthesis call."""

    @pytest.mark.asyncio
    async def test_synthesis_times_out(self):
        """Test a provider that never answers raises LLMTimeoutError."""
        incident = IncidentContext(
            id="i", incident_number="INC-0001", title="Checkout down", severity="high", status="open"
        )
        synthesizer = RecommendationSynthesizer(HangingLLM(), timeout=0.05)

        with pytest.raises(LLMTimeoutError) as exc_info:
            await asyncio.wait_for(
                synthesizer.synthesize(incident, [_candidate("INC-0011", 0.9)]), timeout=5
            )
        assert exc_info.value.provider == "fake"

    @pytest.mark.asyncio
    async def test_no_candidates_skips_the_provider(self):
        """Test synthesis without candidates makes no provider call."""
        llm = FakeLLM(default=SYNTHESIS)
        incident = IncidentContext(
            id="i", incident_number="INC-0001", title="Checkout down", severity="high", status="open"
        )
        assert await RecommendationSynthesizer(llm).synthesize(incident, []) == []
        assert llm.calls == 0


class TestRecommendationCache:
    """Tests for the time-boxed cache store."""

    @pytest.mark.asyncio
    async def test_replace_swaps_whole_set(self, session_factory, make_incident):
        """Test a replace removes rows absent from the new set and keeps rank order."""
        incident_id = await make_incident("INC-0001")
        a = await make_incident("INC-0002")
        b = await make_incident("INC-0003")
        cache = RecommendationCache(session_factory, ttl=timedelta(minutes=15))

        def rec(target: str, number: str, score: float) -> Recommendation:
            return Recommendation(target, number, "t", "high", score, "r")

        await cache.replace(incident_id, [rec(a, "INC-0002", 0.9), rec(b, "INC-0003", 0.8)])
        await cache.replace(incident_id, [rec(b, "INC-0003", 0.7), rec(a, "INC-0002", 0.6)])

        cached = await cache.get_fresh(incident_id)
        assert [r.incident_number for r in cached] == ["INC-0003", "INC-0002"]
        assert [r.similarity_score for r in cached] == [0.7, 0.6]

    @pytest.mark.asyncio
    async def test_readers_never_see_a_partial_set(self, session_factory, make_incident):
        """Test reads interleaved with replaces observe a complete old or new set."""
        incident_id = await make_incident("INC-0001")
        targets = [await make_incident(f"INC-010{i}") for i in range(3)]
        cache = RecommendationCache(session_factory, ttl=timedelta(minutes=15))
        old = [Recommendation(t, f"INC-010{i}", "t", "high", 0.5, "old") for i, t in enumerate(targets[:2])]
        new = [Recommendation(t, f"INC-010{i}", "t", "high", 0.9, "new") for i, t in enumerate(targets)]
        await cache.replace(incident_id, old)
        observed = []

        async def writer():
            for round_number in range(10):
                await cache.replace(incident_id, new if round_number % 2 == 0 else old)
                await asyncio.sleep(0)

        async def reader():
            for _ in range(20):
                cached = await cache.get_fresh(incident_id)
                observed.append([(r.incident_number, r.recommendation) for r in cached])
                await asyncio.sleep(0)

        await asyncio.gather(writer(), reader(), reader())

        allowed = [
            [(r.incident_number, r.recommendation) for r in old],
            [(r.incident_number, r.recommendation) for r in new],
        ]
        assert observed
        assert all(snapshot in allowed for snapshot in observed)

    @pytest.mark.asyncio
    async def test_zero_ttl_never_hits(self, session_factory, make_incident):
        """Test caching is off when the TTL is zero."""
        incident_id = await make_incident("INC-0001")
        other = await make_incident("INC-0002")
        cache = RecommendationCache(session_factory, ttl=timedelta(0))

        await cache.replace(incident_id, [Recommendation(other, "INC-0002", "t", "high", 0.9, "r")])
        assert await cache.get_fresh(incident_id) is None

    @pytest.mark.asyncio
    async def test_miss_when_empty(self, session_factory, make_incident):
        """Test an incident with no rows is a miss."""
        incident_id = await make_incident("INC-0001")
        assert await RecommendationCache(session_factory).get_fresh(incident_id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["{not json", json.dumps({"title": "no ids"}), "[]"])
    async def test_unreadable_payload_is_a_miss(self, session_factory, make_incident, payload):
        """Test a cached row that no longer parses is treated as a miss."""
        incident_id = await make_incident("INC-0001")
        other = await make_incident("INC-0002")
        cache = RecommendationCache(session_factory, ttl=timedelta(minutes=15))
        await cache.replace(incident_id, [Recommendation(other, "INC-0002", "t", "high", 0.9, "r")])
        async with session_factory() as session:
            await session.execute(
                update(IncidentRecommendation)
                .where(IncidentRecommendation.incident_id == incident_id)
                .values(payload=payload)
            )
            await session.commit()

        assert await cache.get_fresh(incident_id) is None


class FailingReadCache(RecommendationCache):
    """Cache whose reads fail at the database layer."""

    async def get_fresh(self, incident_id):
        raise OperationalError("SELECT", {}, Exception("database is locked"))


class TestRecommendationService:
    """Tests for the end-to-end recommendation flow with fake providers."""

    @pytest.mark.asyncio
    async def test_no_published_postmortems(self, session_factory, make_incident):
        """Test an empty knowledge base returns an empty list, not an error."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM(default=SYNTHESIS)
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))

        result = await service.get_recommendations(incident_id)

        assert result.available is True
        assert result.recommendations == []
        assert result.error is None
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, session_factory, make_incident, history):
        """Test a repeat call within the TTL returns the cached payload without provider calls."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM(default=SYNTHESIS)
        embeddings = FakeEmbeddings(vector_for=keyword_vector)
        service = _service(session_factory, llm, embeddings)

        first = await service.get_recommendations(incident_id)
        calls = (llm.calls, embeddings.calls)
        second = await service.get_recommendations(incident_id)

        assert first.cached is False
        assert second.cached is True
        assert [r.to_dict() for r in second.recommendations] == [
            r.to_dict() for r in first.recommendations
        ]
        assert (llm.calls, embeddings.calls) == calls
        assert [r.incident_number for r in first.recommendations] == ["INC-0011", "INC-0010"]

    @pytest.mark.asyncio
    async def test_force_refresh_recomputes(self, session_factory, make_incident, history):
        """Test force_refresh skips the cache."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM(default=SYNTHESIS)
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))

        await service.get_recommendations(incident_id)
        result = await service.get_recommendations(incident_id, force_refresh=True)

        assert result.cached is False
        assert llm.calls == 2

    @pytest.mark.asyncio
    async def test_own_postmortem_is_not_recommended(self, session_factory, make_published):
        """Test an incident never gets itself as a candidate."""
        incident_id, _ = await make_published("INC-0011", [0.0, 1.0, 0.0], title="Payment outage")
        llm = FakeLLM(default=SYNTHESIS)
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))

        result = await service.get_recommendations(incident_id)

        assert result.recommendations == []
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_previous_cache(
        self, session_factory, make_incident, history
    ):
        """Test a failed refresh raises and leaves the cached set intact."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM([SYNTHESIS, LLMResponseError("bad gateway", provider="fake")])
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))
        first = await service.get_recommendations(incident_id)

        with pytest.raises(LLMResponseError):
            await service.get_recommendations(incident_id, force_refresh=True)

        cached = await service.get_recommendations(incident_id)
        assert cached.cached is True
        assert [r.to_dict() for r in cached.recommendations] == [
            r.to_dict() for r in first.recommendations
        ]

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, session_factory, make_incident, history):
        """Test an embedding failure surfaces as EmbeddingError."""
        incident_id = await make_incident("INC-0001")
        embeddings = FakeEmbeddings(error=EmbeddingError("down", provider="fake"))
        service = _service(session_factory, FakeLLM(default=SYNTHESIS), embeddings)

        with pytest.raises(EmbeddingError):
            await service.get_recommendations(incident_id)

    @pytest.mark.asyncio
    async def test_cache_read_failure_recomputes(self, session_factory, make_incident, history):
        """Test a cache read error falls back to computing."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM(default=SYNTHESIS)
        service = _service(
            session_factory,
            llm,
            FakeEmbeddings(vector_for=keyword_vector),
            cache=FailingReadCache(session_factory),
        )

        result = await service.get_recommendations(incident_id)

        assert result.cached is False
        assert len(result.recommendations) == 2

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_computation(
        self, session_factory, make_incident, history
    ):
        """Test simultaneous requests for one incident synthesize once."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM(default=SYNTHESIS)
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))

        results = await asyncio.gather(
            service.get_recommendations(incident_id), service.get_recommendations(incident_id)
        )

        assert llm.calls == 1
        assert sorted(r.cached for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_synthesis_timeout_releases_the_refresh_lock(
        self, session_factory, make_incident, history, monkeypatch
    ):
        """Test a hung synthesis times out and a later refresh for the incident proceeds."""
        monkeypatch.setattr(settings, "SYNTHESIS_TIMEOUT", 0.1)
        incident_id = await make_incident("INC-0001")
        llm = HangingLLM(default=SYNTHESIS)
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))

        with pytest.raises(LLMTimeoutError):
            await asyncio.wait_for(service.get_recommendations(incident_id), timeout=5)
        assert await RecommendationCache(session_factory).get_fresh(incident_id) is None

        result = await asyncio.wait_for(service.get_recommendations(incident_id), timeout=5)
        assert result.cached is False
        assert len(result.recommendations) == 2
        assert llm.calls == 2

    @pytest.mark.asyncio
    async def test_unreadable_cache_recomputes(self, session_factory, make_incident, history):
        """Test a corrupt cached payload is recomputed instead of failing the request."""
        incident_id = await make_incident("INC-0001")
        llm = FakeLLM(default=SYNTHESIS)
        service = _service(session_factory, llm, FakeEmbeddings(vector_for=keyword_vector))
        await service.get_recommendations(incident_id)
        async with session_factory() as session:
            await session.execute(update(IncidentRecommendation).values(payload="{not json"))
            await session.commit()

        result = await service.get_recommendations(incident_id)

        assert result.cached is False
        assert llm.calls == 2
        assert [r.incident_number for r in result.recommendations] == ["INC-0011", "INC-0010"]

    @pytest.mark.asyncio
    async def test_missing_incident(self, session_factory):
        """Test an unknown incident raises IncidentNotFoundError."""
        service = _service(session_factory, FakeLLM(), FakeEmbeddings())
        with pytest.raises(IncidentNotFoundError):
            await service.get_recommendations("nope")

    @pytest.mark.asyncio
    async def test_unavailable_without_embedding_provider(
        self, session_factory, make_incident, monkeypatch
    ):
        """Test a missing embedding provider reports available=false."""
        monkeypatch.setattr(settings, "EMBEDDING_PROVIDER", "")
        incident_id = await make_incident("INC-0001")
        service = RecommendationService(session_factory=session_factory, llm=FakeLLM())

        result = await service.get_recommendations(incident_id)

        assert result.available is False
        assert result.message
        assert result.to_dict() == {
            "available": False,
            "cached": False,
            "message": result.message,
            "recommendations": [],
        }

    @pytest.mark.asyncio
    async def test_unavailable_without_llm(self, session_factory, make_incident, monkeypatch):
        """Test a missing completion provider reports available=false."""
        for name in ("LLM_PROVIDER", "ANTHROPIC_API_KEY", "GCP_PROJECT_ID", "VERTEX_AI_PROJECT", "OLLAMA_BASE_URL"):
            monkeypatch.setattr(settings, name, "")
        incident_id = await make_incident("INC-0001")
        service = RecommendationService(session_factory=session_factory, embeddings=FakeEmbeddings())

        result = await service.get_recommendations(incident_id)

        assert result.available is False
