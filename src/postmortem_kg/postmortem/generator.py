"""Chunked postmortem generation.

One completion per section, executed in canonical order. Each stage's
result is extracted and persisted before the next stage starts, so a failure
never discards earlier stages. No database transaction is held while a
provider call is in flight.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postmortem_kg.config import settings
from postmortem_kg.db.database import async_session_maker
from postmortem_kg.db.models import GenerationState, as_utc, utcnow
from postmortem_kg.incidents import get_context
from postmortem_kg.llm import BaseLLM, LLMError, LLMTimeoutError, get_llm
from postmortem_kg.locks import InFlightRegistry
from postmortem_kg.postmortem.exceptions import (
    GenerationStageError,
    InvalidIncidentStateError,
)
from postmortem_kg.postmortem.extractor import SectionExtractor
from postmortem_kg.postmortem.models import STAGE_ORDER, GenerationStage
from postmortem_kg.postmortem.prompts import build_stage_prompt
from postmortem_kg.postmortem.store import PostmortemStore

logger = logging.getLogger(__name__)

# Process-wide: one generation run per incident
generation_runs = InFlightRegistry("postmortem generation")


def normalize_stages(stages: Iterable[GenerationStage | str] | None) -> list[GenerationStage]:
    """Deduplicate requested stages and put them in canonical order.

    Raises:
        ValueError: For an unknown stage name
    """
    if not stages:
        return list(STAGE_ORDER)
    requested = {GenerationStage(stage) for stage in stages}
    return [stage for stage in STAGE_ORDER if stage in requested]


@dataclass
class GenerationResult:
    """Outcome of a successful generation run."""

    incident_id: str
    postmortem_id: str
    completed_stages: list[GenerationStage] = field(default_factory=list)
    applied_stages: list[GenerationStage] = field(default_factory=list)


@dataclass
class GenerationStatus:
    """Stage progress of the latest generation run for an incident."""

    incident_id: str
    running: bool
    stage: str | None = None
    completed_stages: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    last_error: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_state(cls, state: GenerationState, running: bool) -> "GenerationStatus":
        return cls(
            incident_id=state.incident_id,
            running=running,
            stage=state.stage,
            completed_stages=_load_stages(state.completed_stages),
            failed_stage=state.failed_stage,
            last_error=state.last_error,
            started_at=as_utc(state.started_at),
            updated_at=as_utc(state.updated_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "incidentId": self.incident_id,
            "running": self.running,
            "stage": self.stage,
            "completedStages": self.completed_stages,
            "failedStage": self.failed_stage,
            "lastError": self.last_error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


def _load_stages(raw: str | None) -> list[str]:
    try:
        value = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    return [stage for stage in value if isinstance(stage, str)] if isinstance(value, list) else []


class PostmortemGenerator:
    """Drives per-section generation and merges results into the postmortem."""

    def __init__(
        self,
        llm: BaseLLM | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        extractor: SectionExtractor | None = None,
        stage_timeout: float | None = None,
        registry: InFlightRegistry | None = None,
    ):
        """Initialize the generator.

        Args:
            llm: Completion provider (defaults to the configured provider)
            session_factory: Session factory (defaults to the app database)
            extractor: Section extractor
            stage_timeout: Seconds allowed per stage, retries included
            registry: In-flight registry guarding concurrent runs
        """
        self.llm = llm
        self.session_factory = session_factory or async_session_maker
        self.extractor = extractor or SectionExtractor()
        self.stage_timeout = stage_timeout or settings.GENERATION_STAGE_TIMEOUT
        self.registry = registry or generation_runs

    async def _get_llm(self) -> BaseLLM:
        if self.llm is None:
            self.llm = await get_llm()
        return self.llm

    async def generate(
        self,
        incident_id: str,
        actor: str | None,
        stages: Iterable[GenerationStage | str] | None = None,
    ) -> GenerationResult:
        """Generate (or regenerate) postmortem sections for an incident.

        Args:
            incident_id: Incident to write the postmortem for
            actor: Identity of the requesting user, recorded on new drafts
            stages: Subset of stages to run (all by default); always run in
                canonical order

        Returns:
            GenerationResult with the stages that ran and were written

        Raises:
            IncidentBusyError: If a run is already in flight for the incident
            IncidentNotFoundError: If the incident does not exist
            InvalidIncidentStateError: If the incident is not resolved/closed
            LLMProviderNotConfiguredError: If no completion provider is set up
            GenerationStageError: If a stage's provider call fails; stages
                completed before it stay persisted
        """
        requested = normalize_stages(stages)

        async with self.registry.claim(incident_id):
            async with self.session_factory() as session:
                context = await get_context(session, incident_id)
                if not context.is_terminal:
                    raise InvalidIncidentStateError(incident_id, context.status)

            llm = await self._get_llm()

            async with self.session_factory() as session:
                store = PostmortemStore(session)
                postmortem = await store.create_draft(incident_id, actor)
                previous = await store.get_generation_state(incident_id)
                carried = [
                    s for s in (_load_stages(previous.completed_stages) if previous else [])
                    if s not in {stage.value for stage in requested}
                ]
                await store.save_generation_state(
                    incident_id,
                    running=True,
                    stage=None,
                    completed_stages=json.dumps(carried),
                    failed_stage=None,
                    last_error=None,
                    requested_by=actor,
                    started_at=utcnow(),
                )
                await session.commit()
                postmortem_id = postmortem.id

            logger.info(
                f"Generating postmortem for incident {context.incident_number} with "
                f"{llm.provider_name}: {', '.join(s.value for s in requested)}"
            )

            result = GenerationResult(incident_id=incident_id, postmortem_id=postmortem_id)
            completed = list(carried)
            current: GenerationStage | None = None
            try:
                for current in requested:
                    await self._update_state(incident_id, stage=current.value)
                    text = await self._complete(llm, current, build_stage_prompt(current, context))
                    sections = self.extractor.extract_stage(text, current, context)

                    async with self.session_factory() as session:
                        store = PostmortemStore(session)
                        postmortem = await store.get(postmortem_id)
                        applied = await store.apply_sections(postmortem, sections, [current])
                        completed = [s for s in completed if s != current.value] + [current.value]
                        await store.save_generation_state(
                            incident_id, completed_stages=json.dumps(completed)
                        )
                        await session.commit()

                    result.completed_stages.append(current)
                    result.applied_stages.extend(applied)
                    logger.info(f"Stage {current.value} completed for incident {incident_id}")
            except LLMError as e:
                await self._record_failure(incident_id, current, str(e))
                raise GenerationStageError(current.value, e.provider, str(e)) from e
            except Exception as e:
                await self._record_failure(incident_id, current, f"{type(e).__name__}: {e}")
                raise

            await self._update_state(incident_id, running=False)
            return result

    async def _complete(self, llm: BaseLLM, stage: GenerationStage, prompt: str) -> str:
        logger.debug(f"Stage {stage.value} prompt length: {len(prompt)} characters")
        try:
            text = await asyncio.wait_for(
                llm.generate(prompt, max_tokens=settings.GENERATION_MAX_TOKENS),
                timeout=self.stage_timeout,
            )
        except asyncio.TimeoutError as e:
            raise LLMTimeoutError(
                f"Stage {stage.value} exceeded {self.stage_timeout}s",
                provider=llm.provider_name,
                timeout=self.stage_timeout,
            ) from e
        logger.debug(f"Stage {stage.value} raw completion: {text}")
        return text

    async def _update_state(self, incident_id: str, **fields: Any) -> None:
        async with self.session_factory() as session:
            await PostmortemStore(session).save_generation_state(incident_id, **fields)
            await session.commit()

    async def _record_failure(
        self, incident_id: str, stage: GenerationStage | None, message: str
    ) -> None:
        stage_name = stage.value if stage else None
        logger.error(f"Postmortem generation failed for incident {incident_id} at {stage_name}: {message}")
        await self._update_state(
            incident_id, running=False, failed_stage=stage_name, last_error=message
        )

    async def get_generation_status(self, incident_id: str) -> GenerationStatus | None:
        """Stage state of the latest run, or None if generation never ran."""
        async with self.session_factory() as session:
            state = await PostmortemStore(session).get_generation_state(incident_id)
            if state is None:
                return None
            return GenerationStatus.from_state(state, running=self.registry.is_busy(incident_id))
