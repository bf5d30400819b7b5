"""Pipeline orchestrator shared by the HTTP API and Python callers.

``DealPipeline`` is the only component with side effects. Every mutating call
runs one ``EntityStore.mutate`` under the opportunity's lock: apply the edit,
fold insights into intelligence, rescore, re-recommend and persist the whole
tree. Callers therefore never see scores derived from older intelligence.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dealpilot import store as records
from dealpilot.aggregator import apply_insights, apply_patch
from dealpilot.db import DEFAULT_TIMEOUT, create_db_engine, default_db_path, make_session_factory
from dealpilot.errors import RecomputationError, StalenessError
from dealpilot.portfolio import (
    OpportunitySnapshot,
    compute_pipeline_metrics,
    prioritize,
    stage_distribution,
    weekly_focus,
)
from dealpilot.recommender import generate_recommendations
from dealpilot.schemas import (
    AggregationFailure,
    Communication,
    CommunicationCreate,
    Intelligence,
    IntelligencePatch,
    Opportunity,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRecord,
    OpportunityUpdate,
    OpportunityView,
    PortfolioSummary,
    Recommendations,
    Scores,
    Stakeholder,
    StakeholderCreate,
    StakeholderUpdate,
    WeeklyFocus,
)
from dealpilot.scorer import compute_scores
from dealpilot.store import EntityStore

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_RECENT_COMMUNICATIONS = 10


def _env_number(name: str, default: float, cast: Callable[[str], Any]) -> Any:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value <= 0:
        log.warning("Ignoring non-positive %s=%r, using %s", name, raw, default)
        return default
    return value


@dataclass
class PipelineConfig:
    db_path: Path | None = None
    store_timeout: float = DEFAULT_TIMEOUT
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    recent_communications: int = DEFAULT_RECENT_COMMUNICATIONS

    @classmethod
    def from_env(cls) -> PipelineConfig:
        return cls(
            db_path=default_db_path(),
            store_timeout=_env_number("DEALPILOT_STORE_TIMEOUT", DEFAULT_TIMEOUT, float),
            max_concurrency=_env_number("DEALPILOT_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY, int),
            recent_communications=_env_number(
                "DEALPILOT_RECENT_COMMUNICATIONS", DEFAULT_RECENT_COMMUNICATIONS, int,
            ),
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class DealPipeline:
    def __init__(
        self,
        store: EntityStore,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.config = config or PipelineConfig()
        self._clock = clock or _utcnow
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: PipelineConfig) -> DealPipeline:
        engine = create_db_engine(config.db_path, timeout=config.store_timeout)
        store = EntityStore(make_session_factory(engine), timeout=config.store_timeout)
        return cls(store, config)

    @asynccontextmanager
    async def _locked(self, opportunity_id: str) -> AsyncIterator[None]:
        """Hold the opportunity's lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(opportunity_id, asyncio.Lock())
        self._waiters[opportunity_id] = self._waiters.get(opportunity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[opportunity_id] -= 1
            if not self._waiters[opportunity_id]:
                del self._waiters[opportunity_id]
                del self._locks[opportunity_id]

    def _derive(self, record: OpportunityRecord, now: datetime) -> OpportunityRecord:
        """Recompute scores and recommendations for *record* in place."""
        opp = record.opportunity
        try:
            scores = compute_scores(opp, record.intelligence, record.stakeholders, now)
            recs = generate_recommendations(opp, scores, record.intelligence, record.stakeholders, now)
        except Exception as exc:
            log.exception("Recomputation failed for %s", opp.id)
            raise RecomputationError(opp.id) from exc
        record.scores = scores
        record.recommendations = recs
        return record

    async def _mutate(
        self, opportunity_id: str, edit: Callable[[OpportunityRecord, datetime], Any],
    ) -> OpportunityRecord:
        async with self._locked(opportunity_id):
            now = self._clock()

            def apply(record: OpportunityRecord) -> OpportunityRecord:
                edit(record, now)
                return self._derive(record, now)

            return await asyncio.to_thread(self.store.mutate, opportunity_id, apply)

    def _view(self, record: OpportunityRecord) -> OpportunityView:
        return OpportunityView(
            opportunity=record.opportunity,
            stakeholders=record.stakeholders,
            scores=record.scores,
            recommendations=record.recommendations,
            intelligence=record.intelligence,
            recent_communications=record.communications[: self.config.recent_communications],
        )

    # -- opportunities -----------------------------------------------------

    async def create_opportunity(self, data: OpportunityCreate) -> OpportunityView:
        now = self._clock()
        record = await asyncio.to_thread(self.store.create, data, lambda r: self._derive(r, now), now)
        return self._view(record)

    async def update_opportunity(self, opportunity_id: str, update: OpportunityUpdate) -> Opportunity:
        record = await self._mutate(opportunity_id, lambda r, now: records.update_opportunity(r, update, now))
        return record.opportunity

    async def advance_stage(self, opportunity_id: str, reason: str | None = None) -> Opportunity:
        record = await self._mutate(opportunity_id, lambda r, now: records.advance_stage(r, reason, now))
        log.info("Advanced %s to %s", opportunity_id, record.opportunity.stage.value)
        return record.opportunity

    async def delete_opportunity(self, opportunity_id: str) -> None:
        async with self._locked(opportunity_id):
            await asyncio.to_thread(self.store.delete, opportunity_id)

    async def list_opportunities(self, flt: OpportunityFilter | None = None) -> list[Opportunity]:
        return await asyncio.to_thread(self.store.list, flt)

    async def get_opportunity_view(self, opportunity_id: str) -> OpportunityView:
        record = await asyncio.to_thread(self.store.load_record, opportunity_id)
        return self._view(record)

    # -- stakeholders --------------------------------------------------------

    async def add_stakeholder(self, opportunity_id: str, data: StakeholderCreate) -> Stakeholder:
        stakeholder = records.build_stakeholder(data)
        await self._mutate(opportunity_id, lambda r, now: records.put_stakeholder(r, stakeholder, now))
        return stakeholder

    async def update_stakeholder(
        self, opportunity_id: str, stakeholder_id: str, update: StakeholderUpdate,
    ) -> Stakeholder:
        record = await self._mutate(
            opportunity_id, lambda r, now: records.update_stakeholder(r, stakeholder_id, update, now),
        )
        return records.find_stakeholder(record, stakeholder_id)

    async def list_stakeholders(self, opportunity_id: str) -> list[Stakeholder]:
        return await asyncio.to_thread(self.store.get_stakeholders, opportunity_id)

    # -- communications ------------------------------------------------------

    async def add_communication(self, opportunity_id: str, data: CommunicationCreate) -> Communication:
        created: list[Communication] = []

        def edit(record: OpportunityRecord, now: datetime) -> None:
            comm = records.build_communication(opportunity_id, data, now)
            created.append(records.put_communication(record, comm, now))

        await self._mutate(opportunity_id, edit)
        return created[0]

    async def mark_processed(
        self, opportunity_id: str, communication_id: str, insights: list[str],
    ) -> Communication:
        """Record extracted insights for a communication and fold them into intelligence.

        Replaying the same insights for an already processed communication is
        a no-op; different insights are an invalid transition.
        """
        def edit(record: OpportunityRecord, now: datetime) -> None:
            _, changed = records.mark_processed(record, communication_id, insights)
            if not changed:
                return
            record.intelligence, routed = apply_insights(record.intelligence, insights, communication_id, now)
            kept = sum(1 for r in routed if r.route)
            log.info(
                "Processed communication %s on %s: %d of %d insights routed",
                communication_id, opportunity_id, kept, len(routed),
            )

        record = await self._mutate(opportunity_id, edit)
        return next(c for c in record.communications if c.id == communication_id)

    async def list_communications(self, opportunity_id: str, limit: int | None = None) -> list[Communication]:
        return await asyncio.to_thread(self.store.get_communications, opportunity_id, limit)

    # -- intelligence & derived artifacts ----------------------------------

    async def update_intelligence(self, opportunity_id: str, patch: IntelligencePatch) -> Intelligence:
        def edit(record: OpportunityRecord, now: datetime) -> None:
            record.intelligence = apply_patch(record.intelligence, patch, now)

        record = await self._mutate(opportunity_id, edit)
        return record.intelligence

    async def recompute(self, opportunity_id: str) -> OpportunityView:
        record = await self._mutate(opportunity_id, lambda r, now: None)
        return self._view(record)

    async def get_intelligence(self, opportunity_id: str) -> Intelligence:
        return await asyncio.to_thread(self.store.get_intelligence, opportunity_id)

    async def get_scores(self, opportunity_id: str) -> Scores:
        return await asyncio.to_thread(self.store.get_scores, opportunity_id)

    async def get_recommendations(self, opportunity_id: str) -> Recommendations:
        return await asyncio.to_thread(self.store.get_recommendations, opportunity_id)

    # -- portfolio -----------------------------------------------------------

    async def _load_snapshots(
        self, now: datetime,
    ) -> tuple[list[OpportunitySnapshot], list[AggregationFailure]]:
        """Load every indexed opportunity with bounded concurrency, isolating failures.

        Scores and recommendations are re-derived at *now*, so going-cold and
        other time-based risks reflect the present rather than the last write.
        Nothing is written back.
        """
        entries = await asyncio.to_thread(self.store.list_index)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def load(opportunity_id: str) -> OpportunitySnapshot | AggregationFailure:
            async with semaphore:
                try:
                    record = await asyncio.to_thread(self.store.load_record, opportunity_id)
                    if record.scores.intelligence_version != record.intelligence.version:
                        raise StalenessError(
                            opportunity_id, record.scores.intelligence_version, record.intelligence.version,
                        )
                    self._derive(record, now)
                except Exception as exc:
                    log.warning("Excluding %s from portfolio rollup: %s", opportunity_id, exc)
                    return AggregationFailure(opportunity_id=opportunity_id, error=str(exc))
            return OpportunitySnapshot(record.opportunity, record.scores, record.recommendations)

        results = await asyncio.gather(*(load(e.id) for e in entries))
        snapshots = [r for r in results if isinstance(r, OpportunitySnapshot)]
        failures = [r for r in results if isinstance(r, AggregationFailure)]
        return snapshots, failures

    async def get_portfolio_summary(self) -> PortfolioSummary:
        snapshots, failures = await self._load_snapshots(self._clock())
        return PortfolioSummary(
            metrics=compute_pipeline_metrics(snapshots),
            prioritized=prioritize(snapshots),
            stage_distribution=stage_distribution(snapshots),
            failures=failures,
        )

    async def get_weekly_focus(self) -> WeeklyFocus:
        now = self._clock()
        snapshots, failures = await self._load_snapshots(now)
        focus = weekly_focus(snapshots, now)
        focus.failures = failures
        return focus

    async def rebuild_index(self) -> int:
        return await asyncio.to_thread(self.store.rebuild_index)
