"""Tests for the DealPipeline orchestrator: mutate, recompute, persist."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from dealpilot import services
from dealpilot.errors import InvalidTransitionError, NotFoundError, RecomputationError
from dealpilot.schemas import (
    CommunicationCreate,
    IntelligencePatch,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityUpdate,
    RiskKind,
    Scores,
    Stage,
    StakeholderCreate,
    StakeholderUpdate,
)
from dealpilot.services import PipelineConfig


def _deal(name="Support AI", counterparty="Acme", stage=Stage.DISCOVERY, value=100_000.0):
    return OpportunityCreate(name=name, counterparty=counterparty, stage=stage, value=value)


class TestOpportunityLifecycle:
    @pytest.mark.asyncio
    async def test_create_returns_consistent_view(self, pipeline, clock):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        assert view.opportunity.created_at == clock.now
        assert view.scores.intelligence_version == view.intelligence.version == 0
        assert view.recommendations.intelligence_version == 0
        assert view.scores.computed_at == clock.now
        assert view.recommendations.actions
        assert view.recent_communications == []

        again = await pipeline.get_opportunity_view(opp_id)
        assert again.model_dump_json() == view.model_dump_json()
        entry = pipeline.store.list_index()[0]
        assert entry.confidence == view.scores.deal_confidence

    @pytest.mark.asyncio
    async def test_advance_through_every_stage(self, pipeline, clock):
        view = await pipeline.create_opportunity(_deal(stage=Stage.LEAD))
        opp_id = view.opportunity.id
        for expected in (Stage.TARGET, Stage.DISCOVERY, Stage.CONTRACTING, Stage.PRODUCTION):
            clock.advance(days=1)
            opp = await pipeline.advance_stage(opp_id, reason="next")
            assert opp.stage == expected
        assert len(opp.stage_history) == 5
        assert opp.stage_history[-1].from_stage == Stage.CONTRACTING

        with pytest.raises(InvalidTransitionError):
            await pipeline.advance_stage(opp_id)
        recs = await pipeline.get_recommendations(opp_id)
        assert recs.stage == Stage.PRODUCTION
        assert recs.actions[0].rule_id == "production-kickoff"

    @pytest.mark.asyncio
    async def test_backward_stage_rejected(self, pipeline):
        view = await pipeline.create_opportunity(_deal(stage=Stage.DISCOVERY))
        opp_id = view.opportunity.id
        with pytest.raises(InvalidTransitionError):
            await pipeline.update_opportunity(opp_id, OpportunityUpdate(stage=Stage.LEAD, name="Renamed"))
        opp = (await pipeline.get_opportunity_view(opp_id)).opportunity
        assert opp.stage == Stage.DISCOVERY
        assert opp.name == "Support AI"

    @pytest.mark.asyncio
    async def test_update_and_list(self, pipeline):
        a = await pipeline.create_opportunity(_deal(name="Support AI"))
        await pipeline.create_opportunity(_deal(name="Voice Bot", counterparty="Globex"))
        await pipeline.update_opportunity(a.opportunity.id, OpportunityUpdate(value=300_000))
        found = await pipeline.list_opportunities(OpportunityFilter(min_value=200_000))
        assert [o.name for o in found] == ["Support AI"]

    @pytest.mark.asyncio
    async def test_delete(self, pipeline):
        view = await pipeline.create_opportunity(_deal())
        await pipeline.delete_opportunity(view.opportunity.id)
        with pytest.raises(NotFoundError):
            await pipeline.get_opportunity_view(view.opportunity.id)
        assert await pipeline.list_opportunities() == []

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.advance_stage("missing")
        with pytest.raises(NotFoundError):
            await pipeline.get_scores("missing")

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, pipeline):
        for i in range(50):
            with pytest.raises(NotFoundError):
                await pipeline.advance_stage(f"missing-{i}")
        assert len(pipeline._locks) == 0

        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        first = await pipeline.add_communication(opp_id, CommunicationCreate(type="email", content="one"))
        second = await pipeline.add_communication(opp_id, CommunicationCreate(type="email", content="two"))
        await asyncio.gather(
            pipeline.mark_processed(opp_id, first.id, ["Ticket volume doubled"]),
            pipeline.mark_processed(opp_id, second.id, ["SOC 2 security questionnaire pending"]),
            pipeline.advance_stage(opp_id),
        )
        assert len(pipeline._locks) == 0
        assert pipeline._waiters == {}

        await pipeline.delete_opportunity(opp_id)
        assert len(pipeline._locks) == 0


class TestRecomputeOnChange:
    @pytest.mark.asyncio
    async def test_stakeholder_changes_rescore(self, pipeline):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        assert view.recommendations.has_risk(RiskKind.NO_CHAMPION)

        sh = await pipeline.add_stakeholder(opp_id, StakeholderCreate(name="Jane", title="Manager", role="champion"))
        recs = await pipeline.get_recommendations(opp_id)
        assert not recs.has_risk(RiskKind.NO_CHAMPION)
        assert recs.has_risk(RiskKind.WEAK_CHAMPION)

        await pipeline.update_stakeholder(opp_id, sh.id, StakeholderUpdate(title="CTO"))
        scores = await pipeline.get_scores(opp_id)
        assert scores.champion_strength == "executive-sponsor"
        assert [s.title for s in await pipeline.list_stakeholders(opp_id)] == ["CTO"]

    @pytest.mark.asyncio
    async def test_intelligence_patch_rescores(self, pipeline):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        intel = await pipeline.update_intelligence(opp_id, IntelligencePatch(budget_confirmed=True))
        assert intel.version == 1
        scores = await pipeline.get_scores(opp_id)
        assert scores.intelligence_version == 1
        assert scores.confidence_factors.budget_confirmed == 100
        recs = await pipeline.get_recommendations(opp_id)
        assert "budget-qualification" not in [a.rule_id for a in recs.actions]
        assert not recs.has_risk(RiskKind.BUDGET_UNCONFIRMED)

    @pytest.mark.asyncio
    async def test_recompute_uses_current_time(self, pipeline, clock):
        view = await pipeline.create_opportunity(_deal())
        clock.advance(days=20)
        refreshed = await pipeline.recompute(view.opportunity.id)
        assert refreshed.scores.computed_at == clock.now
        assert refreshed.recommendations.has_risk(RiskKind.GOING_COLD)

    @pytest.mark.asyncio
    async def test_failed_recomputation_persists_nothing(self, pipeline, monkeypatch):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id

        def broken(*args, **kwargs):
            raise ValueError("bad weights")

        monkeypatch.setattr(services, "compute_scores", broken)
        with pytest.raises(RecomputationError) as exc_info:
            await pipeline.add_stakeholder(opp_id, StakeholderCreate(name="Jane", role="champion"))
        assert exc_info.value.retryable is True
        assert await pipeline.list_stakeholders(opp_id) == []


class TestCommunications:
    @pytest.mark.asyncio
    async def test_mark_processed_folds_insights(self, pipeline):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        comm = await pipeline.add_communication(opp_id, CommunicationCreate(type="meeting", content="call notes"))
        assert comm.processed is False

        done = await pipeline.mark_processed(opp_id, comm.id, [
            "Budget approved at $250k", "Ticket volume overwhelming support",
        ])
        assert done.processed is True

        current = await pipeline.get_opportunity_view(opp_id)
        assert current.intelligence.version == 1
        assert current.intelligence.budget_timeline.budget_confirmed is True
        assert current.intelligence.pain_points.items[0].source == comm.id
        assert current.scores.intelligence_version == 1
        assert current.recommendations.intelligence_version == 1

    @pytest.mark.asyncio
    async def test_concurrent_processing_keeps_both(self, pipeline):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        first = await pipeline.add_communication(opp_id, CommunicationCreate(type="email", content="one"))
        second = await pipeline.add_communication(opp_id, CommunicationCreate(type="email", content="two"))

        await asyncio.gather(
            pipeline.mark_processed(opp_id, first.id, ["Ticket volume doubled"]),
            pipeline.mark_processed(opp_id, second.id, ["SOC 2 security questionnaire pending"]),
        )
        current = await pipeline.get_opportunity_view(opp_id)
        assert current.intelligence.version == 2
        assert {p.source for p in current.intelligence.pain_points.items} == {first.id, second.id}
        assert current.scores.intelligence_version == 2
        assert current.recommendations.intelligence_version == 2

    @pytest.mark.asyncio
    async def test_replay_is_noop_and_conflict_rejected(self, pipeline):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        comm = await pipeline.add_communication(opp_id, CommunicationCreate(type="email", content="c"))
        await pipeline.mark_processed(opp_id, comm.id, ["Ticket volume doubled"])
        await pipeline.mark_processed(opp_id, comm.id, ["Ticket volume doubled"])
        assert (await pipeline.get_intelligence(opp_id)).version == 1

        with pytest.raises(InvalidTransitionError):
            await pipeline.mark_processed(opp_id, comm.id, ["Budget approved"])
        assert (await pipeline.get_intelligence(opp_id)).version == 1

    @pytest.mark.asyncio
    async def test_view_holds_ten_most_recent(self, pipeline, clock):
        view = await pipeline.create_opportunity(_deal())
        opp_id = view.opportunity.id
        for i in range(12):
            clock.advance(hours=1)
            await pipeline.add_communication(opp_id, CommunicationCreate(type="note", content=f"note {i}"))

        current = await pipeline.get_opportunity_view(opp_id)
        assert [c.content for c in current.recent_communications] == [f"note {i}" for i in range(11, 1, -1)]
        assert current.opportunity.last_interaction_at == clock.now
        assert len(await pipeline.list_communications(opp_id)) == 12
        assert len(await pipeline.list_communications(opp_id, limit=3)) == 3


class TestPortfolio:
    @pytest.mark.asyncio
    async def test_summary(self, pipeline):
        await pipeline.create_opportunity(_deal(name="Alpha", value=100_000))
        await pipeline.create_opportunity(_deal(name="Beta", stage=Stage.CONTRACTING, value=200_000))
        summary = await pipeline.get_portfolio_summary()
        assert summary.metrics.opportunity_count == 2
        assert summary.metrics.total_value == 300_000
        assert summary.metrics.weighted_value == pytest.approx(100_000 * 0.35 + 200_000 * 0.70)
        assert {p.name for p in summary.prioritized} == {"Alpha", "Beta"}
        assert summary.failures == []

    @pytest.mark.asyncio
    async def test_failure_isolated(self, pipeline):
        await pipeline.create_opportunity(_deal(name="Healthy"))
        broken = await pipeline.create_opportunity(_deal(name="Broken"))
        broken_id = broken.opportunity.id
        pipeline.store.save_scores(broken_id, Scores(opportunity_id=broken_id, intelligence_version=7))

        summary = await pipeline.get_portfolio_summary()
        assert [p.name for p in summary.prioritized] == ["Healthy"]
        assert [f.opportunity_id for f in summary.failures] == [broken_id]

        focus = await pipeline.get_weekly_focus()
        assert [f.opportunity_id for f in focus.failures] == [broken_id]

    @pytest.mark.asyncio
    async def test_weekly_focus_reengages_cold_deals(self, pipeline, clock):
        view = await pipeline.create_opportunity(_deal(counterparty="Globex"))
        clock.advance(days=20)
        await pipeline.recompute(view.opportunity.id)
        focus = await pipeline.get_weekly_focus()
        assert focus.generated_at == clock.now
        assert "Re-engage Globex" in [a.action for a in focus.actions]

    @pytest.mark.asyncio
    async def test_portfolio_refreshes_time_based_risks(self, pipeline, clock):
        view = await pipeline.create_opportunity(_deal(counterparty="Globex"))
        opp_id = view.opportunity.id
        await pipeline.add_communication(opp_id, CommunicationCreate(type="meeting", content="kickoff"))
        assert not (await pipeline.get_recommendations(opp_id)).has_risk(RiskKind.GOING_COLD)

        clock.advance(days=45)
        focus = await pipeline.get_weekly_focus()
        assert focus.generated_at == clock.now
        assert "Re-engage Globex" in [a.action for a in focus.actions]

        summary = await pipeline.get_portfolio_summary()
        assert [p.opportunity_id for p in summary.prioritized] == [opp_id]
        assert summary.failures == []

        stored = await pipeline.get_recommendations(opp_id)
        assert not stored.has_risk(RiskKind.GOING_COLD)
        assert stored.generated_at < clock.now

    @pytest.mark.asyncio
    async def test_rebuild_index(self, pipeline):
        await pipeline.create_opportunity(_deal(name="Alpha"))
        await pipeline.create_opportunity(_deal(name="Beta"))
        assert await pipeline.rebuild_index() == 2


class TestConfig:
    def test_defaults(self, monkeypatch, tmp_path):
        for name in ("DEALPILOT_STORE_TIMEOUT", "DEALPILOT_MAX_CONCURRENCY", "DEALPILOT_RECENT_COMMUNICATIONS"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DEALPILOT_DB", str(tmp_path / "x.db"))
        config = PipelineConfig.from_env()
        assert config.db_path == Path(tmp_path / "x.db")
        assert config.store_timeout == 5.0
        assert config.max_concurrency == 8
        assert config.recent_communications == 10

    def test_overrides_and_bad_values(self, monkeypatch):
        monkeypatch.setenv("DEALPILOT_STORE_TIMEOUT", "2.5")
        monkeypatch.setenv("DEALPILOT_MAX_CONCURRENCY", "lots")
        monkeypatch.setenv("DEALPILOT_RECENT_COMMUNICATIONS", "-3")
        config = PipelineConfig.from_env()
        assert config.store_timeout == 2.5
        assert config.max_concurrency == 8
        assert config.recent_communications == 10
