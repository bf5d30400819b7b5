"""Tests for portfolio metrics, prioritization and the weekly focus digest."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest

from dealpilot.portfolio import (
    OpportunitySnapshot,
    compute_pipeline_metrics,
    is_at_risk,
    prioritize,
    stage_distribution,
    weekly_focus,
)
from dealpilot.schemas import (
    Action,
    Opportunity,
    Priority,
    Recommendations,
    RiskFlag,
    RiskKind,
    Scores,
    Stage,
    Timing,
)

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


def _snap(opp_id, stage, value, confidence, name=None, actions=(), risks=(), counterparty="Acme"):
    opp = Opportunity(
        id=opp_id, name=name or opp_id, counterparty=counterparty, stage=stage, value=value,
        created_at=T0, updated_at=T0,
    )
    return OpportunitySnapshot(
        opportunity=opp,
        scores=Scores(opportunity_id=opp_id, deal_confidence=confidence),
        recommendations=Recommendations(opportunity_id=opp_id, actions=list(actions), risks=list(risks)),
    )


def _action(score, timing=Timing.THIS_WEEK, text="Do the thing"):
    return Action(rule_id="r", action=text, reasoning="because", timing=timing, timing_hint="", score=score)


def _risk(kind=RiskKind.GOING_COLD, message="No contact in 20 days, deal may be going cold"):
    return RiskFlag(kind=kind, message=message, category="engagement")


@pytest.fixture()
def portfolio():
    return [
        _snap("A", Stage.DISCOVERY, 100_000, 75),
        _snap("B", Stage.CONTRACTING, 200_000, 85),
        _snap("C", Stage.LEAD, 50_000, 40),
        _snap("D", Stage.DISCOVERY, 150_000, 65),
    ]


class TestMetrics:
    def test_totals(self, portfolio):
        m = compute_pipeline_metrics(portfolio)
        assert m.total_value == 500_000
        assert m.weighted_value == pytest.approx(232_500)
        assert m.opportunity_count == 4
        assert m.avg_confidence == pytest.approx(66.2, abs=0.1)
        assert m.high_confidence_count == 2
        assert m.at_risk_count == 0
        assert m.by_stage["discovery"].count == 2
        assert m.by_stage["discovery"].value == 250_000

    def test_empty_portfolio(self):
        m = compute_pipeline_metrics([])
        assert m.total_value == 0
        assert m.avg_confidence == 0
        assert m.opportunity_count == 0

    def test_missing_value_counts_as_zero(self):
        m = compute_pipeline_metrics([_snap("X", Stage.LEAD, None, 50)])
        assert m.total_value == 0

    def test_at_risk(self):
        assert is_at_risk(_snap("X", Stage.LEAD, 1, 39))
        assert not is_at_risk(_snap("X", Stage.LEAD, 1, 40))
        assert is_at_risk(_snap("X", Stage.LEAD, 1, 90, risks=[_risk(), _risk(RiskKind.NO_CHAMPION)]))

    def test_stage_distribution_covers_every_stage(self, portfolio):
        buckets = stage_distribution(portfolio)
        assert [b.stage for b in buckets] == list(Stage)
        assert [b.count for b in buckets] == [1, 0, 2, 1, 0]


class TestPrioritize:
    def test_scores_and_tiers(self, portfolio):
        ranked = prioritize(portfolio)
        by_id = {p.opportunity_id: p for p in ranked}
        assert by_id["A"].priority_score == pytest.approx(63.0)
        assert by_id["B"].priority_score == pytest.approx(88.0)
        assert by_id["C"].priority_score == pytest.approx(29.5)
        assert by_id["D"].priority_score == pytest.approx(66.5)
        assert [by_id[k].priority for k in "ABCD"] == [
            Priority.MEDIUM, Priority.HIGH, Priority.LOW, Priority.MEDIUM,
        ]

    def test_order_tier_then_confidence(self, portfolio):
        assert [p.opportunity_id for p in prioritize(portfolio)] == ["B", "A", "D", "C"]

    def test_ties_broken_by_name(self):
        snaps = [_snap("2", Stage.LEAD, 10, 50, name="beta"), _snap("1", Stage.LEAD, 10, 50, name="Alpha")]
        assert [p.name for p in prioritize(snaps)] == ["Alpha", "beta"]

    def test_top_action_text(self):
        ranked = prioritize([_snap("A", Stage.LEAD, 10, 50, actions=[_action(80, text="Call the CTO")])])
        assert ranked[0].top_action == "Call the CTO"
        assert prioritize([_snap("B", Stage.LEAD, 10, 50)])[0].top_action == ""


class TestWeeklyFocus:
    def test_capped_and_sorted_by_urgency(self):
        cycle = [Timing.SOON, Timing.THIS_WEEK, Timing.IMMEDIATE]
        snaps = [
            _snap(f"opp-{i}", Stage.DISCOVERY, 100_000, 60, name=f"Deal {i}",
                  actions=[_action(80, timing=cycle[i % 3], text=f"Action {i}")])
            for i in range(10)
        ]
        focus = weekly_focus(snaps, T0)
        assert focus.generated_at == T0
        assert [a.urgency for a in focus.actions] == [Timing.IMMEDIATE] * 3 + [Timing.THIS_WEEK] * 2
        assert [a.action for a in focus.actions] == ["Action 2", "Action 5", "Action 8", "Action 1", "Action 4"]

    def test_low_scoring_actions_skipped(self):
        focus = weekly_focus([_snap("A", Stage.LEAD, 1, 50, actions=[_action(74)])], T0)
        assert focus.actions == []
        focus = weekly_focus([_snap("A", Stage.LEAD, 1, 50, actions=[_action(75)])], T0)
        assert len(focus.actions) == 1

    def test_going_cold_forces_reengagement(self):
        snap = _snap("A", Stage.DISCOVERY, 1, 50, counterparty="Globex",
                     actions=[_action(60)], risks=[_risk()])
        focus = weekly_focus([snap], T0)
        assert len(focus.actions) == 1
        forced = focus.actions[0]
        assert forced.action == "Re-engage Globex"
        assert forced.urgency == Timing.IMMEDIATE
        assert "20 days" in forced.reason

    def test_empty(self):
        assert weekly_focus([], T0).actions == []
