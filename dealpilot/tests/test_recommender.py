"""Tests for next-best-action ranking and risk detection."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from dealpilot.errors import StalenessError
from dealpilot.recommender import MAX_ACTIONS, RULES, generate_recommendations
from dealpilot.schemas import (
    Competitive,
    Competitor,
    Intelligence,
    PainCategory,
    PainPoint,
    PainPoints,
    RiskKind,
    Severity,
    Signal,
    Stage,
    Timing,
)
from dealpilot.scorer import compute_scores

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


def _recommend(opp, intel=None, people=None, as_of=T0):
    intel = intel or Intelligence()
    people = people or []
    scores = compute_scores(opp, intel, people, as_of)
    return generate_recommendations(opp, scores, intel, people, as_of)


class TestRuleTable:
    def test_rule_ids_unique(self):
        ids = [r.rule_id for r in RULES]
        assert len(ids) == len(set(ids))

    def test_every_stage_has_rules(self):
        for stage in Stage:
            assert any(stage in r.stages for r in RULES)


class TestActions:
    def test_discovery_ranking(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.DISCOVERY))
        assert [a.rule_id for a in recs.actions] == [
            "budget-qualification",
            "champion-enablement",
            "discovery-one-pager",
            "re-engage-stakeholders",
            "mutual-timeline",
        ]
        assert [a.score for a in recs.actions] == [100, 98, 90, 85, 85]

    def test_reasoning_names_the_factor(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.DISCOVERY))
        champion = next(a for a in recs.actions if a.rule_id == "champion-enablement")
        assert champion.dimension == "champion_strength"
        assert "champion strength at 20" in champion.reasoning

    def test_contracting_budget_is_immediate(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.CONTRACTING))
        top = recs.actions[0]
        assert top.rule_id == "budget-confirmation"
        assert top.timing == Timing.IMMEDIATE
        assert top.timing_hint == "Immediately"

    def test_healthy_factor_does_not_fire(self, make_opportunity, make_stakeholder):
        people = [make_stakeholder(title="CTO", sentiment="positive")]
        recs = _recommend(make_opportunity(stage=Stage.DISCOVERY), people=people)
        assert "champion-enablement" not in [a.rule_id for a in recs.actions]

    def test_capped_and_deduplicated(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.CONTRACTING))
        ids = [a.rule_id for a in recs.actions]
        assert len(ids) == MAX_ACTIONS
        assert len(set(ids)) == len(ids)
        assert all(0 <= a.score <= 100 for a in recs.actions)

    def test_production_playbook(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.PRODUCTION))
        assert recs.actions[0].rule_id == "production-kickoff"
        assert "re-engage-stakeholders" not in [a.rule_id for a in recs.actions]

    def test_conditional_playbook_rule(self, make_opportunity):
        pain = PainPoint(category=PainCategory.VOLUME, description="ticket volume", source="c", extracted_at=T0)
        without = _recommend(make_opportunity(stage=Stage.LEAD))
        with_pain = _recommend(make_opportunity(stage=Stage.LEAD),
                               intel=Intelligence(pain_points=PainPoints(items=[pain])))
        assert "lead-outreach" not in [a.rule_id for a in without.actions]
        assert "lead-outreach" in [a.rule_id for a in with_pain.actions]

    def test_deterministic(self, make_opportunity):
        opp = make_opportunity(stage=Stage.TARGET)
        assert _recommend(opp).model_dump_json() == _recommend(opp).model_dump_json()


class TestStaleness:
    def test_refuses_scores_from_other_intelligence_version(self, make_opportunity):
        opp = make_opportunity()
        scores = compute_scores(opp, Intelligence(version=1), [], T0)
        with pytest.raises(StalenessError) as exc_info:
            generate_recommendations(opp, scores, Intelligence(version=2), [], T0)
        assert exc_info.value.scores_version == 1
        assert exc_info.value.intelligence_version == 2


class TestRisks:
    def _kinds(self, recs):
        return [r.kind for r in recs.risks]

    def test_fresh_discovery_deal(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.DISCOVERY))
        assert self._kinds(recs) == [RiskKind.NO_CHAMPION, RiskKind.BUDGET_UNCONFIRMED]
        assert recs.has_risk(RiskKind.NO_CHAMPION)
        assert recs.risk_flags == [r.message for r in recs.risks]

    def test_going_cold_measured_from_creation(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.LEAD), as_of=T0 + timedelta(days=20))
        cold = [r for r in recs.risks if r.kind == RiskKind.GOING_COLD]
        assert len(cold) == 1
        assert "20 days" in cold[0].message

    def test_recent_contact_not_cold(self, make_opportunity):
        opp = make_opportunity(stage=Stage.LEAD, last_interaction_at=T0 + timedelta(days=18))
        recs = _recommend(opp, as_of=T0 + timedelta(days=20))
        assert not recs.has_risk(RiskKind.GOING_COLD)

    def test_timeline_unknown_after_stage_threshold(self, make_opportunity):
        opp = make_opportunity(stage=Stage.DISCOVERY)
        assert not _recommend(opp, as_of=T0 + timedelta(days=21)).has_risk(RiskKind.TIMELINE_UNKNOWN)
        assert _recommend(opp, as_of=T0 + timedelta(days=22)).has_risk(RiskKind.TIMELINE_UNKNOWN)

    def test_unaddressed_high_pain(self, make_opportunity):
        pain = PainPoint(category=PainCategory.SECURITY, description="SOC 2 gap", severity=Severity.HIGH,
                         source="comm-9", extracted_at=T0)
        recs = _recommend(make_opportunity(), intel=Intelligence(pain_points=PainPoints(items=[pain])))
        flag = next(r for r in recs.risks if r.kind == RiskKind.UNADDRESSED_PAIN)
        assert flag.category == "pain_points/security"
        assert "SOC 2 gap" in flag.message
        assert flag.evidence == "source comm-9"

        addressed = pain.model_copy(update={"addressed": True})
        recs = _recommend(make_opportunity(), intel=Intelligence(pain_points=PainPoints(items=[addressed])))
        assert not recs.has_risk(RiskKind.UNADDRESSED_PAIN)

    def test_competitive_threat_needs_no_differentiation(self, make_opportunity):
        two = [Competitor(name="Zendesk"), Competitor(name="Intercom")]
        threatened = Intelligence(competitive=Competitive(competitors=two))
        assert _recommend(make_opportunity(), intel=threatened).has_risk(RiskKind.COMPETITIVE_THREAT)

        differentiated = Intelligence(competitive=Competitive(
            competitors=two, signals=[Signal(signal="our accuracy wins", source="c", kind="differentiation")],
        ))
        assert not _recommend(make_opportunity(), intel=differentiated).has_risk(RiskKind.COMPETITIVE_THREAT)

    def test_stakeholder_risks(self, make_opportunity, make_stakeholder):
        people = [
            make_stakeholder(role="champion", title="Analyst"),
            make_stakeholder(role="decision-maker", sentiment="negative", name="Dana"),
        ]
        kinds = self._kinds(_recommend(make_opportunity(stage=Stage.TARGET), people=people))
        assert RiskKind.WEAK_CHAMPION in kinds
        assert RiskKind.DECISION_MAKERS_DISENGAGED in kinds
        assert RiskKind.SKEPTICAL_STAKEHOLDERS in kinds

    def test_low_confidence_contracting(self, make_opportunity):
        recs = _recommend(make_opportunity(stage=Stage.CONTRACTING))
        assert recs.has_risk(RiskKind.LOW_CONFIDENCE_CONTRACTING)
