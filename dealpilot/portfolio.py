"""Portfolio rollups over per-opportunity snapshots: metrics, priorities, weekly focus."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from dealpilot.schemas import (
    STAGE_ORDER,
    URGENCY_ORDER,
    FocusAction,
    Opportunity,
    PipelineMetrics,
    PrioritizedOpportunity,
    Priority,
    Recommendations,
    RiskKind,
    Scores,
    Stage,
    StageBucket,
    Timing,
    WeeklyFocus,
)

STAGE_PROBABILITY = {
    Stage.LEAD: 0.10,
    Stage.TARGET: 0.20,
    Stage.DISCOVERY: 0.35,
    Stage.CONTRACTING: 0.70,
    Stage.PRODUCTION: 0.90,
}
STAGE_WEIGHT = {
    Stage.LEAD: 20,
    Stage.TARGET: 40,
    Stage.DISCOVERY: 60,
    Stage.CONTRACTING: 80,
    Stage.PRODUCTION: 100,
}
PRIORITY_WEIGHTS = {"value": 0.30, "confidence": 0.40, "stage": 0.30}
PRIORITY_TIERS = ((70, Priority.HIGH), (40, Priority.MEDIUM))
TIER_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}

HIGH_CONFIDENCE = 75
AT_RISK_CONFIDENCE = 40
AT_RISK_FLAGS = 2
FOCUS_MIN_SCORE = 75
FOCUS_SIZE = 5


@dataclass
class OpportunitySnapshot:
    """What the portfolio needs from one opportunity."""
    opportunity: Opportunity
    scores: Scores
    recommendations: Recommendations

    @property
    def value(self) -> float:
        return self.opportunity.value or 0.0

    @property
    def confidence(self) -> int:
        return self.scores.deal_confidence


def stage_distribution(snapshots: list[OpportunitySnapshot]) -> list[StageBucket]:
    buckets = {stage: StageBucket(stage=stage) for stage in STAGE_ORDER}
    for snap in snapshots:
        bucket = buckets[snap.opportunity.stage]
        bucket.count += 1
        bucket.value += snap.value
    return [buckets[stage] for stage in STAGE_ORDER]


def is_at_risk(snap: OpportunitySnapshot) -> bool:
    return len(snap.recommendations.risks) >= AT_RISK_FLAGS or snap.confidence < AT_RISK_CONFIDENCE


def compute_pipeline_metrics(snapshots: list[OpportunitySnapshot]) -> PipelineMetrics:
    count = len(snapshots)
    total = sum(s.value for s in snapshots)
    weighted = sum(s.value * STAGE_PROBABILITY[s.opportunity.stage] for s in snapshots)
    avg_conf = sum(s.confidence for s in snapshots) / count if count else 0.0
    return PipelineMetrics(
        total_value=round(total, 2),
        weighted_value=round(weighted, 2),
        opportunity_count=count,
        avg_confidence=round(avg_conf, 1),
        high_confidence_count=sum(1 for s in snapshots if s.confidence >= HIGH_CONFIDENCE),
        at_risk_count=sum(1 for s in snapshots if is_at_risk(s)),
        by_stage={b.stage.value: b for b in stage_distribution(snapshots)},
    )


def priority_tier(score: float) -> Priority:
    for floor, tier in PRIORITY_TIERS:
        if score >= floor:
            return tier
    return Priority.LOW


def prioritize(snapshots: list[OpportunitySnapshot]) -> list[PrioritizedOpportunity]:
    """Score each opportunity on normalized value, confidence and stage, then rank."""
    max_value = max((s.value for s in snapshots), default=0.0)
    results = []
    for snap in snapshots:
        opp = snap.opportunity
        value_norm = snap.value / max_value * 100 if max_value > 0 else 0.0
        score = round(
            PRIORITY_WEIGHTS["value"] * value_norm
            + PRIORITY_WEIGHTS["confidence"] * snap.confidence
            + PRIORITY_WEIGHTS["stage"] * STAGE_WEIGHT[opp.stage],
            1,
        )
        actions = snap.recommendations.actions
        results.append(PrioritizedOpportunity(
            opportunity_id=opp.id,
            name=opp.name,
            counterparty=opp.counterparty,
            stage=opp.stage,
            value=opp.value,
            confidence=snap.confidence,
            priority_score=score,
            priority=priority_tier(score),
            top_action=actions[0].action if actions else "",
        ))
    results.sort(key=lambda p: (TIER_RANK[p.priority], -p.confidence, p.name.lower(), p.opportunity_id))
    return results


def weekly_focus(snapshots: list[OpportunitySnapshot], generated_at: datetime) -> WeeklyFocus:
    """Top qualifying action per opportunity plus a forced re-engage for each cold deal.

    Opportunities are visited in priority order, so when more than
    ``FOCUS_SIZE`` actions share an urgency the higher-priority ones survive
    the cut.
    """
    by_id = {s.opportunity.id: s for s in snapshots}
    candidates: list[FocusAction] = []
    for ranked in prioritize(snapshots):
        snap = by_id[ranked.opportunity_id]
        opp = snap.opportunity
        actions = snap.recommendations.actions
        if actions and actions[0].score >= FOCUS_MIN_SCORE:
            top = actions[0]
            candidates.append(FocusAction(
                opportunity_id=opp.id, name=opp.name, counterparty=opp.counterparty, stage=opp.stage,
                action=top.action, reason=top.reasoning, urgency=top.timing,
            ))
        for risk in snap.recommendations.risks:
            if risk.kind == RiskKind.GOING_COLD:
                candidates.append(FocusAction(
                    opportunity_id=opp.id, name=opp.name, counterparty=opp.counterparty, stage=opp.stage,
                    action=f"Re-engage {opp.counterparty}", reason=risk.message, urgency=Timing.IMMEDIATE,
                ))
    candidates.sort(key=lambda a: URGENCY_ORDER[a.urgency])
    return WeeklyFocus(generated_at=generated_at, actions=candidates[:FOCUS_SIZE])
