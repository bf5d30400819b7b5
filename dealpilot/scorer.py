"""Scoring engine: deterministic readiness and confidence scores for one opportunity.

Architecture
------------
``compute_scores`` is a pure function of (opportunity, intelligence,
stakeholders, as_of). It never performs I/O and never catches its own errors.

- **AI readiness**: four components, each clamped to 0..100, combined with
  ``READINESS_WEIGHTS``:

  - *executive mandate*: maturity stage base plus executive signals, a
    confirmed budget and timeline urgency
  - *technical capability*: internal capability base minus unresolved
    high/medium requirements
  - *use-case clarity*: numeric band for the clarity tier
  - *budget/timeline*: budget evidence plus deadline or urgency, minus a
    penalty when urgency has been flagged for two months without a deadline

- **Readouts**: categorical tiers (champion strength, decision timeline,
  budget range, complexity, competitive threat, ...)
- **Deal confidence**: six factors derived from the readouts, combined with
  ``CONFIDENCE_WEIGHTS``.

Absence of a signal yields the lowest defined value, never a null.
"""
from __future__ import annotations

import re
from datetime import datetime

from dealpilot.schemas import (
    SEVERITY_RANK,
    BudgetRange,
    Capability,
    ChampionStrength,
    Complexity,
    ConfidenceFactors,
    DecisionTimeline,
    Intelligence,
    MaturityStage,
    Opportunity,
    PainCategory,
    ReadinessBreakdown,
    Scores,
    Sentiment,
    Severity,
    Stakeholder,
    StakeholderRole,
    ThreatTier,
    UseCaseClarity,
)

# ---------------------------------------------------------------------------
# Weights and bands
# ---------------------------------------------------------------------------

READINESS_WEIGHTS = {
    "executive_mandate": 0.30,
    "technical_capability": 0.25,
    "use_case_clarity": 0.25,
    "budget_timeline": 0.20,
}

CONFIDENCE_WEIGHTS = {
    "champion_strength": 0.25,
    "budget_confirmed": 0.20,
    "technical_fit": 0.15,
    "stakeholder_engagement": 0.15,
    "competitive_position": 0.10,
    "decision_clarity": 0.15,
}

MATURITY_BASE = {
    MaturityStage.EXPLORING: 20,
    MaturityStage.PRIOR_ATTEMPTS: 40,
    MaturityStage.INTERNAL_TEAM: 60,
    MaturityStage.BOARD_MANDATE: 80,
}
EXECUTIVE_SIGNAL_BONUS = 10
BUDGET_CONFIRMED_BONUS = 15
URGENCY_BONUS = {Severity.HIGH: 10, Severity.MEDIUM: 5, Severity.LOW: 0}

CAPABILITY_BASE = {Capability.NONE: 40, Capability.LIMITED: 70, Capability.STRONG: 100}
REQUIREMENT_PENALTY = {Severity.HIGH: 15, Severity.MEDIUM: 5, Severity.LOW: 0}

CLARITY_BAND = {UseCaseClarity.EXPLORING: 25, UseCaseClarity.DEFINED: 65, UseCaseClarity.SCOPED: 100}

BUDGET_CONFIRMED_POINTS = 60
BUDGET_RANGE_POINTS = 30
BUDGET_SIGNAL_POINTS = 10
BUDGET_SIGNAL_CAP = 20
DEADLINE_POINTS = 40
URGENCY_POINTS = {Severity.HIGH: 25, Severity.MEDIUM: 15, Severity.LOW: 0}
STALE_URGENCY_DAYS = 60
STALE_URGENCY_PENALTY = 15

CHAMPION_FACTOR = {
    ChampionStrength.WEAK: 20,
    ChampionStrength.MODERATE: 50,
    ChampionStrength.STRONG: 75,
    ChampionStrength.EXECUTIVE_SPONSOR: 100,
}
TECHNICAL_FIT_FACTOR = {Complexity.LOW: 100, Complexity.MEDIUM: 65, Complexity.HIGH: 30}
COMPETITIVE_FACTOR = {ThreatTier.NONE: 100, ThreatTier.LOW: 80, ThreatTier.MEDIUM: 50, ThreatTier.HIGH: 20}
DECISION_CLARITY_FACTOR = {
    DecisionTimeline.IMMEDIATE: 100,
    DecisionTimeline.THIS_QUARTER: 80,
    DecisionTimeline.NEXT_QUARTER: 55,
    DecisionTimeline.LONG_TERM: 30,
    DecisionTimeline.UNKNOWN: 10,
}
ENGAGEMENT_PER_STAKEHOLDER = 25
# (max days since last interaction, multiplier); anything older gets RECENCY_FLOOR
RECENCY_MULTIPLIERS = ((7, 1.0), (14, 0.75), (30, 0.5))
RECENCY_FLOOR = 0.25

_EXEC_TITLES = re.compile(r"\b(?:ceo|cto|cfo|coo|cio|ciso)\b|chief|c-level", re.I)
_SENIOR_TITLES = re.compile(r"\bvp\b|vice president|director|head of", re.I)
_COMPLEX_REQUIREMENT = re.compile(r"legacy|mainframe|custom", re.I)
_MONEY = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*(k|mm|m|million|thousand)?\b", re.I)
_SUFFIX = {"k": 1_000, "thousand": 1_000, "m": 1_000_000, "mm": 1_000_000, "million": 1_000_000}
_RANGE = re.compile(
    r"(\d[\d,]*(?:\.\d+)?)(\s*(?:-|to)\s*\$?\s*)(\d[\d,]*(?:\.\d+)?)\s*(k|mm|m|million|thousand)\b", re.I)


def clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


def weighted(components: dict[str, int], weights: dict[str, float]) -> int:
    return round(sum(components[name] * w for name, w in weights.items()))


# ---------------------------------------------------------------------------
# AI readiness components
# ---------------------------------------------------------------------------


def _urgency_flagged_at(intel: Intelligence) -> datetime | None:
    stamps = [s.recorded_at for s in intel.ai_maturity.signals if s.kind == "timeline" and s.recorded_at]
    return min(stamps) if stamps else None


def executive_mandate(intel: Intelligence) -> int:
    maturity = intel.ai_maturity
    score = MATURITY_BASE[maturity.stage]
    score += EXECUTIVE_SIGNAL_BONUS * len(intel.stakeholder_intel.items)
    if intel.budget_timeline.budget_confirmed:
        score += BUDGET_CONFIRMED_BONUS
    score += URGENCY_BONUS[maturity.timeline_urgency]
    return clamp(score)


def technical_capability(intel: Intelligence) -> int:
    score = CAPABILITY_BASE[intel.ai_maturity.internal_capability]
    for req in intel.technical_reqs.items:
        if not req.resolved:
            score -= REQUIREMENT_PENALTY[req.priority]
    return clamp(score)


def use_case_band(intel: Intelligence) -> int:
    return CLARITY_BAND[intel.use_case.clarity]


def budget_timeline(intel: Intelligence, as_of: datetime) -> int:
    bt = intel.budget_timeline
    urgency = intel.ai_maturity.timeline_urgency
    if bt.budget_confirmed:
        score = BUDGET_CONFIRMED_POINTS
    elif bt.budget_range:
        score = BUDGET_RANGE_POINTS
    else:
        score = min(BUDGET_SIGNAL_CAP, BUDGET_SIGNAL_POINTS * len(bt.signals))

    if bt.decision_deadline is not None:
        score += DEADLINE_POINTS
    else:
        score += URGENCY_POINTS[urgency]
        flagged = _urgency_flagged_at(intel)
        if urgency != Severity.LOW and flagged is not None and (as_of - flagged).days > STALE_URGENCY_DAYS:
            score -= STALE_URGENCY_PENALTY
    return clamp(score)


def readiness_breakdown(intel: Intelligence, as_of: datetime) -> ReadinessBreakdown:
    return ReadinessBreakdown(
        executive_mandate=executive_mandate(intel),
        technical_capability=technical_capability(intel),
        use_case_clarity=use_case_band(intel),
        budget_timeline=budget_timeline(intel, as_of),
    )


# ---------------------------------------------------------------------------
# Readouts
# ---------------------------------------------------------------------------


def champion_strength(stakeholders: list[Stakeholder]) -> ChampionStrength:
    champions = [s for s in stakeholders if s.role == StakeholderRole.CHAMPION]
    supportive = [c for c in champions if c.sentiment == Sentiment.POSITIVE]
    if any(_EXEC_TITLES.search(c.title) for c in champions):
        return ChampionStrength.EXECUTIVE_SPONSOR
    if supportive and any(_SENIOR_TITLES.search(c.title) for c in champions):
        return ChampionStrength.STRONG
    if supportive:
        return ChampionStrength.MODERATE
    # a supportive decision-maker stands in for a missing champion
    if any(s.role == StakeholderRole.DECISION_MAKER and s.sentiment == Sentiment.POSITIVE for s in stakeholders):
        return ChampionStrength.MODERATE
    return ChampionStrength.WEAK


def use_case_clarity(intel: Intelligence) -> UseCaseClarity:
    uc = intel.use_case
    if uc.clarity != UseCaseClarity.EXPLORING:
        return uc.clarity
    if uc.primary_use_case and len(uc.signals) >= 3:
        return UseCaseClarity.DEFINED
    return UseCaseClarity.EXPLORING


def decision_timeline(intel: Intelligence, as_of: datetime) -> DecisionTimeline:
    deadline = intel.budget_timeline.decision_deadline
    if deadline is not None:
        days_until = (deadline - as_of).days
        if days_until <= 30:
            return DecisionTimeline.IMMEDIATE
        if days_until <= 90:
            return DecisionTimeline.THIS_QUARTER
        if days_until <= 180:
            return DecisionTimeline.NEXT_QUARTER
        return DecisionTimeline.LONG_TERM
    urgency = intel.ai_maturity.timeline_urgency
    if urgency == Severity.HIGH:
        return DecisionTimeline.THIS_QUARTER
    if urgency == Severity.MEDIUM:
        return DecisionTimeline.NEXT_QUARTER
    return DecisionTimeline.UNKNOWN


def parse_amounts(text: str) -> list[float]:
    """Dollar figures in *text*: ``$250k`` -> 250000, ``$1.2m`` -> 1200000."""
    amounts = []
    for number, suffix in _MONEY.findall(_spread_suffix(text)):
        value = float(number.replace(",", ""))
        amounts.append(value * _SUFFIX.get(suffix.lower(), 1) if suffix else value)
    return amounts


def _spread_suffix(text: str) -> str:
    """Give a bare lower bound its upper bound's suffix: ``1-2M`` -> ``1M-2M``."""
    def fill(match: re.Match[str]) -> str:
        low, sep, high, suffix = match.groups()
        if float(low.replace(",", "")) > float(high.replace(",", "")):
            return match.group(0)
        return f"{low}{suffix}{sep}{high}{suffix}"

    return _RANGE.sub(fill, text)


def _range_tier(amount: float) -> BudgetRange:
    if amount >= 1_000_000:
        return BudgetRange.OVER_1M
    if amount >= 500_000:
        return BudgetRange.FROM_500K
    if amount >= 100_000:
        return BudgetRange.FROM_100K
    return BudgetRange.UNDER_100K


def _dollar_amounts(text: str) -> list[float]:
    text = _spread_suffix(text)
    # with a "$" present only the figure right after each sign counts
    if "$" not in text:
        return parse_amounts(text)
    amounts = []
    for part in text.split("$")[1:]:
        found = parse_amounts(part)
        if found:
            amounts.append(found[0])
    return amounts


def budget_range(intel: Intelligence) -> BudgetRange:
    """Tier of the recorded range (by its lower bound), else of the largest signalled amount."""
    bt = intel.budget_timeline
    if bt.budget_range:
        amounts = _dollar_amounts(bt.budget_range)
        return _range_tier(min(amounts)) if amounts else BudgetRange.UNKNOWN
    amounts = [a for s in bt.signals if "$" in s.signal for a in _dollar_amounts(s.signal)]
    return _range_tier(max(amounts)) if amounts else BudgetRange.UNKNOWN


def primary_pain_point(intel: Intelligence) -> PainCategory:
    best = None
    for item in intel.pain_points.items:
        if best is None or SEVERITY_RANK[item.severity] > SEVERITY_RANK[best.severity]:
            best = item
    return best.category if best else PainCategory.OTHER


def technical_complexity(intel: Intelligence) -> Complexity:
    reqs = intel.technical_reqs.items
    high = sum(1 for r in reqs if r.priority == Severity.HIGH)
    integrations = sum(1 for r in reqs if r.category == "integration")
    if high >= 3 or integrations >= 3 or any(_COMPLEX_REQUIREMENT.search(r.requirement) for r in reqs):
        return Complexity.HIGH
    if len(reqs) <= 2 and high == 0:
        return Complexity.LOW
    return Complexity.MEDIUM


_THREAT_STEP_DOWN = {
    ThreatTier.HIGH: ThreatTier.MEDIUM,
    ThreatTier.MEDIUM: ThreatTier.LOW,
    ThreatTier.LOW: ThreatTier.NONE,
    ThreatTier.NONE: ThreatTier.NONE,
}


def competitive_threat(intel: Intelligence) -> ThreatTier:
    comp = intel.competitive
    if len(comp.competitors) >= 2:
        tier = ThreatTier.HIGH
    elif comp.competitors:
        tier = ThreatTier.MEDIUM
    elif comp.signals:
        tier = ThreatTier.LOW
    else:
        tier = ThreatTier.NONE
    # a failed incumbent weakens the field
    if comp.prior_vendor_failures:
        tier = _THREAT_STEP_DOWN[tier]
    return tier


# ---------------------------------------------------------------------------
# Deal confidence
# ---------------------------------------------------------------------------


def last_interaction(opportunity: Opportunity, stakeholders: list[Stakeholder]) -> datetime | None:
    stamps = [opportunity.last_interaction_at] + [s.last_interaction_at for s in stakeholders]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def recency_multiplier(last: datetime | None, as_of: datetime) -> float:
    if last is None:
        return RECENCY_FLOOR
    days = (as_of - last).days
    for limit, multiplier in RECENCY_MULTIPLIERS:
        if days <= limit:
            return multiplier
    return RECENCY_FLOOR


def stakeholder_engagement(opportunity: Opportunity, stakeholders: list[Stakeholder], as_of: datetime) -> int:
    distinct = len({s.id for s in stakeholders})
    breadth = min(100, ENGAGEMENT_PER_STAKEHOLDER * distinct)
    return clamp(breadth * recency_multiplier(last_interaction(opportunity, stakeholders), as_of))


def budget_factor(intel: Intelligence) -> int:
    bt = intel.budget_timeline
    if bt.budget_confirmed:
        return 100
    if bt.budget_range or bt.signals:
        return 40
    return 10


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def compute_scores(
    opportunity: Opportunity,
    intelligence: Intelligence,
    stakeholders: list[Stakeholder],
    as_of: datetime,
) -> Scores:
    """Compute the full Scores artifact. Identical inputs give identical output."""
    breakdown = readiness_breakdown(intelligence, as_of)
    champion = champion_strength(stakeholders)
    timeline = decision_timeline(intelligence, as_of)
    complexity = technical_complexity(intelligence)
    threat = competitive_threat(intelligence)

    factors = ConfidenceFactors(
        champion_strength=CHAMPION_FACTOR[champion],
        budget_confirmed=budget_factor(intelligence),
        technical_fit=TECHNICAL_FIT_FACTOR[complexity],
        stakeholder_engagement=stakeholder_engagement(opportunity, stakeholders, as_of),
        competitive_position=COMPETITIVE_FACTOR[threat],
        decision_clarity=DECISION_CLARITY_FACTOR[timeline],
    )

    return Scores(
        opportunity_id=opportunity.id,
        intelligence_version=intelligence.version,
        computed_at=as_of,
        ai_readiness=weighted(breakdown.model_dump(), READINESS_WEIGHTS),
        ai_readiness_breakdown=breakdown,
        champion_strength=champion,
        use_case_clarity=use_case_clarity(intelligence),
        decision_timeline=timeline,
        budget_range=budget_range(intelligence),
        primary_pain_point=primary_pain_point(intelligence),
        technical_complexity=complexity,
        competitive_threat=threat,
        deal_confidence=weighted(factors.model_dump(), CONFIDENCE_WEIGHTS),
        confidence_factors=factors,
    )
