"""Recommendation engine: ranked next-best-actions and structured risk flags.

Actions come from one fixed rule table. A rule applies when the opportunity is
in one of the rule's stages and either

- its confidence factor (``dimension``) is below the healthy ``threshold``;
  the action score grows with the gap: ``base + 0.5 * (threshold - factor)``
- or it is a stage playbook rule (no dimension) whose optional condition holds;
  it scores ``base``.

Candidates are deduplicated by rule id, sorted by score then table order, and
the top ``MAX_ACTIONS`` are kept. Risks are detected independently of the
actions and carry a ``RiskKind`` so consumers never parse messages.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from dealpilot.errors import StalenessError
from dealpilot.schemas import (
    Action,
    ChampionStrength,
    Complexity,
    DecisionTimeline,
    Intelligence,
    Opportunity,
    Recommendations,
    RiskFlag,
    RiskKind,
    Scores,
    Sentiment,
    Severity,
    Stage,
    Stakeholder,
    StakeholderRole,
    ThreatTier,
    Timing,
    UseCaseClarity,
)
from dealpilot.scorer import last_interaction

MAX_ACTIONS = 5
GAP_WEIGHT = 0.5
GOING_COLD_DAYS = 14
STAGE_STALL_DAYS = {Stage.TARGET: 30, Stage.DISCOVERY: 21, Stage.CONTRACTING: 7}
CONTRACTING_CONFIDENCE_FLOOR = 70

ALL_STAGES = frozenset(Stage)
OPEN_STAGES = ALL_STAGES - {Stage.PRODUCTION}


@dataclass
class RuleContext:
    opportunity: Opportunity
    scores: Scores
    intelligence: Intelligence
    stakeholders: list[Stakeholder]


@dataclass(frozen=True)
class ActionRule:
    rule_id: str
    stages: frozenset[Stage]
    dimension: str | None
    threshold: int
    base: int
    action: str
    reasoning: str
    timing: Timing
    timing_hint: str
    order: int = 0
    condition: Callable[[RuleContext], bool] | None = field(default=None, compare=False)


def _rule(rule_id, stages, dimension, threshold, base, action, reasoning, timing, hint, condition=None):
    return dict(
        rule_id=rule_id, stages=frozenset(stages), dimension=dimension, threshold=threshold, base=base,
        action=action, reasoning=reasoning, timing=timing, timing_hint=hint, condition=condition,
    )


_RULE_SPECS = [
    # -- weak-factor rules ---------------------------------------------------
    _rule("champion-enablement", [Stage.TARGET, Stage.DISCOVERY, Stage.CONTRACTING],
          "champion_strength", 75, 70,
          "Build a champion enablement plan with your internal advocate",
          "Champion strength is too low to carry the deal internally",
          Timing.THIS_WEEK, "This week"),
    _rule("identify-champion", [Stage.LEAD, Stage.TARGET], "champion_strength", 50, 65,
          "Identify potential champion based on role and responsibility",
          "Knowing who to target increases chances of engaging the right person",
          Timing.THIS_WEEK, "Before first outreach"),
    _rule("budget-confirmation", [Stage.CONTRACTING], "budget_confirmed", 100, 80,
          "Confirm budget owner and approved amount before redlines",
          "Budget is still unconfirmed while the contract is in motion",
          Timing.IMMEDIATE, "Immediately"),
    _rule("budget-qualification", [Stage.DISCOVERY], "budget_confirmed", 100, 60,
          "Qualify budget owner and approval process",
          "Unconfirmed budget stalls deals at contracting",
          Timing.THIS_WEEK, "This week"),
    _rule("technical-deep-dive", [Stage.DISCOVERY, Stage.CONTRACTING], "technical_fit", 70, 65,
          "Schedule technical deep-dive with engineering team",
          "Address integration concerns early and get technical buy-in",
          Timing.SOON, "Next week"),
    _rule("re-engage-stakeholders", OPEN_STAGES - {Stage.LEAD}, "stakeholder_engagement", 50, 60,
          "Re-engage stakeholders with a tailored progress update",
          "Stakeholder coverage or contact recency is thin",
          Timing.THIS_WEEK, "This week"),
    _rule("competitive-differentiation", [Stage.TARGET, Stage.DISCOVERY, Stage.CONTRACTING],
          "competitive_position", 60, 65,
          "Prepare a competitive differentiation brief for the buying committee",
          "Competing vendors are in the evaluation",
          Timing.THIS_WEEK, "Before next meeting"),
    _rule("mutual-timeline", [Stage.DISCOVERY, Stage.CONTRACTING], "decision_clarity", 60, 60,
          "Agree a mutual decision timeline with the buyer",
          "No clear decision date is driving the deal forward",
          Timing.THIS_WEEK, "This week"),
    # -- stage playbooks -----------------------------------------------------
    _rule("lead-research", [Stage.LEAD], None, 0, 76,
          "Research company's recent AI announcements and initiatives",
          "Understanding their AI journey enables personalized outreach",
          Timing.THIS_WEEK, "Before first outreach"),
    _rule("lead-warm-intro", [Stage.LEAD], None, 0, 75,
          "Identify mutual connections on LinkedIn",
          "Warm introductions significantly increase response rates",
          Timing.THIS_WEEK, "Before first outreach"),
    _rule("lead-outreach", [Stage.LEAD], None, 0, 71,
          "Craft personalized outreach referencing specific pain point",
          "Specific, relevant outreach captures attention and demonstrates value",
          Timing.IMMEDIATE, "Now",
          lambda ctx: bool(ctx.intelligence.pain_points.items)),
    _rule("target-brief", [Stage.TARGET], None, 0, 77,
          "Send pre-meeting brief with our positioning",
          "Primes the conversation and demonstrates preparation",
          Timing.THIS_WEEK, "Before discovery call"),
    _rule("target-case-study", [Stage.TARGET], None, 0, 82,
          "Share case study from their industry",
          "Industry-relevant proof points build credibility",
          Timing.SOON, "Before or during discovery"),
    _rule("target-discovery-questions", [Stage.TARGET], None, 0, 76,
          "Prepare discovery questions focused on pain points",
          "Structured discovery uncovers key buying signals",
          Timing.THIS_WEEK, "Before discovery call"),
    _rule("target-stack-research", [Stage.TARGET], None, 0, 68,
          "Research their current customer support stack",
          "Understanding their tech stack enables better discovery questions",
          Timing.THIS_WEEK, "Before discovery call"),
    _rule("discovery-one-pager", [Stage.DISCOVERY], None, 0, 90,
          "Create executive one-pager for senior stakeholders",
          "Gives champion ammunition to sell internally to leadership",
          Timing.THIS_WEEK, "This week"),
    _rule("discovery-integration-case-study", [Stage.DISCOVERY], None, 0, 87,
          "Send relevant integration case study",
          "Proves we've solved their exact technical challenges before",
          Timing.SOON, "Before technical call",
          lambda ctx: bool(ctx.intelligence.technical_reqs.items)),
    _rule("discovery-roi", [Stage.DISCOVERY], None, 0, 75,
          "Share ROI calculator tailored to their metrics",
          "Quantified value helps champion justify budget internally",
          Timing.SOON, "After pain points quantified",
          lambda ctx: bool(ctx.intelligence.pain_points.items)),
    _rule("discovery-prototype", [Stage.DISCOVERY], None, 0, 74,
          "Propose free custom prototype",
          "Tangible proof of value is most compelling for closing",
          Timing.SOON, "After use case scoped",
          lambda ctx: ctx.scores.use_case_clarity in (UseCaseClarity.DEFINED, UseCaseClarity.SCOPED)),
    _rule("contracting-trust-center", [Stage.CONTRACTING], None, 0, 91,
          "Address security/compliance questions with Trust Center docs",
          "Remove security objections that could block deal",
          Timing.IMMEDIATE, "Immediately"),
    _rule("contracting-reference", [Stage.CONTRACTING], None, 0, 86,
          "Offer customer reference call",
          "Peer validation builds confidence for final commitment",
          Timing.SOON, "When hesitation detected"),
    _rule("contracting-pricing", [Stage.CONTRACTING], None, 0, 79,
          "Build custom pricing scenario showing phased approach",
          "Flexible pricing options address budget constraints",
          Timing.THIS_WEEK, "This week",
          lambda ctx: ctx.intelligence.budget_timeline.budget_range is not None),
    _rule("contracting-alignment", [Stage.CONTRACTING], None, 0, 73,
          "Schedule final alignment call with all stakeholders",
          "Final alignment ensures no surprises at signature",
          Timing.THIS_WEEK, "Before contract finalization"),
    _rule("contracting-risk-doc", [Stage.CONTRACTING], None, 0, 70,
          "Create risk mitigation document for legal review",
          "Proactively addressing legal concerns accelerates contract process",
          Timing.SOON, "If legal concerns raised"),
    _rule("production-kickoff", [Stage.PRODUCTION], None, 0, 89,
          "Schedule kickoff meeting with implementation team",
          "Fast kickoff maintains momentum and sets positive tone",
          Timing.THIS_WEEK, "Within 1 week of signing"),
    _rule("production-csm", [Stage.PRODUCTION], None, 0, 88,
          "Introduce customer success manager",
          "Smooth handoff ensures customer feels supported",
          Timing.THIS_WEEK, "At contract signing"),
    _rule("production-case-study", [Stage.PRODUCTION], None, 0, 79,
          "Request case study participation",
          "Success stories enable more deals and validate champion",
          Timing.SOON, "After initial success"),
    _rule("production-expansion", [Stage.PRODUCTION], None, 0, 76,
          "Document expansion opportunities",
          "Track opportunities for future upsell",
          Timing.SOON, "Ongoing"),
    # -- every stage ---------------------------------------------------------
    _rule("stakeholder-map", ALL_STAGES, None, 0, 66,
          "Update stakeholder map with recent interactions",
          "Accurate stakeholder data improves all other actions",
          Timing.SOON, "Ongoing"),
    _rule("intelligence-review", ALL_STAGES, None, 0, 59,
          "Review and update deal intelligence",
          "Keeping intelligence current ensures accurate scoring",
          Timing.SOON, "Ongoing"),
]

RULES: tuple[ActionRule, ...] = tuple(ActionRule(order=i, **spec) for i, spec in enumerate(_RULE_SPECS))


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _evaluate(rule: ActionRule, ctx: RuleContext) -> Action | None:
    if ctx.opportunity.stage not in rule.stages:
        return None
    if rule.condition is not None and not rule.condition(ctx):
        return None
    if rule.dimension is None:
        return Action(
            rule_id=rule.rule_id, action=rule.action, reasoning=rule.reasoning,
            timing=rule.timing, timing_hint=rule.timing_hint, score=min(100, rule.base),
        )
    factor = getattr(ctx.scores.confidence_factors, rule.dimension)
    if factor >= rule.threshold:
        return None
    label = rule.dimension.replace("_", " ")
    return Action(
        rule_id=rule.rule_id,
        action=rule.action,
        reasoning=f"{rule.reasoning} ({label} at {factor}, healthy is {rule.threshold}+)",
        timing=rule.timing,
        timing_hint=rule.timing_hint,
        score=min(100, round(rule.base + GAP_WEIGHT * (rule.threshold - factor))),
        dimension=rule.dimension,
    )


def rank_actions(ctx: RuleContext, rules: tuple[ActionRule, ...] = RULES) -> list[Action]:
    order = {r.rule_id: r.order for r in rules}
    candidates: dict[str, Action] = {}
    for rule in rules:
        action = _evaluate(rule, ctx)
        if action is not None and rule.rule_id not in candidates:
            candidates[rule.rule_id] = action
    ranked = sorted(candidates.values(), key=lambda a: (-a.score, order[a.rule_id]))
    return ranked[:MAX_ACTIONS]


# ---------------------------------------------------------------------------
# Risks
# ---------------------------------------------------------------------------


def detect_risks(ctx: RuleContext, as_of: datetime) -> list[RiskFlag]:
    opp, scores, intel, stakeholders = ctx.opportunity, ctx.scores, ctx.intelligence, ctx.stakeholders
    risks: list[RiskFlag] = []

    champions = [s for s in stakeholders if s.role == StakeholderRole.CHAMPION]
    if not champions:
        risks.append(RiskFlag(
            kind=RiskKind.NO_CHAMPION, category="stakeholders",
            message="No champion identified, deal lacks internal advocate",
        ))
    elif scores.champion_strength == ChampionStrength.WEAK:
        risks.append(RiskFlag(
            kind=RiskKind.WEAK_CHAMPION, category="stakeholders",
            message="Weak champion, may not have influence to drive decision",
            evidence=", ".join(c.name for c in champions),
        ))

    decision_makers = [s for s in stakeholders if s.role == StakeholderRole.DECISION_MAKER]
    if decision_makers and not any(s.last_interaction_at for s in decision_makers):
        risks.append(RiskFlag(
            kind=RiskKind.DECISION_MAKERS_DISENGAGED, category="stakeholders",
            message="Decision-makers not yet engaged, deal may stall",
            evidence=", ".join(s.name for s in decision_makers),
        ))

    skeptics = [s for s in stakeholders if s.sentiment == Sentiment.NEGATIVE]
    if skeptics:
        names = ", ".join(s.name for s in skeptics)
        risks.append(RiskFlag(
            kind=RiskKind.SKEPTICAL_STAKEHOLDERS, category="stakeholders",
            message=f"Skeptical stakeholder(s): {names}, objections need addressing", evidence=names,
        ))

    last = last_interaction(opp, stakeholders) or opp.created_at
    idle = (as_of - last).days
    if idle > GOING_COLD_DAYS:
        risks.append(RiskFlag(
            kind=RiskKind.GOING_COLD, category="engagement",
            message=f"No contact in {idle} days, deal may be going cold",
            evidence=f"last interaction {last.date().isoformat()}",
        ))

    for pain in intel.pain_points.items:
        if pain.severity == Severity.HIGH and not pain.addressed:
            risks.append(RiskFlag(
                kind=RiskKind.UNADDRESSED_PAIN, category=f"pain_points/{pain.category.value}",
                message=f"High-severity {pain.category.value} pain not addressed: {pain.description}",
                evidence=f"source {pain.source}",
            ))

    if not intel.budget_timeline.budget_confirmed and opp.stage == Stage.DISCOVERY:
        risks.append(RiskFlag(
            kind=RiskKind.BUDGET_UNCONFIRMED, category="budget_timeline",
            message="Budget not confirmed, risk of deal stalling at contracting",
        ))

    stall_limit = STAGE_STALL_DAYS.get(opp.stage)
    days_in_stage = opp.days_in_stage(as_of)
    if scores.decision_timeline == DecisionTimeline.UNKNOWN and stall_limit is not None \
            and days_in_stage > stall_limit:
        risks.append(RiskFlag(
            kind=RiskKind.TIMELINE_UNKNOWN, category="budget_timeline",
            message=f"Timeline unknown after {days_in_stage} days in {opp.stage.value}, "
                    f"no urgency driving the deal forward",
            evidence=f"threshold {stall_limit} days",
        ))

    differentiated = any(s.kind == "differentiation" for s in intel.competitive.signals)
    if scores.competitive_threat == ThreatTier.HIGH and not differentiated:
        names = ", ".join(c.name for c in intel.competitive.competitors)
        risks.append(RiskFlag(
            kind=RiskKind.COMPETITIVE_THREAT, category="competitive",
            message=f"High competitive threat with no differentiation recorded: {names}", evidence=names,
        ))

    if opp.stage == Stage.CONTRACTING and scores.deal_confidence < CONTRACTING_CONFIDENCE_FLOOR:
        risks.append(RiskFlag(
            kind=RiskKind.LOW_CONFIDENCE_CONTRACTING, category="confidence",
            message=f"In contracting with low confidence ({scores.deal_confidence}), deal may not close",
        ))

    if scores.technical_complexity == Complexity.HIGH:
        risks.append(RiskFlag(
            kind=RiskKind.HIGH_COMPLEXITY, category="technical_reqs",
            message="High technical complexity, may require additional resources",
            evidence=f"{len(intel.technical_reqs.items)} requirements",
        ))

    return risks


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def generate_recommendations(
    opportunity: Opportunity,
    scores: Scores,
    intelligence: Intelligence,
    stakeholders: list[Stakeholder],
    as_of: datetime,
) -> Recommendations:
    """Rank actions and detect risks; refuses scores computed from other intelligence."""
    if scores.intelligence_version != intelligence.version:
        raise StalenessError(opportunity.id, scores.intelligence_version, intelligence.version)
    ctx = RuleContext(opportunity, scores, intelligence, stakeholders)
    return Recommendations(
        opportunity_id=opportunity.id,
        intelligence_version=intelligence.version,
        generated_at=as_of,
        stage=opportunity.stage,
        actions=rank_actions(ctx),
        risks=detect_risks(ctx, as_of),
    )
