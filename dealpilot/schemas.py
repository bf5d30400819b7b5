"""Pydantic domain records and request/response schemas for DealPilot."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    LEAD = "lead"
    TARGET = "target"
    DISCOVERY = "discovery"
    CONTRACTING = "contracting"
    PRODUCTION = "production"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.LEAD, Stage.TARGET, Stage.DISCOVERY, Stage.CONTRACTING, Stage.PRODUCTION,
)


def next_stage(stage: Stage) -> Stage | None:
    """Return the stage after *stage*, or None at the terminal stage."""
    idx = STAGE_ORDER.index(stage)
    return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


class StakeholderRole(str, Enum):
    CHAMPION = "champion"
    DECISION_MAKER = "decision-maker"
    INFLUENCER = "influencer"
    EVALUATOR = "evaluator"
    BLOCKER = "blocker"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class CommunicationType(str, Enum):
    EMAIL = "email"
    MEETING = "meeting"
    CALL = "call"
    NOTE = "note"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class PainCategory(str, Enum):
    VOLUME = "volume"
    SECURITY = "security"
    COMPLIANCE = "compliance"
    KNOWLEDGE_BASE = "knowledge-base"
    LEGACY = "legacy"
    OTHER = "other"


class MaturityStage(str, Enum):
    EXPLORING = "exploring"
    PRIOR_ATTEMPTS = "prior-attempts"
    INTERNAL_TEAM = "internal-team"
    BOARD_MANDATE = "board-mandate"


class Capability(str, Enum):
    NONE = "none"
    LIMITED = "limited"
    STRONG = "strong"


class UseCaseClarity(str, Enum):
    EXPLORING = "exploring"
    DEFINED = "defined"
    SCOPED = "scoped"


class ChampionStrength(str, Enum):
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"
    EXECUTIVE_SPONSOR = "executive-sponsor"


class DecisionTimeline(str, Enum):
    IMMEDIATE = "immediate"
    THIS_QUARTER = "this-quarter"
    NEXT_QUARTER = "next-quarter"
    LONG_TERM = "long-term"
    UNKNOWN = "unknown"


class BudgetRange(str, Enum):
    UNDER_100K = "<100k"
    FROM_100K = "100k-500k"
    FROM_500K = "500k-1m"
    OVER_1M = "1m+"
    UNKNOWN = "unknown"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ThreatTier(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Timing(str, Enum):
    IMMEDIATE = "immediate"
    THIS_WEEK = "this-week"
    SOON = "soon"


URGENCY_ORDER = {Timing.IMMEDIATE: 0, Timing.THIS_WEEK: 1, Timing.SOON: 2}


class RiskKind(str, Enum):
    GOING_COLD = "going_cold"
    UNADDRESSED_PAIN = "unaddressed_pain"
    TIMELINE_UNKNOWN = "timeline_unknown"
    COMPETITIVE_THREAT = "competitive_threat"
    NO_CHAMPION = "no_champion"
    WEAK_CHAMPION = "weak_champion"
    DECISION_MAKERS_DISENGAGED = "decision_makers_disengaged"
    SKEPTICAL_STAKEHOLDERS = "skeptical_stakeholders"
    BUDGET_UNCONFIRMED = "budget_unconfirmed"
    LOW_CONFIDENCE_CONTRACTING = "low_confidence_contracting"
    HIGH_COMPLEXITY = "high_complexity"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ---------------------------------------------------------------------------
# Opportunity, stakeholders, communications
# ---------------------------------------------------------------------------


class StageTransition(BaseModel):
    from_stage: Stage | None = None
    to_stage: Stage
    at: datetime
    reason: str | None = None


class Opportunity(BaseModel):
    id: str
    name: str
    counterparty: str
    industry: str | None = None
    stage: Stage = Stage.LEAD
    value: float | None = None
    created_at: datetime
    updated_at: datetime
    last_interaction_at: datetime | None = None
    stage_history: list[StageTransition] = []

    def days_in_stage(self, as_of: datetime) -> int:
        started = self.stage_history[-1].at if self.stage_history else self.created_at
        return max(0, (as_of - started).days)


class Stakeholder(BaseModel):
    id: str
    name: str
    title: str = ""
    email: str | None = None
    role: StakeholderRole
    sentiment: Sentiment = Sentiment.NEUTRAL
    key_quotes: list[str] = []
    concerns: list[str] = []
    last_interaction_at: datetime | None = None


class Communication(BaseModel):
    id: str
    opportunity_id: str
    type: CommunicationType
    subject: str = ""
    content: str
    participants: list[str] = []
    timestamp: datetime
    created_at: datetime
    processed: bool = False
    insights: list[str] | None = None


# ---------------------------------------------------------------------------
# Intelligence categories
# ---------------------------------------------------------------------------


class Signal(BaseModel):
    signal: str
    source: str
    kind: str | None = None
    recorded_at: datetime | None = None


class PainPoint(BaseModel):
    category: PainCategory
    description: str
    severity: Severity = Severity.MEDIUM
    source: str
    extracted_at: datetime
    addressed: bool = False


class PainPoints(BaseModel):
    updated_at: datetime | None = None
    items: list[PainPoint] = []


class PriorAttempt(BaseModel):
    vendor: str
    outcome: str = ""


class AIMaturity(BaseModel):
    updated_at: datetime | None = None
    stage: MaturityStage = MaturityStage.EXPLORING
    prior_attempts: list[PriorAttempt] = []
    internal_capability: Capability = Capability.NONE
    timeline_urgency: Severity = Severity.LOW
    signals: list[Signal] = []


class BudgetTimeline(BaseModel):
    updated_at: datetime | None = None
    budget_confirmed: bool = False
    budget_range: str | None = None
    decision_deadline: datetime | None = None
    signals: list[Signal] = []


class StakeholderIntelItem(BaseModel):
    name: str
    role: str | None = None
    source: str


class StakeholderIntel(BaseModel):
    updated_at: datetime | None = None
    items: list[StakeholderIntelItem] = []


class TechnicalRequirement(BaseModel):
    category: str
    requirement: str
    priority: Severity = Severity.MEDIUM
    source: str
    resolved: bool = False


class TechnicalReqs(BaseModel):
    updated_at: datetime | None = None
    items: list[TechnicalRequirement] = []


class UseCase(BaseModel):
    updated_at: datetime | None = None
    clarity: UseCaseClarity = UseCaseClarity.EXPLORING
    primary_use_case: str | None = None
    secondary_use_cases: list[str] = []
    signals: list[Signal] = []


class Competitor(BaseModel):
    name: str
    status: str = "evaluating"


class Competitive(BaseModel):
    updated_at: datetime | None = None
    competitors: list[Competitor] = []
    prior_vendor_failures: list[str] = []
    signals: list[Signal] = []


INTELLIGENCE_CATEGORIES = (
    "pain_points", "ai_maturity", "budget_timeline", "stakeholder_intel",
    "technical_reqs", "use_case", "competitive",
)


class Intelligence(BaseModel):
    version: int = 0
    pain_points: PainPoints = Field(default_factory=PainPoints)
    ai_maturity: AIMaturity = Field(default_factory=AIMaturity)
    budget_timeline: BudgetTimeline = Field(default_factory=BudgetTimeline)
    stakeholder_intel: StakeholderIntel = Field(default_factory=StakeholderIntel)
    technical_reqs: TechnicalReqs = Field(default_factory=TechnicalReqs)
    use_case: UseCase = Field(default_factory=UseCase)
    competitive: Competitive = Field(default_factory=Competitive)


# ---------------------------------------------------------------------------
# Derived artifacts
# ---------------------------------------------------------------------------


class ReadinessBreakdown(BaseModel):
    executive_mandate: int = 0
    technical_capability: int = 0
    use_case_clarity: int = 0
    budget_timeline: int = 0


class ConfidenceFactors(BaseModel):
    champion_strength: int = 0
    budget_confirmed: int = 0
    technical_fit: int = 0
    stakeholder_engagement: int = 0
    competitive_position: int = 0
    decision_clarity: int = 0


class Scores(BaseModel):
    opportunity_id: str
    intelligence_version: int = 0
    computed_at: datetime | None = None
    ai_readiness: int = 0
    ai_readiness_breakdown: ReadinessBreakdown = Field(default_factory=ReadinessBreakdown)
    champion_strength: ChampionStrength = ChampionStrength.WEAK
    use_case_clarity: UseCaseClarity = UseCaseClarity.EXPLORING
    decision_timeline: DecisionTimeline = DecisionTimeline.UNKNOWN
    budget_range: BudgetRange = BudgetRange.UNKNOWN
    primary_pain_point: PainCategory = PainCategory.OTHER
    technical_complexity: Complexity = Complexity.LOW
    competitive_threat: ThreatTier = ThreatTier.NONE
    deal_confidence: int = 0
    confidence_factors: ConfidenceFactors = Field(default_factory=ConfidenceFactors)


class Action(BaseModel):
    rule_id: str
    action: str
    reasoning: str
    timing: Timing
    timing_hint: str
    score: int
    dimension: str | None = None


class RiskFlag(BaseModel):
    kind: RiskKind
    message: str
    category: str
    evidence: str = ""


class Recommendations(BaseModel):
    opportunity_id: str
    intelligence_version: int = 0
    generated_at: datetime | None = None
    stage: Stage = Stage.LEAD
    actions: list[Action] = []
    risks: list[RiskFlag] = []

    @computed_field
    @property
    def risk_flags(self) -> list[str]:
        return [r.message for r in self.risks]

    def has_risk(self, kind: RiskKind) -> bool:
        return any(r.kind == kind for r in self.risks)


class IndexEntry(BaseModel):
    id: str
    name: str
    counterparty: str
    stage: Stage
    value: float | None = None
    confidence: int | None = None
    updated_at: datetime


class OpportunityRecord(BaseModel):
    """The whole record tree of one opportunity."""
    opportunity: Opportunity
    stakeholders: list[Stakeholder] = []
    communications: list[Communication] = []
    intelligence: Intelligence = Field(default_factory=Intelligence)
    scores: Scores
    recommendations: Recommendations

    def index_entry(self) -> IndexEntry:
        opp = self.opportunity
        return IndexEntry(
            id=opp.id, name=opp.name, counterparty=opp.counterparty, stage=opp.stage,
            value=opp.value, confidence=self.scores.deal_confidence, updated_at=opp.updated_at,
        )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1)
    counterparty: str = Field(min_length=1)
    industry: str | None = None
    stage: Stage = Stage.LEAD
    value: float | None = Field(default=None, ge=0)


class OpportunityUpdate(BaseModel):
    name: str | None = None
    counterparty: str | None = None
    industry: str | None = None
    value: float | None = Field(default=None, ge=0)
    # only the next stage is accepted; anything else is an invalid transition
    stage: Stage | None = None
    reason: str | None = None


class OpportunityFilter(BaseModel):
    stage: Stage | None = None
    counterparty: str | None = None
    min_value: float | None = None
    max_value: float | None = None
    search: str | None = None


class AdvanceRequest(BaseModel):
    reason: str | None = None


class StakeholderCreate(BaseModel):
    name: str = Field(min_length=1)
    title: str = ""
    email: str | None = None
    role: StakeholderRole
    sentiment: Sentiment = Sentiment.NEUTRAL


class StakeholderUpdate(BaseModel):
    name: str | None = None
    title: str | None = None
    email: str | None = None
    role: StakeholderRole | None = None
    sentiment: Sentiment | None = None
    key_quotes: list[str] | None = None
    concerns: list[str] | None = None


class CommunicationCreate(BaseModel):
    type: CommunicationType
    subject: str = ""
    content: str = Field(min_length=1)
    participants: list[str] = []
    timestamp: datetime | None = None


class MarkProcessed(BaseModel):
    insights: list[str] = []


class IntelligencePatch(BaseModel):
    """Direct structured edits to intelligence categories (null fields ignored)."""
    maturity_stage: MaturityStage | None = None
    internal_capability: Capability | None = None
    timeline_urgency: Severity | None = None
    prior_attempts: list[PriorAttempt] | None = None
    use_case_clarity: UseCaseClarity | None = None
    primary_use_case: str | None = None
    secondary_use_cases: list[str] | None = None
    budget_confirmed: bool | None = None
    budget_range: str | None = None
    decision_deadline: datetime | None = None
    competitors: list[Competitor] | None = None
    prior_vendor_failures: list[str] | None = None
    addressed_pain_points: list[int] | None = None
    resolved_requirements: list[int] | None = None


# ---------------------------------------------------------------------------
# Views & portfolio
# ---------------------------------------------------------------------------


class OpportunityView(BaseModel):
    opportunity: Opportunity
    stakeholders: list[Stakeholder]
    scores: Scores
    recommendations: Recommendations
    intelligence: Intelligence
    recent_communications: list[Communication]


class StageBucket(BaseModel):
    stage: Stage
    count: int = 0
    value: float = 0.0


class PipelineMetrics(BaseModel):
    total_value: float
    weighted_value: float
    opportunity_count: int
    avg_confidence: float
    high_confidence_count: int
    at_risk_count: int
    by_stage: dict[str, StageBucket]


class PrioritizedOpportunity(BaseModel):
    opportunity_id: str
    name: str
    counterparty: str
    stage: Stage
    value: float | None = None
    confidence: int
    priority_score: float
    priority: Priority
    top_action: str


class AggregationFailure(BaseModel):
    opportunity_id: str
    error: str


class PortfolioSummary(BaseModel):
    metrics: PipelineMetrics
    prioritized: list[PrioritizedOpportunity]
    stage_distribution: list[StageBucket]
    failures: list[AggregationFailure] = []


class FocusAction(BaseModel):
    opportunity_id: str
    name: str
    counterparty: str
    stage: Stage
    action: str
    reason: str
    urgency: Timing


class WeeklyFocus(BaseModel):
    generated_at: datetime
    actions: list[FocusAction]
    failures: list[AggregationFailure] = []
