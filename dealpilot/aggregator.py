"""Intelligence aggregator: route pre-extracted insight strings into the seven categories.

Routing is a fixed keyword vocabulary checked in order, first match wins:

- **competitive**: competitor mentions, alternatives, prior vendors, differentiation
- **budget**: budget, pricing or dollar amounts; approval flips ``budget_confirmed``
- **timeline**: deadlines and urgency; sets ``timeline_urgency`` to high
- **executive**: C-level / VP / board mentions
- **security**: security and compliance pain points
- **volume**: volume and capacity pain points
- **integration**: technical requirements
- **use-case**: use case statements

An executive mention is also recorded as a decision-maker when another route
takes the insight, so "CEO mandated AI by Q3" raises timeline urgency and
notes the CEO.

Anything else is dropped. Every stored item carries the source communication id,
and an item already present for the same source is never added twice, so
re-applying the same insights is a no-op.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime

from dealpilot.schemas import (
    Competitor,
    Intelligence,
    IntelligencePatch,
    PainCategory,
    PainPoint,
    Severity,
    Signal,
    StakeholderIntelItem,
    TechnicalRequirement,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

ROUTES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("competitive", re.compile(
        r"competit|alternative|incumbent|evaluating|previous vendor|differentiat", re.I)),
    ("budget", re.compile(r"budget|pricing|\$|\bspend\b|signed off|\bpo\b|purchase order", re.I)),
    ("timeline", re.compile(
        r"timeline|deadline|urgen|\basap\b|\bby q[1-4]\b|this quarter|end of (?:the )?(?:month|quarter|year)", re.I)),
    ("executive", re.compile(
        r"executive|\b(?:ceo|cto|cfo|coo|cio|ciso|vp)\b|chief|vice president|\bboard\b", re.I)),
    ("security", re.compile(r"security|compliance|\bsoc ?2?\b|gdpr|hipaa|audit|regulat", re.I)),
    ("volume", re.compile(r"volume|capacity|overwhelm|tickets|backlog|\bscale\b|throughput", re.I)),
    ("integration", re.compile(
        r"integrat|\bapi\b|technical requirement|\bsso\b|legacy|mainframe|crm|shopify|salesforce", re.I)),
    ("use-case", re.compile(r"use[ -]case", re.I)),
)
_EXECUTIVE = dict(ROUTES)["executive"]

_HIGH_WORDS = re.compile(r"critical|severe|blocking|blocker|\bhigh\b|urgent", re.I)
_LOW_WORDS = re.compile(r"minor|\blow\b|nice to have", re.I)
_CONFIRMED = re.compile(r"approved|confirmed|signed off", re.I)
_AMOUNT = re.compile(
    r"\$\s?\d[\d,]*(?:\.\d+)?\s*(?:k|m|mm|million|thousand)?"
    r"(?:\s*(?:-|to)\s*\$?\s?\d[\d,]*(?:\.\d+)?\s*(?:k|m|mm|million|thousand))?\b", re.I)
_COMPLIANCE_ONLY = re.compile(r"compliance|gdpr|hipaa|audit|regulat", re.I)
_SECURITY = re.compile(r"security|\bsoc\b", re.I)
_PRIOR_VENDOR = re.compile(r"previous vendor|failed", re.I)
_DIFFERENTIATION = re.compile(r"differentiat", re.I)
_COMPETITOR_NAME = re.compile(r"competitor:\s*([^,;.]+)", re.I)
_PRIMARY_USE_CASE = re.compile(r"primary use[ -]case:\s*(.+)$", re.I)
_EXEC_TITLE = re.compile(r"\b(ceo|cto|cfo|coo|cio|ciso|vp|chief \w+|vice president|board)\b", re.I)


@dataclass
class Routed:
    """Where one insight string ended up (``route`` is None when dropped)."""
    insight: str
    route: str | None


def classify(insight: str) -> str | None:
    for route, pattern in ROUTES:
        if pattern.search(insight):
            return route
    return None


def severity_of(text: str) -> Severity:
    if _HIGH_WORDS.search(text):
        return Severity.HIGH
    if _LOW_WORDS.search(text):
        return Severity.LOW
    return Severity.MEDIUM


# ---------------------------------------------------------------------------
# Routing targets
# ---------------------------------------------------------------------------


def _add_signal(signals: list[Signal], text: str, source: str, now: datetime, kind: str | None = None) -> bool:
    if any(s.source == source and s.signal == text for s in signals):
        return False
    signals.append(Signal(signal=text, source=source, kind=kind, recorded_at=now))
    return True


def _route_pain(intel: Intelligence, text: str, source: str, now: datetime, category: PainCategory) -> bool:
    pains = intel.pain_points
    if any(p.source == source and p.description == text for p in pains.items):
        return False
    pains.items.append(PainPoint(
        category=category, description=text, severity=severity_of(text), source=source, extracted_at=now,
    ))
    pains.updated_at = now
    return True


def _route_security(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    category = PainCategory.COMPLIANCE if _COMPLIANCE_ONLY.search(text) and not _SECURITY.search(text) \
        else PainCategory.SECURITY
    return _route_pain(intel, text, source, now, category)


def _route_volume(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    return _route_pain(intel, text, source, now, PainCategory.VOLUME)


def _route_budget(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    bt = intel.budget_timeline
    changed = _add_signal(bt.signals, text, source, now, kind="budget")
    if _CONFIRMED.search(text) and not bt.budget_confirmed:
        bt.budget_confirmed = True
        changed = True
    amount = _AMOUNT.search(text)
    if amount and bt.budget_range != amount.group(0).strip():
        bt.budget_range = amount.group(0).strip()
        changed = True
    if changed:
        bt.updated_at = now
    return changed


def _route_timeline(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    maturity = intel.ai_maturity
    changed = _add_signal(maturity.signals, text, source, now, kind="timeline")
    if maturity.timeline_urgency != Severity.HIGH:
        maturity.timeline_urgency = Severity.HIGH
        changed = True
    if changed:
        maturity.updated_at = now
    return changed


def _route_executive(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    title = _EXEC_TITLE.search(text)
    name = f"Executive ({title.group(1).upper() if len(title.group(1)) <= 4 else title.group(1).title()})" \
        if title else "Executive"
    changed = False
    sh = intel.stakeholder_intel
    if not any(i.source == source and i.name == name for i in sh.items):
        sh.items.append(StakeholderIntelItem(name=name, role="decision-maker", source=source))
        sh.updated_at = now
        changed = True
    if _add_signal(intel.ai_maturity.signals, text, source, now, kind="executive"):
        intel.ai_maturity.updated_at = now
        changed = True
    return changed


def _route_integration(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    reqs = intel.technical_reqs
    if any(r.source == source and r.requirement == text for r in reqs.items):
        return False
    reqs.items.append(TechnicalRequirement(
        category="integration", requirement=text, priority=severity_of(text), source=source,
    ))
    reqs.updated_at = now
    return True


def _route_competitive(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    comp = intel.competitive
    kind = "differentiation" if _DIFFERENTIATION.search(text) else "evaluation"
    changed = _add_signal(comp.signals, text, source, now, kind=kind)
    if _PRIOR_VENDOR.search(text) and text not in comp.prior_vendor_failures:
        comp.prior_vendor_failures.append(text)
        changed = True
    match = _COMPETITOR_NAME.search(text)
    if match:
        name = match.group(1).strip()
        if name and not any(c.name.lower() == name.lower() for c in comp.competitors):
            comp.competitors.append(Competitor(name=name))
            changed = True
    if changed:
        comp.updated_at = now
    return changed


def _route_use_case(intel: Intelligence, text: str, source: str, now: datetime) -> bool:
    uc = intel.use_case
    changed = _add_signal(uc.signals, text, source, now, kind="use-case")
    match = _PRIMARY_USE_CASE.search(text)
    if match and uc.primary_use_case != match.group(1).strip():
        uc.primary_use_case = match.group(1).strip()
        changed = True
    if changed:
        uc.updated_at = now
    return changed


_HANDLERS = {
    "competitive": _route_competitive,
    "budget": _route_budget,
    "timeline": _route_timeline,
    "executive": _route_executive,
    "security": _route_security,
    "volume": _route_volume,
    "integration": _route_integration,
    "use-case": _route_use_case,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def apply_insights(
    intelligence: Intelligence, insights: list[str], source_id: str, now: datetime,
) -> tuple[Intelligence, list[Routed]]:
    """Fold *insights* from communication *source_id* into a copy of *intelligence*.

    The returned copy has ``version`` bumped when at least one item was added
    or a field changed. The input is never modified.
    """
    intel = intelligence.model_copy(deep=True)
    routed: list[Routed] = []
    changed = False
    for raw in insights:
        text = raw.strip()
        route = classify(text) if text else None
        routed.append(Routed(insight=raw, route=route))
        if route is None:
            log.debug("Dropped unrecognized insight from %s: %r", source_id, raw)
            continue
        changed |= _HANDLERS[route](intel, text, source_id, now)
        if route != "executive" and _EXECUTIVE.search(text):
            changed |= _route_executive(intel, text, source_id, now)
    if changed:
        intel.version = intelligence.version + 1
    return intel, routed


def apply_patch(intelligence: Intelligence, patch: IntelligencePatch, now: datetime) -> Intelligence:
    """Apply direct structured edits; null fields in *patch* are left alone."""
    intel = intelligence.model_copy(deep=True)
    before = intel.model_dump()

    maturity = intel.ai_maturity
    if patch.maturity_stage is not None:
        maturity.stage = patch.maturity_stage
    if patch.internal_capability is not None:
        maturity.internal_capability = patch.internal_capability
    if patch.timeline_urgency is not None:
        maturity.timeline_urgency = patch.timeline_urgency
    if patch.prior_attempts is not None:
        maturity.prior_attempts = list(patch.prior_attempts)

    uc = intel.use_case
    if patch.use_case_clarity is not None:
        uc.clarity = patch.use_case_clarity
    if patch.primary_use_case is not None:
        uc.primary_use_case = patch.primary_use_case
    if patch.secondary_use_cases is not None:
        uc.secondary_use_cases = list(patch.secondary_use_cases)

    bt = intel.budget_timeline
    if patch.budget_confirmed is not None:
        bt.budget_confirmed = patch.budget_confirmed
    if patch.budget_range is not None:
        bt.budget_range = patch.budget_range
    if patch.decision_deadline is not None:
        deadline = patch.decision_deadline
        bt.decision_deadline = deadline.replace(tzinfo=UTC) if deadline.tzinfo is None else deadline

    comp = intel.competitive
    if patch.competitors is not None:
        comp.competitors = list(patch.competitors)
    if patch.prior_vendor_failures is not None:
        comp.prior_vendor_failures = list(patch.prior_vendor_failures)

    for idx in patch.addressed_pain_points or []:
        if 0 <= idx < len(intel.pain_points.items):
            intel.pain_points.items[idx].addressed = True
    for idx in patch.resolved_requirements or []:
        if 0 <= idx < len(intel.technical_reqs.items):
            intel.technical_reqs.items[idx].resolved = True

    after = intel.model_dump()
    touched = [c for c in before if c != "version" and before[c] != after[c]]
    for category in touched:
        getattr(intel, category).updated_at = now
    if touched:
        intel.version = intelligence.version + 1
    return intel
