"""Entity store: one record tree per opportunity plus the portfolio index.

Every write runs in a single ``BEGIN IMMEDIATE`` transaction that rewrites the
changed parts of the tree and upserts the opportunity's index entry, so the
index never drifts from the records it summarizes. Reads open one snapshot
transaction each.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from dealpilot.db import DEFAULT_TIMEOUT, session_scope
from dealpilot.errors import InvalidTransitionError, NotFoundError, TransientStorageError
from dealpilot.models import (
    CommunicationRow, IndexRow, IntelligenceRow, OpportunityRow, RecommendationRow, ScoreRow,
    StakeholderRow,
)
from dealpilot.schemas import (
    INTELLIGENCE_CATEGORIES,
    Communication,
    CommunicationCreate,
    IndexEntry,
    Intelligence,
    Opportunity,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRecord,
    OpportunityUpdate,
    Recommendations,
    Scores,
    Stage,
    StageTransition,
    Stakeholder,
    StakeholderCreate,
    StakeholderUpdate,
    next_stage,
)

log = logging.getLogger(__name__)

OPPORTUNITY_FIELDS = ("name", "counterparty", "industry", "value")
STAKEHOLDER_FIELDS = ("name", "title", "email", "role", "sentiment")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def _aware(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; everything we store is UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def as_utc(dt: datetime | None) -> datetime | None:
    """Naive input is taken as UTC; aware input is converted."""
    if dt is None:
        return None
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def _opportunity_from_row(row: OpportunityRow) -> Opportunity:
    return Opportunity(
        id=row.id, name=row.name, counterparty=row.counterparty, industry=row.industry,
        stage=Stage(row.stage), value=row.value,
        created_at=_aware(row.created_at), updated_at=_aware(row.updated_at),
        last_interaction_at=_aware(row.last_interaction_at),
        stage_history=[StageTransition.model_validate(t) for t in json_parse(row.stage_history_json, [])],
    )


def _stakeholder_from_row(row: StakeholderRow) -> Stakeholder:
    return Stakeholder(
        id=row.id, name=row.name, title=row.title, email=row.email,
        role=row.role, sentiment=row.sentiment,
        key_quotes=json_parse(row.key_quotes_json, []),
        concerns=json_parse(row.concerns_json, []),
        last_interaction_at=_aware(row.last_interaction_at),
    )


def _communication_from_row(row: CommunicationRow) -> Communication:
    return Communication(
        id=row.id, opportunity_id=row.opportunity_id, type=row.type, subject=row.subject,
        content=row.content, participants=json_parse(row.participants_json, []),
        timestamp=_aware(row.timestamp), created_at=_aware(row.created_at),
        processed=row.processed,
        insights=json_parse(row.insights_json, None) if row.insights_json is not None else None,
    )


def _intelligence_from_rows(version: int, rows: list[IntelligenceRow]) -> Intelligence:
    data: dict[str, Any] = {"version": version}
    for r in rows:
        data[r.category] = json_parse(r.payload_json, {})
    return Intelligence.model_validate(data)


def _scores_from_row(opportunity_id: str, row: ScoreRow | None) -> Scores:
    if row is None:
        return Scores(opportunity_id=opportunity_id)
    return Scores.model_validate_json(row.payload_json)


def _recommendations_from_row(opportunity_id: str, row: RecommendationRow | None) -> Recommendations:
    if row is None:
        return Recommendations(opportunity_id=opportunity_id)
    return Recommendations.model_validate_json(row.payload_json)


def _sort_communications(comms: list[Communication]) -> list[Communication]:
    return sorted(comms, key=lambda c: (c.timestamp, c.created_at), reverse=True)


def _record_from_row(row: OpportunityRow) -> OpportunityRecord:
    return OpportunityRecord(
        opportunity=_opportunity_from_row(row),
        stakeholders=[_stakeholder_from_row(s) for s in row.stakeholders],
        communications=_sort_communications([_communication_from_row(c) for c in row.communications]),
        intelligence=_intelligence_from_rows(row.intelligence_version, row.intelligence),
        scores=_scores_from_row(row.id, row.score),
        recommendations=_recommendations_from_row(row.id, row.recommendation),
    )


def _index_row(entry: IndexEntry) -> IndexRow:
    return IndexRow(
        id=entry.id, name=entry.name, counterparty=entry.counterparty, stage=entry.stage.value,
        value=entry.value, confidence=entry.confidence, updated_at=entry.updated_at,
    )


def _sync_row(session: Session, row: OpportunityRow, record: OpportunityRecord) -> None:
    """Write *record* onto *row* and its children, then upsert the index entry."""
    opp = record.opportunity
    row.name = opp.name
    row.counterparty = opp.counterparty
    row.industry = opp.industry
    row.stage = opp.stage.value
    row.value = opp.value
    row.created_at = opp.created_at
    row.updated_at = opp.updated_at
    row.last_interaction_at = opp.last_interaction_at
    row.stage_history_json = json.dumps([t.model_dump(mode="json") for t in opp.stage_history])
    row.intelligence_version = record.intelligence.version

    stakeholder_rows = {s.id: s for s in row.stakeholders}
    for pos, s in enumerate(record.stakeholders):
        srow = stakeholder_rows.get(s.id)
        if srow is None:
            srow = StakeholderRow(id=s.id, opportunity_id=opp.id)
            row.stakeholders.append(srow)
        srow.position = pos
        srow.name = s.name
        srow.title = s.title
        srow.email = s.email
        srow.role = s.role.value
        srow.sentiment = s.sentiment.value
        srow.key_quotes_json = json.dumps(s.key_quotes)
        srow.concerns_json = json.dumps(s.concerns)
        srow.last_interaction_at = s.last_interaction_at

    comm_rows = {c.id: c for c in row.communications}
    for c in record.communications:
        crow = comm_rows.get(c.id)
        if crow is None:
            crow = CommunicationRow(
                id=c.id, opportunity_id=opp.id, type=c.type.value, subject=c.subject,
                content=c.content, participants_json=json.dumps(c.participants),
                timestamp=c.timestamp, created_at=c.created_at,
            )
            row.communications.append(crow)
        crow.processed = c.processed
        crow.insights_json = json.dumps(c.insights) if c.insights is not None else None

    intel_rows = {r.category: r for r in row.intelligence}
    for category in INTELLIGENCE_CATEGORIES:
        body = getattr(record.intelligence, category)
        payload = body.model_dump_json()
        irow = intel_rows.get(category)
        if irow is None:
            irow = IntelligenceRow(opportunity_id=opp.id, category=category)
            row.intelligence.append(irow)
        if irow.payload_json != payload:
            irow.payload_json = payload
            irow.updated_at = body.updated_at

    if row.score is None:
        row.score = ScoreRow(opportunity_id=opp.id)
    row.score.intelligence_version = record.scores.intelligence_version
    row.score.deal_confidence = record.scores.deal_confidence
    row.score.payload_json = record.scores.model_dump_json()
    row.score.computed_at = record.scores.computed_at

    if row.recommendation is None:
        row.recommendation = RecommendationRow(opportunity_id=opp.id)
    row.recommendation.intelligence_version = record.recommendations.intelligence_version
    row.recommendation.payload_json = record.recommendations.model_dump_json()
    row.recommendation.generated_at = record.recommendations.generated_at

    session.merge(_index_row(record.index_entry()))


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def filter_opportunities(items: list[Opportunity], flt: OpportunityFilter | None) -> list[Opportunity]:
    if flt is None:
        return items
    if flt.stage:
        items = [o for o in items if o.stage == flt.stage]
    if flt.counterparty:
        q = flt.counterparty.lower()
        items = [o for o in items if q in o.counterparty.lower()]
    if flt.min_value is not None:
        items = [o for o in items if (o.value or 0) >= flt.min_value]
    if flt.max_value is not None:
        items = [o for o in items if (o.value or 0) <= flt.max_value]
    if flt.search:
        q = flt.search.lower()
        items = [o for o in items if q in o.name.lower() or q in o.counterparty.lower()]
    return items


# ---------------------------------------------------------------------------
# Record edits (operate on a loaded record, no I/O)
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to a record."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def build_record(data: OpportunityCreate, now: datetime) -> OpportunityRecord:
    """A fresh record tree: empty intelligence, empty scores and recommendations."""
    opp_id = new_id()
    opportunity = Opportunity(
        id=opp_id, name=data.name, counterparty=data.counterparty, industry=data.industry,
        stage=data.stage, value=data.value, created_at=now, updated_at=now,
        stage_history=[StageTransition(from_stage=None, to_stage=data.stage, at=now)],
    )
    return OpportunityRecord(
        opportunity=opportunity,
        scores=Scores(opportunity_id=opp_id),
        recommendations=Recommendations(opportunity_id=opp_id, stage=data.stage),
    )


def advance_stage(record: OpportunityRecord, reason: str | None, now: datetime) -> Opportunity:
    opp = record.opportunity
    target = next_stage(opp.stage)
    if target is None:
        raise InvalidTransitionError(opp.id, opp.stage.value, None, "already at the final stage")
    opp.stage_history.append(StageTransition(from_stage=opp.stage, to_stage=target, at=now, reason=reason))
    opp.stage = target
    opp.updated_at = now
    return opp


def update_opportunity(record: OpportunityRecord, update: OpportunityUpdate, now: datetime) -> Opportunity:
    opp = record.opportunity
    apply_updates(opp, update.model_dump(), OPPORTUNITY_FIELDS)
    if update.stage is not None and update.stage != opp.stage:
        if update.stage != next_stage(opp.stage):
            raise InvalidTransitionError(
                opp.id, opp.stage.value, update.stage.value, "stages only advance one step at a time",
            )
        advance_stage(record, update.reason, now)
    opp.updated_at = now
    return opp


def build_stakeholder(data: StakeholderCreate) -> Stakeholder:
    return Stakeholder(
        id=new_id(), name=data.name, title=data.title, email=data.email,
        role=data.role, sentiment=data.sentiment,
    )


def put_stakeholder(record: OpportunityRecord, stakeholder: Stakeholder, now: datetime) -> Stakeholder:
    record.stakeholders.append(stakeholder)
    record.opportunity.updated_at = now
    return stakeholder


def find_stakeholder(record: OpportunityRecord, stakeholder_id: str) -> Stakeholder:
    for s in record.stakeholders:
        if s.id == stakeholder_id:
            return s
    raise NotFoundError("Stakeholder", stakeholder_id, record.opportunity.id)


def update_stakeholder(
    record: OpportunityRecord, stakeholder_id: str, update: StakeholderUpdate, now: datetime,
) -> Stakeholder:
    """Replace scalar fields; quotes and concerns accumulate."""
    s = find_stakeholder(record, stakeholder_id)
    apply_updates(s, update.model_dump(), STAKEHOLDER_FIELDS)
    for quote in update.key_quotes or []:
        if quote not in s.key_quotes:
            s.key_quotes.append(quote)
    for concern in update.concerns or []:
        if concern not in s.concerns:
            s.concerns.append(concern)
    record.opportunity.updated_at = now
    return s


def build_communication(opportunity_id: str, data: CommunicationCreate, now: datetime) -> Communication:
    return Communication(
        id=new_id(), opportunity_id=opportunity_id, type=data.type, subject=data.subject,
        content=data.content, participants=list(data.participants),
        timestamp=as_utc(data.timestamp) or now, created_at=now,
    )


def put_communication(record: OpportunityRecord, comm: Communication, now: datetime) -> Communication:
    """Store the communication and move interaction timestamps forward."""
    opp = record.opportunity
    record.communications = _sort_communications([*record.communications, comm])
    if opp.last_interaction_at is None or comm.timestamp > opp.last_interaction_at:
        opp.last_interaction_at = comm.timestamp
    participants = {p.strip().lower() for p in comm.participants}
    for s in record.stakeholders:
        keys = {s.name.lower()} | ({s.email.lower()} if s.email else set())
        if keys & participants and (s.last_interaction_at is None or comm.timestamp > s.last_interaction_at):
            s.last_interaction_at = comm.timestamp
    opp.updated_at = now
    return comm


def mark_processed(
    record: OpportunityRecord, communication_id: str, insights: list[str],
) -> tuple[Communication, bool]:
    """Flip a communication to processed. Returns (communication, changed)."""
    opp_id = record.opportunity.id
    comm = next((c for c in record.communications if c.id == communication_id), None)
    if comm is None:
        raise NotFoundError("Communication", communication_id, opp_id)
    if comm.processed:
        if list(comm.insights or []) == list(insights):
            return comm, False
        raise InvalidTransitionError(
            opp_id, "processed", "processed",
            f"communication {communication_id} was already processed with different insights",
        )
    comm.processed = True
    comm.insights = list(insights)
    return comm, True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

_TREE_OPTIONS = (
    selectinload(OpportunityRow.stakeholders),
    selectinload(OpportunityRow.communications),
    selectinload(OpportunityRow.intelligence),
    selectinload(OpportunityRow.score),
    selectinload(OpportunityRow.recommendation),
)


class EntityStore:
    """Canonical storage for opportunities and everything hanging off them."""

    def __init__(self, session_factory: sessionmaker[Session], timeout: float = DEFAULT_TIMEOUT):
        self._factory = session_factory
        self.timeout = timeout

    @contextmanager
    def _transaction(self, *, write: bool = False, opportunity_id: str | None = None) -> Iterator[Session]:
        deadline = time.monotonic() + self.timeout
        try:
            with session_scope(self._factory, write=write) as session:
                yield session
                if write:
                    if time.monotonic() > deadline:
                        raise TransientStorageError(
                            f"Store write exceeded {self.timeout:.1f}s and was rolled back", opportunity_id,
                        )
                    session.commit()
        except SQLAlchemyError as exc:
            log.warning("Store operation failed for %s: %s", opportunity_id or "portfolio", exc)
            raise TransientStorageError(f"Storage failure: {exc}", opportunity_id) from exc

    @staticmethod
    def _load_row(session: Session, opportunity_id: str, tree: bool = True) -> OpportunityRow:
        query = select(OpportunityRow).where(OpportunityRow.id == opportunity_id)
        if tree:
            query = query.options(*_TREE_OPTIONS)
        row = session.execute(query).scalars().first()
        if row is None:
            raise NotFoundError("Opportunity", opportunity_id)
        return row

    # -- opportunities -----------------------------------------------------

    def get(self, opportunity_id: str) -> Opportunity | None:
        with self._transaction(opportunity_id=opportunity_id) as session:
            row = session.get(OpportunityRow, opportunity_id)
            return _opportunity_from_row(row) if row else None

    def list(self, flt: OpportunityFilter | None = None) -> list[Opportunity]:
        with self._transaction() as session:
            rows = session.execute(
                select(OpportunityRow).order_by(OpportunityRow.created_at, OpportunityRow.id)
            ).scalars().all()
            items = [_opportunity_from_row(r) for r in rows]
        return filter_opportunities(items, flt)

    def create(
        self,
        data: OpportunityCreate,
        derive: Callable[[OpportunityRecord], OpportunityRecord] | None = None,
        now: datetime | None = None,
    ) -> OpportunityRecord:
        """Create the whole record tree and its index entry in one transaction.

        ``derive`` may fill in scores and recommendations before anything is
        written.
        """
        record = build_record(data, now or utcnow())
        if derive is not None:
            record = derive(record)
        opp_id = record.opportunity.id
        with self._transaction(write=True, opportunity_id=opp_id) as session:
            row = OpportunityRow(id=opp_id)
            session.add(row)
            _sync_row(session, row, record)
        log.info("Created opportunity %s (%s)", opp_id, record.opportunity.name)
        return record

    def update(self, opportunity_id: str, update: OpportunityUpdate, now: datetime | None = None) -> Opportunity:
        record = self.mutate(opportunity_id, lambda r: _tap(r, update_opportunity(r, update, now or utcnow())))
        return record.opportunity

    def delete(self, opportunity_id: str) -> None:
        """Remove the record tree and its index entry together."""
        with self._transaction(write=True, opportunity_id=opportunity_id) as session:
            row = self._load_row(session, opportunity_id)
            session.delete(row)
            session.execute(delete(IndexRow).where(IndexRow.id == opportunity_id))
        log.info("Deleted opportunity %s", opportunity_id)

    def mutate(
        self, opportunity_id: str, fn: Callable[[OpportunityRecord], OpportunityRecord],
    ) -> OpportunityRecord:
        """Load the tree, hand it to ``fn`` and write back what it returns, atomically."""
        with self._transaction(write=True, opportunity_id=opportunity_id) as session:
            row = self._load_row(session, opportunity_id)
            record = fn(_record_from_row(row))
            _sync_row(session, row, record)
            return record

    def load_record(self, opportunity_id: str) -> OpportunityRecord:
        with self._transaction(opportunity_id=opportunity_id) as session:
            return _record_from_row(self._load_row(session, opportunity_id))

    # -- stakeholders --------------------------------------------------------

    def get_stakeholders(self, opportunity_id: str) -> list[Stakeholder]:
        return self.load_record(opportunity_id).stakeholders

    def add_stakeholder(
        self, opportunity_id: str, data: StakeholderCreate, now: datetime | None = None,
    ) -> Stakeholder:
        stakeholder = build_stakeholder(data)
        self.mutate(opportunity_id, lambda r: _tap(r, put_stakeholder(r, stakeholder, now or utcnow())))
        return stakeholder

    def update_stakeholder(
        self, opportunity_id: str, stakeholder_id: str, update: StakeholderUpdate,
        now: datetime | None = None,
    ) -> Stakeholder:
        record = self.mutate(
            opportunity_id,
            lambda r: _tap(r, update_stakeholder(r, stakeholder_id, update, now or utcnow())),
        )
        return find_stakeholder(record, stakeholder_id)

    # -- communications ------------------------------------------------------

    def get_communications(self, opportunity_id: str, limit: int | None = None) -> list[Communication]:
        comms = self.load_record(opportunity_id).communications
        return comms[:limit] if limit is not None else comms

    def add_communication(
        self, opportunity_id: str, data: CommunicationCreate, now: datetime | None = None,
    ) -> Communication:
        now = now or utcnow()
        comm = build_communication(opportunity_id, data, now)
        self.mutate(opportunity_id, lambda r: _tap(r, put_communication(r, comm, now)))
        return comm

    def mark_processed(self, opportunity_id: str, communication_id: str, insights: list[str]) -> Communication:
        record = self.mutate(opportunity_id, lambda r: _tap(r, mark_processed(r, communication_id, insights)))
        return next(c for c in record.communications if c.id == communication_id)

    # -- intelligence & derived artifacts ----------------------------------

    def get_intelligence(self, opportunity_id: str) -> Intelligence:
        with self._transaction(opportunity_id=opportunity_id) as session:
            row = self._load_row(session, opportunity_id, tree=False)
            rows = session.execute(
                select(IntelligenceRow).where(IntelligenceRow.opportunity_id == opportunity_id)
            ).scalars().all()
            return _intelligence_from_rows(row.intelligence_version, list(rows))

    def save_intelligence(self, opportunity_id: str, intelligence: Intelligence) -> None:
        self.mutate(opportunity_id, lambda r: _replace(r, intelligence=intelligence))

    def get_scores(self, opportunity_id: str) -> Scores:
        with self._transaction(opportunity_id=opportunity_id) as session:
            self._load_row(session, opportunity_id, tree=False)
            return _scores_from_row(opportunity_id, session.get(ScoreRow, opportunity_id))

    def save_scores(self, opportunity_id: str, scores: Scores) -> None:
        self.mutate(opportunity_id, lambda r: _replace(r, scores=scores))

    def get_recommendations(self, opportunity_id: str) -> Recommendations:
        with self._transaction(opportunity_id=opportunity_id) as session:
            self._load_row(session, opportunity_id, tree=False)
            return _recommendations_from_row(opportunity_id, session.get(RecommendationRow, opportunity_id))

    def save_recommendations(self, opportunity_id: str, recommendations: Recommendations) -> None:
        self.mutate(opportunity_id, lambda r: _replace(r, recommendations=recommendations))

    # -- index ---------------------------------------------------------------

    def list_index(self) -> list[IndexEntry]:
        with self._transaction() as session:
            rows = session.execute(select(IndexRow).order_by(IndexRow.name, IndexRow.id)).scalars().all()
            return [
                IndexEntry(
                    id=r.id, name=r.name, counterparty=r.counterparty, stage=Stage(r.stage),
                    value=r.value, confidence=r.confidence, updated_at=_aware(r.updated_at),
                )
                for r in rows
            ]

    def rebuild_index(self) -> int:
        """Regenerate every index entry from the record trees. Returns the entry count."""
        with self._transaction(write=True) as session:
            session.execute(delete(IndexRow))
            rows = session.execute(select(OpportunityRow).options(selectinload(OpportunityRow.score))).scalars().all()
            for row in rows:
                opp = _opportunity_from_row(row)
                session.add(IndexRow(
                    id=opp.id, name=opp.name, counterparty=opp.counterparty, stage=opp.stage.value,
                    value=opp.value, confidence=row.score.deal_confidence if row.score else None,
                    updated_at=opp.updated_at,
                ))
            count = len(rows)
        log.info("Rebuilt opportunity index (%d entries)", count)
        return count


def _tap(record: OpportunityRecord, _result: Any) -> OpportunityRecord:
    return record


def _replace(record: OpportunityRecord, **fields: Any) -> OpportunityRecord:
    for name, value in fields.items():
        setattr(record, name, value)
    return record
