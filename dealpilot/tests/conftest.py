from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from dealpilot.db import create_db_engine, make_session_factory
from dealpilot.schemas import Intelligence, Opportunity, Stage, StageTransition, Stakeholder
from dealpilot.services import DealPipeline, PipelineConfig
from dealpilot.store import EntityStore

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; call it for the current time, ``advance`` to move it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(tmp_path):
    """EntityStore over a file-backed SQLite database (worker threads need real connections)."""
    engine = create_db_engine(tmp_path / "deals.db", timeout=2.0)
    yield EntityStore(make_session_factory(engine), timeout=2.0)
    engine.dispose()


@pytest.fixture()
def pipeline(store, clock):
    return DealPipeline(store, PipelineConfig(), clock)


@pytest.fixture()
def make_opportunity():
    def _make(stage: Stage = Stage.DISCOVERY, value: float | None = 100_000, name: str = "Support AI",
              counterparty: str = "Acme", created: datetime = T0, **fields) -> Opportunity:
        return Opportunity(
            id=fields.pop("id", f"opp-{name.lower().replace(' ', '-')}"),
            name=name, counterparty=counterparty, stage=stage, value=value,
            created_at=created, updated_at=created,
            stage_history=[StageTransition(to_stage=stage, at=created)],
            **fields,
        )
    return _make


@pytest.fixture()
def make_stakeholder():
    counter = iter(range(1, 1000))

    def _make(role="champion", sentiment="neutral", title="", name=None, **fields) -> Stakeholder:
        n = next(counter)
        return Stakeholder(
            id=f"sh-{n}", name=name or f"Person {n}", title=title, role=role, sentiment=sentiment, **fields,
        )
    return _make


@pytest.fixture()
def empty_intelligence():
    return Intelligence()
