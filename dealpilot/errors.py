"""Error taxonomy shared by the store, the engines and the pipeline."""
from __future__ import annotations


class DealPilotError(Exception):
    """Base class for pipeline errors."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class NotFoundError(DealPilotError):
    """Unknown opportunity, stakeholder or communication id."""
    def __init__(self, kind: str, entity_id: str, opportunity_id: str | None = None):
        where = f" on opportunity {opportunity_id}" if opportunity_id and kind != "Opportunity" else ""
        super().__init__(f"{kind} not found: {entity_id}{where}")
        self.kind = kind
        self.entity_id = entity_id
        self.opportunity_id = opportunity_id


class InvalidTransitionError(DealPilotError):
    """Stage moved past the terminal stage or backward, or a one-way flag reversed."""
    def __init__(self, opportunity_id: str, current: str, attempted: str | None, detail: str = ""):
        target = attempted or "<none>"
        msg = f"Invalid transition for opportunity {opportunity_id}: {current} -> {target}"
        super().__init__(f"{msg} ({detail})" if detail else msg)
        self.opportunity_id = opportunity_id
        self.current = current
        self.attempted = attempted


class StalenessError(DealPilotError):
    """Scores were computed from an older intelligence version than the one supplied."""
    def __init__(self, opportunity_id: str, scores_version: int, intelligence_version: int):
        super().__init__(
            f"Scores for {opportunity_id} were computed from intelligence v{scores_version}, "
            f"current is v{intelligence_version}"
        )
        self.opportunity_id = opportunity_id
        self.scores_version = scores_version
        self.intelligence_version = intelligence_version


class TransientStorageError(DealPilotError):
    """Timeout or I/O failure in the store. The whole write was rolled back."""
    def __init__(self, message: str, opportunity_id: str | None = None):
        super().__init__(message, retryable=True)
        self.opportunity_id = opportunity_id


class RecomputationError(DealPilotError):
    """Internal failure while recomputing derived artifacts."""
    def __init__(self, opportunity_id: str):
        super().__init__(f"Recomputation failed for {opportunity_id}, will retry", retryable=True)
        self.opportunity_id = opportunity_id
