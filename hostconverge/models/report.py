"""Session report models — per-operation outcomes and the final run summary."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, computed_field

from hostconverge.models.plan import Action


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMMITTED, RunState.ROLLED_BACK, RunState.ABORTED)


class OutcomeRecord(BaseModel):
    """One line of the session log."""

    key: str
    kind: str
    identity: str
    action: Action
    outcome: Outcome
    phase: str                              # "validate" | "apply" | "verify" | "rollback"
    detail: Optional[str] = None
    recorded_at: datetime


class StateTransition(BaseModel):
    state: RunState
    at: datetime


class Summary(BaseModel):
    """Finalized result of one reconciliation run."""

    run_id: str
    status: RunState
    outcomes: List[OutcomeRecord] = []
    transitions: List[StateTransition] = []
    backups: List[str] = []                 # Persisted backup copies written during the run
    error: Optional[str] = None
    started_at: datetime
    finished_at: datetime

    @computed_field
    @property
    def committed(self) -> bool:
        return self.status == RunState.COMMITTED

    @computed_field
    @property
    def rolled_back(self) -> bool:
        return self.status == RunState.ROLLED_BACK

    @computed_field
    @property
    def aborted(self) -> bool:
        return self.status == RunState.ABORTED

    @property
    def exit_code(self) -> int:
        return 0 if self.committed else 1

    def outcome_for(self, key: str) -> Optional[Outcome]:
        """Latest outcome recorded for a resource key."""
        for record in reversed(self.outcomes):
            if record.key == key:
                return record.outcome
        return None

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.outcomes if r.outcome == outcome)
