"""
Session Report — append-only log of one reconciliation run.

Created when the Reconciler starts, finalized into a Summary exactly once.
The report never formats text; presentation belongs to the caller.
"""

from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from hostconverge.errors import ReportFinalizedError
from hostconverge.models.plan import Operation
from hostconverge.models.report import (
    Outcome,
    OutcomeRecord,
    RunState,
    StateTransition,
    Summary,
)
from hostconverge.models.resource import utcnow


class SessionReport:
    def __init__(
        self,
        run_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.run_id = run_id or f"run_{uuid4().hex[:12]}"
        self._clock = clock
        self.started_at = clock()
        self._outcomes: List[OutcomeRecord] = []
        self._transitions: List[StateTransition] = [
            StateTransition(state=RunState.PENDING, at=self.started_at)
        ]
        self._backups: List[str] = []
        self._summary: Optional[Summary] = None

    @property
    def finalized(self) -> bool:
        return self._summary is not None

    @property
    def state(self) -> RunState:
        return self._transitions[-1].state

    @property
    def outcomes(self) -> List[OutcomeRecord]:
        return list(self._outcomes)

    def _check_open(self) -> None:
        if self._summary is not None:
            raise ReportFinalizedError(f"Session report {self.run_id} is finalized")

    def record(
        self,
        operation: Operation,
        outcome: Outcome,
        phase: str,
        detail: Optional[str] = None,
    ) -> OutcomeRecord:
        self._check_open()
        entry = OutcomeRecord(
            key=operation.key,
            kind=operation.resource.kind.value,
            identity=operation.resource.identity,
            action=operation.action,
            outcome=outcome,
            phase=phase,
            detail=detail,
            recorded_at=self._clock(),
        )
        self._outcomes.append(entry)
        return entry

    def transition(self, state: RunState) -> None:
        self._check_open()
        self._transitions.append(StateTransition(state=state, at=self._clock()))

    def add_backup(self, path: Optional[str]) -> None:
        self._check_open()
        if path and path not in self._backups:
            self._backups.append(path)

    def finalize(self, status: RunState, error: Optional[str] = None) -> Summary:
        """Close the report. Further writes raise ReportFinalizedError."""
        self._check_open()
        if not status.terminal:
            raise ValueError(f"Cannot finalize a report in non-terminal state {status.value}")
        if self.state != status:
            self.transition(status)
        self._summary = Summary(
            run_id=self.run_id,
            status=status,
            outcomes=list(self._outcomes),
            transitions=list(self._transitions),
            backups=list(self._backups),
            error=error,
            started_at=self.started_at,
            finished_at=self._clock(),
        )
        return self._summary

    @property
    def summary(self) -> Optional[Summary]:
        return self._summary
