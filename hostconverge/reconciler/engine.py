"""
Reconciler — executes a Plan as a state machine.

States:
  PENDING → VALIDATING → APPLYING → VERIFYING → (COMMITTED | ROLLED_BACK)
  any non-terminal state → ABORTED

Behavioral Contract:
- Holds the host lock for the whole run; a concurrent run fails fast
- Every sensitive change is validated before the host is touched
- Operations run strictly in Plan order; noops never reach an adapter
- A sensitive apply failure rolls that change back immediately
- A failed sensitive restart also rolls back the changes that notified it
- A failed verification rolls back every sensitive change in reverse order
- No retries; the caller always gets a Summary unless restoration itself fails
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

from hostconverge.adapters.base import AdapterRegistry
from hostconverge.errors import (
    ApplyError,
    FatalRollbackError,
    HostConvergeError,
    PlanConflictError,
    ProbeError,
)
from hostconverge.models.desired import DesiredConfig
from hostconverge.models.plan import AppliedChange, Operation, Plan
from hostconverge.models.reconciler import ReconcilerConfig
from hostconverge.models.report import Outcome, RunState, Summary
from hostconverge.models.resource import ResourceKind, utcnow
from hostconverge.plan.builder import PlanBuilder
from hostconverge.probe.snapshot import Prober
from hostconverge.reconciler.lock import HostLock
from hostconverge.reconciler.window import in_maintenance_window
from hostconverge.report.session import SessionReport
from hostconverge.report.store import ReportStore

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(
        self,
        registry: AdapterRegistry,
        config: Optional[ReconcilerConfig] = None,
        report_store: Optional[ReportStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.config = config or ReconcilerConfig()
        self.report_store = report_store
        self._clock = clock
        self._builder = PlanBuilder(registry)
        self._prober = Prober(registry)
        self._report: Optional[SessionReport] = None
        self._cancelled = False

    @property
    def state(self) -> RunState:
        """State of the current (or last) run."""
        return self._report.state if self._report else RunState.PENDING

    def cancel(self) -> None:
        """Stop before the next Operation; the rest of the plan is skipped."""
        logger.warning("Cancellation requested")
        self._cancelled = True

    def plan(self, document: Union[DesiredConfig, dict]) -> Plan:
        """Probe and diff without touching the host."""
        if not isinstance(document, DesiredConfig):
            document = DesiredConfig.model_validate(document)
        resources = self._builder.collect(document.to_resources())
        snapshot = self._prober.snapshot(resources)
        return self._builder.build(resources, snapshot)

    def run(self, document: Union[DesiredConfig, dict]) -> Summary:
        """collect → probe → build → execute, under the host lock."""
        with HostLock(self.config.lock_path):
            report = self._start()
            try:
                plan = self.plan(document)
            except (ProbeError, PlanConflictError) as e:
                logger.warning("Planning failed: %s", e)
                return self._finish(report, RunState.ABORTED, error=str(e))
            return self._execute(plan, report)

    def execute(self, plan: Plan) -> Summary:
        """Run a prebuilt plan, under the host lock."""
        with HostLock(self.config.lock_path):
            return self._execute(plan, self._start())

    def _start(self) -> SessionReport:
        self._cancelled = False
        self._report = SessionReport(clock=self._clock)
        logger.info("Run %s started", self._report.run_id)
        return self._report

    def _finish(
        self, report: SessionReport, status: RunState, error: Optional[str] = None
    ) -> Summary:
        summary = report.finalize(status, error=error)
        if self.report_store is not None:
            self.report_store.append(summary)
        logger.info("Run %s finished: %s", summary.run_id, status.value)
        return summary

    def _skip_rest(self, report: SessionReport, operations: List[Operation], detail: str) -> None:
        for op in operations:
            report.record(op, Outcome.SKIPPED, "apply", detail)

    def _execute(self, plan: Plan, report: SessionReport) -> Summary:
        report.transition(RunState.VALIDATING)
        failed = self._validate(plan)
        if failed is not None:
            op, detail = failed
            report.record(op, Outcome.FAILED, "validate", detail)
            for other in plan.operations:
                if other.key != op.key:
                    report.record(other, Outcome.SKIPPED, "validate", "validation failed")
            return self._finish(report, RunState.ABORTED, error=detail)

        report.transition(RunState.APPLYING)
        applied: List[AppliedChange] = []
        for index, op in enumerate(plan.operations):
            if self._cancelled:
                self._skip_rest(report, plan.operations[index:], "cancelled")
                return self._finish(report, RunState.ABORTED, error="Run cancelled")

            if not op.changes:
                report.record(op, Outcome.NOOP, "apply")
                continue

            adapter = self.registry.get(op.resource.kind)
            backup = None
            try:
                backup = adapter.capture(op)
                report.add_backup(backup.path)
                change = adapter.apply(op, backup)
            except (ApplyError, ProbeError) as e:
                logger.warning("Apply of %s failed: %s", op.key, e)
                report.record(op, Outcome.FAILED, "apply", str(e))
                if op.sensitive:
                    current = [AppliedChange(operation=op, backup=backup, complete=False)] if backup else []
                    if self.config.rollback_prior_on_abort:
                        prior = [c for c in reversed(applied) if c.operation.sensitive]
                    else:
                        prior = self._notifiers(op, applied)
                    # A service is restored after the changes it was restarted for
                    if op.resource.kind == ResourceKind.SERVICE:
                        undo = prior + current
                    else:
                        undo = current + prior
                    self._rollback(report, undo, applied)
                self._skip_rest(report, plan.operations[index + 1:], f"aborted after {op.key}")
                return self._finish(report, RunState.ABORTED, error=str(e))

            report.record(op, Outcome.APPLIED, "apply")
            applied.append(change)

        report.transition(RunState.VERIFYING)
        sensitive = [c for c in applied if c.operation.sensitive]
        failures = []
        for change in sensitive:
            op = change.operation
            try:
                ok = self.registry.get(op.resource.kind).verify(op)
            except ProbeError as e:
                logger.warning("Verification of %s failed: %s", op.key, e)
                ok = False
            if not ok:
                failures.append(op.key)
                report.record(op, Outcome.FAILED, "verify", "observed state differs from desired")

        if failures:
            self._rollback(report, list(reversed(sensitive)), applied)
            return self._finish(
                report,
                RunState.ROLLED_BACK,
                error=f"Verification failed for {', '.join(failures)}",
            )

        # Backups are released once the run is confirmed; persisted copies stay
        return self._finish(report, RunState.COMMITTED)

    def _notifiers(self, op: Operation, applied: List[AppliedChange]) -> List[AppliedChange]:
        """Sensitive changes, newest first, that asked for the failed service restart."""
        if op.resource.kind != ResourceKind.SERVICE:
            return []
        return [
            c for c in reversed(applied)
            if c.operation.sensitive and op.resource.identity in c.operation.resource.notify
        ]

    def _validate(self, plan: Plan):
        """First failing sensitive Operation and why, or None."""
        sensitive = [op for op in plan.changes if op.sensitive]
        if sensitive and not in_maintenance_window(
            self.config.maintenance_schedule, self._clock()
        ):
            return sensitive[0], (
                f"Outside maintenance window {self.config.maintenance_schedule!r}"
            )
        for op in sensitive:
            adapter = self.registry.get(op.resource.kind)
            try:
                ok = adapter.validate(op.resource)
            except (HostConvergeError, OSError) as e:
                return op, f"Pre-flight check for {op.key} failed: {e}"
            if not ok:
                return op, f"Pre-flight check for {op.key} failed"
        return None

    def _rollback(
        self,
        report: SessionReport,
        changes: List[AppliedChange],
        applied: List[AppliedChange],
    ) -> None:
        """
        Restore each change in the given order, then restart the services
        they notify. Raises FatalRollbackError, carrying the finalized
        Summary, when any restoration fails.
        """
        fatal: Optional[FatalRollbackError] = None
        for change in changes:
            op = change.operation
            try:
                self.registry.get(op.resource.kind).rollback(change)
            except FatalRollbackError as e:
                report.record(op, Outcome.FAILED, "rollback", str(e))
                fatal = fatal or e
                continue
            report.record(op, Outcome.ROLLED_BACK, "rollback")

        # Services restarted by this run, including one whose restart just failed
        restarted = {
            c.operation.resource.identity
            for c in applied + changes
            if c.operation.resource.kind == ResourceKind.SERVICE
        }
        services = []
        for change in changes:
            for name in change.operation.resource.notify:
                if name in restarted and name not in services:
                    services.append(name)
        if services and self.registry.has(ResourceKind.SERVICE):
            adapter = self.registry.get(ResourceKind.SERVICE)
            for name in services:
                try:
                    adapter.restart(name)
                except (HostConvergeError, OSError) as e:
                    logger.error("Restart of %s after rollback failed: %s", name, e)
                    fatal = fatal or FatalRollbackError(
                        f"Cannot restart {name} after rollback: {e}",
                        context={"key": f"service:{name}", "error": str(e)},
                    )

        if fatal is not None:
            fatal.summary = self._finish(report, RunState.ABORTED, error=str(fatal))
            raise fatal
