"""
hostconverge API — FastAPI endpoints.

Exposes the engine via a REST API for:
- Planning a desired configuration against the host
- Running a reconciliation
- Querying the report ledger
- Rendering the SSH hardening profile
"""

import os
import tempfile
from typing import Optional

from fastapi import FastAPI, HTTPException

from hostconverge.adapters.base import AdapterRegistry
from hostconverge.adapters.registry import build_memory_registry, build_system_registry
from hostconverge.errors import (
    ConcurrentRunError,
    FatalRollbackError,
    PlanConflictError,
    ProbeError,
)
from hostconverge.models.desired import DesiredConfig
from hostconverge.models.reconciler import ReconcilerConfig
from hostconverge.models.report import RunState
from hostconverge.profiles.ssh_hardening import ssh_hardening_profile
from hostconverge.reconciler.engine import Reconciler
from hostconverge.report.store import ReportStore


# --- Application Factory ---

def create_app(
    registry: Optional[AdapterRegistry] = None,
    reconciler_config: Optional[ReconcilerConfig] = None,
    report_store: Optional[ReportStore] = None,
    sandbox: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    With `sandbox=True` and no registry, every collaborator is in-memory and
    the host is never touched.
    """

    app = FastAPI(
        title="hostconverge API",
        description="Idempotent host-configuration engine",
        version="0.1.0",
    )

    config = reconciler_config or ReconcilerConfig()
    if registry is None:
        if sandbox:
            root = tempfile.mkdtemp(prefix="hostconverge-sandbox-")
            if reconciler_config is None:
                config = ReconcilerConfig(lock_path=os.path.join(root, "hostconverge.lock"))
            registry = build_memory_registry(config=config, root=root)
        else:
            registry = build_system_registry(config)
    store = report_store or ReportStore()

    reconciler = Reconciler(registry, config=config, report_store=store)

    app.state.registry = registry
    app.state.report_store = store
    app.state.reconciler = reconciler

    # === ENGINE ===

    @app.get("/status")
    def status():
        """Current engine state."""
        return {
            "state": reconciler.state.value,
            "sandbox": sandbox,
            "config": config.model_dump(),
            "resource_kinds": [k.value for k in registry.kinds()],
            "stored_reports": store.count(),
        }

    @app.post("/plan")
    def plan(document: DesiredConfig):
        """Diff a desired configuration against the host without changing it."""
        try:
            result = reconciler.plan(document)
        except PlanConflictError as e:
            raise HTTPException(409, {"error": str(e), "keys": e.keys})
        except ProbeError as e:
            raise HTTPException(503, str(e))
        return {
            **result.model_dump(mode="json"),
            "converged": result.is_converged(),
        }

    @app.post("/reconcile")
    def reconcile(document: DesiredConfig):
        """Converge the host to a desired configuration."""
        try:
            summary = reconciler.run(document)
        except ConcurrentRunError as e:
            raise HTTPException(409, str(e))
        except FatalRollbackError as e:
            raise HTTPException(500, {
                "error": str(e),
                "context": e.context,
                "summary": e.summary.model_dump(mode="json") if e.summary else None,
            })
        return summary.model_dump(mode="json")

    # === REPORTS ===

    @app.get("/reports")
    def list_reports(
        limit: int = 50,
        status: Optional[RunState] = None,
        resource: Optional[str] = None,
    ):
        """Recent run summaries, optionally filtered by status or resource key."""
        if status is not None:
            summaries = store.query_by_status(status)[-limit:]
        elif resource is not None:
            summaries = store.query_by_resource(resource)[-limit:]
        else:
            summaries = store.query_recent(limit=limit)
        return [s.model_dump(mode="json") for s in summaries]

    @app.get("/reports/verify")
    def verify_reports():
        """Verify ledger chain integrity."""
        return {
            "integrity_valid": store.verify_chain_integrity(),
            "total_records": store.count(),
        }

    @app.get("/reports/{run_id}")
    def get_report(run_id: str):
        summary = store.get_by_run(run_id)
        if not summary:
            raise HTTPException(404, "Run not found")
        return summary.model_dump(mode="json")

    # === PROFILES ===

    @app.get("/profiles/ssh-hardening")
    def ssh_hardening(port: int = 2222):
        """Desired configuration of the SSH hardening profile."""
        try:
            document = ssh_hardening_profile(port)
        except ValueError as e:
            raise HTTPException(422, str(e))
        return document.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
