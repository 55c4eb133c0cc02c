"""Reconciler configuration."""

from typing import Optional

from pydantic import BaseModel, Field


class ReconcilerConfig(BaseModel):
    """Tunables for one Reconciler."""

    lock_path: str = "/run/hostconverge.lock"
    rollback_prior_on_abort: bool = False   # Also undo earlier sensitive changes on a sensitive failure
    maintenance_schedule: Optional[str] = None  # Cron expression; sensitive changes only while it matches
    service_timeout_seconds: float = Field(ge=0, default=30.0)
    verify_timeout_seconds: float = Field(ge=0, default=10.0)
