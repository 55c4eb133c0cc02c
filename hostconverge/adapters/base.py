"""
Resource adapters — the only code that touches host state.

Behavioral Contract:
- probe() never mutates the host; absence is a value of None, not an error
- apply() is idempotent: it re-reads the resource and only changes what differs
- rollback() restores the Backup taken before apply(), even after a partial apply,
  and escalates to FatalRollbackError when restoration itself fails
- an adapter only drives the collaborator for its own resource kind
"""

import logging
import shutil
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from hostconverge.errors import (
    ApplyError,
    BackendError,
    FatalRollbackError,
    ProbeError,
)
from hostconverge.models.plan import AppliedChange, Backup, Operation
from hostconverge.models.resource import ObservedState, Resource, ResourceKind, utcnow

logger = logging.getLogger(__name__)

BACKUP_STAMP_FORMAT = "%Y%m%d-%H%M%S"


def persist_copy(path: str, now: Optional[datetime] = None) -> Optional[str]:
    """
    Copy `path` to `<path>.backup.<timestamp>` and return the copy's path.

    A copy already written within the same second is kept as is, so the
    oldest content of the run wins. Returns None when `path` does not exist.
    """
    source = Path(path)
    if not source.exists():
        return None
    stamp = (now or datetime.now()).strftime(BACKUP_STAMP_FORMAT)
    dest = Path(f"{path}.backup.{stamp}")
    if not dest.exists():
        shutil.copy2(str(source), str(dest))
        logger.info("Backed up %s to %s", source, dest)
    return str(dest)


class ResourceAdapter(ABC):
    """probe / validate / capture / apply / rollback / verify for one resource kind."""

    kind: ResourceKind

    @abstractmethod
    def _read(self, resource: Resource) -> Any:
        """Current value of the resource, None when absent."""

    @abstractmethod
    def _apply(self, operation: Operation, backup: Backup) -> None:
        """Move the resource to operation.desired."""

    @abstractmethod
    def _restore(self, change: AppliedChange) -> None:
        """Move the resource back to change.backup."""

    def probe(self, resource: Resource) -> ObservedState:
        try:
            value = self._read(resource)
        except (BackendError, OSError) as e:
            raise ProbeError(f"Cannot probe {resource.key}: {e}") from e
        logger.debug("Probed %s = %r", resource.key, value)
        return ObservedState(
            kind=resource.kind,
            identity=resource.identity,
            value=value,
            probed_at=utcnow(),
        )

    def desired_value(
        self, resource: Resource, observed: ObservedState, notified: bool = False
    ) -> Any:
        """
        The value an Operation compares against; most kinds use the declared one.
        `notified` is set when another changed resource asked for a restart.
        """
        return resource.desired_value

    def validate(self, resource: Resource) -> bool:
        """Pre-flight check run before any sensitive change; permissive by default."""
        return True

    def _backup_content(self, operation: Operation) -> Dict[str, Any]:
        """Extra fields for the Backup (raw content, persisted copy)."""
        return {}

    def capture(self, operation: Operation) -> Backup:
        resource = operation.resource
        try:
            prior = self._read(resource)
            extra = self._backup_content(operation)
        except (BackendError, OSError) as e:
            raise ApplyError(f"Cannot back up {resource.key}: {e}") from e
        return Backup(
            key=resource.key,
            prior=prior,
            taken_at=utcnow(),
            **extra,
        )

    def apply(self, operation: Operation, backup: Backup) -> AppliedChange:
        logger.info(
            "Applying %s %s -> %r", operation.action.value, operation.key, operation.desired
        )
        try:
            self._apply(operation, backup)
        except (BackendError, OSError) as e:
            raise ApplyError(f"Cannot apply {operation.key}: {e}") from e
        return AppliedChange(operation=operation, backup=backup)

    def rollback(self, change: AppliedChange) -> None:
        key = change.operation.key
        logger.warning("Rolling back %s to %r", key, change.backup.prior)
        try:
            self._restore(change)
        except Exception as e:
            context = {
                "key": key,
                "prior": change.backup.prior,
                "backup_path": change.backup.path,
                "apply_complete": change.complete,
                "error": str(e),
            }
            logger.error("Rollback of %s failed: %s", key, e)
            raise FatalRollbackError(f"Cannot restore {key}: {e}", context=context) from e

    def verify(self, operation: Operation) -> bool:
        return self.probe(operation.resource).value == operation.desired


class AdapterRegistry:
    """Adapters keyed by the resource kind they own."""

    def __init__(self, adapters: Iterable[ResourceAdapter] = ()):
        self._adapters: Dict[ResourceKind, ResourceAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ResourceAdapter) -> None:
        """Register (or replace) the adapter for its kind."""
        self._adapters[adapter.kind] = adapter

    def get(self, kind: ResourceKind) -> ResourceAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ProbeError(f"No adapter registered for resource kind: {kind.value}")
        return adapter

    def has(self, kind: ResourceKind) -> bool:
        return kind in self._adapters

    def kinds(self):
        return list(self._adapters)
