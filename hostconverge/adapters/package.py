"""Packages: value "installed" or None."""

import logging

from hostconverge.adapters.base import ResourceAdapter
from hostconverge.backends.base import PackageManager
from hostconverge.models.plan import AppliedChange, Backup, Operation
from hostconverge.models.resource import Resource, ResourceKind

logger = logging.getLogger(__name__)

INSTALLED = "installed"


class PackageAdapter(ResourceAdapter):
    kind = ResourceKind.PACKAGE

    def __init__(self, manager: PackageManager):
        self.manager = manager
        self._refreshed = False

    def _read(self, resource: Resource):
        return INSTALLED if self.manager.is_installed(resource.identity) else None

    def _ensure(self, name: str, installed: bool) -> None:
        if installed:
            if self.manager.is_installed(name):
                return
            if not self._refreshed:
                self.manager.refresh()
                self._refreshed = True
            self.manager.install(name)
        elif self.manager.is_installed(name):
            self.manager.remove(name)

    def _apply(self, operation: Operation, backup: Backup) -> None:
        self._ensure(operation.resource.identity, operation.desired == INSTALLED)

    def _restore(self, change: AppliedChange) -> None:
        self._ensure(change.operation.resource.identity, change.backup.prior == INSTALLED)
