"""
Services: value {"enabled": bool, "active": bool, "restart": bool}, None when
the unit does not exist.

Declared states map onto flags ("enabled" = enabled and running, "disabled" =
stopped and disabled, which a missing unit already is); a declared state of None leaves the flags as observed
and only carries restart notifications. A probe never reports a pending
restart, so a notified service always differs from what was observed.
"""

import logging
import time
from typing import Optional

from hostconverge.adapters.base import ResourceAdapter
from hostconverge.backends.base import ServiceManager
from hostconverge.errors import ApplyError
from hostconverge.models.plan import AppliedChange, Backup, Operation
from hostconverge.models.resource import ObservedState, Resource, ResourceKind

logger = logging.getLogger(__name__)

STATE_FLAGS = {
    "enabled": {"enabled": True, "active": True},
    "disabled": {"enabled": False, "active": False},
}


def service_value(state: Optional[str], observed: Optional[dict], restart: bool = False) -> Optional[dict]:
    """Comparable service value for a declared state against what was observed."""
    if observed is None and state in (None, "disabled"):
        return None
    if state is None:
        flags = {"enabled": observed["enabled"], "active": observed["active"]}
    else:
        flags = dict(STATE_FLAGS[state])
    restart = restart and flags["active"]
    return {**flags, "restart": restart}


class ServiceAdapter(ResourceAdapter):
    kind = ResourceKind.SERVICE

    def __init__(
        self,
        manager: ServiceManager,
        timeout_seconds: float = 30.0,
        poll_interval: float = 0.5,
    ):
        self.manager = manager
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval

    def _read(self, resource: Resource):
        name = resource.identity
        if not self.manager.exists(name):
            return None
        return {
            "enabled": self.manager.is_enabled(name),
            "active": self.manager.is_active(name),
            "restart": False,
        }

    def desired_value(self, resource: Resource, observed: ObservedState, notified: bool = False):
        return service_value(resource.desired_value, observed.value, restart=notified)

    def _wait_active(self, name: str) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        while not self.manager.is_active(name):
            if time.monotonic() >= deadline:
                raise ApplyError(
                    f"Service {name} not active after {self.timeout_seconds}s"
                )
            time.sleep(self.poll_interval)

    def _converge(self, name: str, enabled: bool, active: bool, restart: bool) -> None:
        was_active = self.manager.is_active(name)
        if active and not was_active:
            logger.info("Starting %s", name)
            self.manager.start(name)
            self._wait_active(name)
        elif active and restart:
            logger.info("Restarting %s", name)
            self.manager.restart(name)
            self._wait_active(name)
        elif not active and was_active:
            logger.info("Stopping %s", name)
            self.manager.stop(name)

        if enabled and not self.manager.is_enabled(name):
            logger.info("Enabling %s", name)
            self.manager.enable(name)
        elif not enabled and self.manager.is_enabled(name):
            logger.info("Disabling %s", name)
            self.manager.disable(name)

    def _apply(self, operation: Operation, backup: Backup) -> None:
        desired = operation.desired
        name = operation.resource.identity
        if desired is None:
            return
        self._converge(name, desired["enabled"], desired["active"], desired["restart"])

    def _restore(self, change: AppliedChange) -> None:
        prior = change.backup.prior
        name = change.operation.resource.identity
        if prior is None:
            # Unit did not exist before; leave it stopped and disabled
            if self.manager.exists(name):
                self._converge(name, False, False, False)
            return
        self._converge(name, prior["enabled"], prior["active"], False)

    def restart(self, name: str) -> None:
        """Restart a unit so it rereads configuration restored by a rollback."""
        if self.manager.exists(name) and self.manager.is_active(name):
            logger.info("Restarting %s after rollback", name)
            self.manager.restart(name)
            self._wait_active(name)

    def verify(self, operation: Operation) -> bool:
        observed = self.probe(operation.resource).value
        desired = operation.desired
        if observed is None or desired is None:
            return observed == desired
        return (observed["enabled"], observed["active"]) == (desired["enabled"], desired["active"])
