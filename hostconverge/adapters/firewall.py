"""
Firewall rules, default policies and the firewall's on/off state.

Identities:
  rule:<port>/<proto>   value {"action": "allow", "port": 2222, "proto": "tcp"}
  default:<direction>   value "allow" | "deny" | "reject"
  state                 value "enabled" | "disabled"

Rules the document does not mention are left alone.
"""

import logging
from typing import Optional

from hostconverge.adapters.base import ResourceAdapter
from hostconverge.backends.base import FirewallBackend
from hostconverge.models.plan import AppliedChange, Backup, Operation
from hostconverge.models.resource import Resource, ResourceKind

logger = logging.getLogger(__name__)

_PASSING = ("allow", "limit")


def _signature(rule: dict) -> str:
    return f"{rule['port']}/{rule['proto']}"


class FirewallRuleAdapter(ResourceAdapter):
    kind = ResourceKind.FIREWALL_RULE

    def __init__(self, backend: FirewallBackend):
        self.backend = backend

    def _find_rule(self, signature: str) -> Optional[dict]:
        for rule in self.backend.list_rules():
            if _signature(rule) == signature:
                return {"action": rule["action"], "port": rule["port"], "proto": rule["proto"]}
        return None

    def _read(self, resource: Resource):
        scope, _, name = resource.identity.partition(":")
        if scope == "rule":
            return self._find_rule(name)
        if scope == "default":
            return self.backend.default_policies().get(name)
        if resource.identity == "state":
            return "enabled" if self.backend.is_enabled() else "disabled"
        raise ValueError(f"Unknown firewall identity: {resource.identity}")

    def validate(self, resource: Resource) -> bool:
        """
        Refuse to switch the firewall on unless every required port stays
        reachable, and refuse a default policy change that could not be undone.
        """
        scope, _, name = resource.identity.partition(":")
        if scope == "default":
            if self.backend.default_policies().get(name) is None:
                logger.warning("Current default %s policy is unknown; cannot restore it", name)
                return False
            return True
        if resource.identity != "state" or resource.desired_value != "enabled":
            return True
        required = resource.options.get("require", [])
        reachable = set(resource.options.get("allow", []))
        reachable.update(
            _signature(r) for r in self.backend.list_rules() if r["action"] in _PASSING
        )
        missing = [sig for sig in required if sig not in reachable]
        if missing:
            logger.warning(
                "Enabling the firewall would block %s; no allow rule declared",
                ", ".join(missing),
            )
            return False
        return True

    def _set_rule(self, signature: str, rule: Optional[dict], comment: Optional[str] = None) -> None:
        current = self._find_rule(signature)
        if current == rule:
            return
        if current is not None:
            self.backend.delete_rule(current)
        if rule is not None:
            new_rule = dict(rule)
            if comment:
                new_rule["comment"] = comment
            self.backend.add_rule(new_rule)

    def _set(self, resource: Resource, value, comment: Optional[str] = None) -> None:
        scope, _, name = resource.identity.partition(":")
        if scope == "rule":
            self._set_rule(name, value, comment)
        elif scope == "default":
            if value is None:
                raise ValueError(f"No prior default {name} policy to restore")
            if self.backend.default_policies().get(name) != value:
                self.backend.set_default_policy(name, value)
        elif resource.identity == "state":
            enabled = self.backend.is_enabled()
            if value == "enabled" and not enabled:
                self.backend.enable()
            elif value == "disabled" and enabled:
                self.backend.disable()

    def _apply(self, operation: Operation, backup: Backup) -> None:
        resource = operation.resource
        self._set(resource, operation.desired, resource.options.get("comment"))

    def _restore(self, change: AppliedChange) -> None:
        self._set(change.operation.resource, change.backup.prior)
