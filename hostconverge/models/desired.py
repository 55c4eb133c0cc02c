"""
Desired configuration document — what the caller wants the host to look like.

Every entry accepts a short form (e.g. `"fail2ban": "enabled"`) or a mapping
carrying a per-entry `sensitive` flag. The document-level `sensitive` flag is
the default for entries that do not set one.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hostconverge.models.resource import ManagedFile, Resource, ResourceKind

DEFAULT_MANAGED_FILES: Dict[str, ManagedFile] = {
    "sshd_config": ManagedFile(
        name="sshd_config",
        path="/etc/ssh/sshd_config",
        service="ssh",
        validator="sshd",
        separator=" ",
        listen_directive="Port",
    ),
}


def _as_setting(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PackageEntry(BaseModel):
    name: str
    state: Literal["present", "absent"] = "present"
    sensitive: Optional[bool] = None


class ServiceEntry(BaseModel):
    state: Optional[Literal["enabled", "disabled"]] = None
    sensitive: Optional[bool] = None


class DirectiveEntry(BaseModel):
    value: Optional[str] = None             # None = directive absent
    sensitive: Optional[bool] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else _as_setting(v)


class FirewallRuleEntry(BaseModel):
    port: int = Field(ge=1, le=65535)
    proto: Literal["tcp", "udp"] = "tcp"
    action: Literal["allow", "deny", "reject", "limit"] = "allow"
    comment: Optional[str] = None
    state: Literal["present", "absent"] = "present"
    sensitive: Optional[bool] = None

    @property
    def signature(self) -> str:
        return f"{self.port}/{self.proto}"


class PolicyEntry(BaseModel):
    action: Literal["allow", "deny", "reject"]
    sensitive: Optional[bool] = None


class FirewallStateEntry(BaseModel):
    enabled: bool = True
    sensitive: Optional[bool] = None


class JailEntry(BaseModel):
    settings: Optional[Dict[str, str]] = None   # None = jail section absent
    sensitive: Optional[bool] = None

    @field_validator("settings", mode="before")
    @classmethod
    def _stringify(cls, v):
        if v is None:
            return None
        return {str(k): _as_setting(val) for k, val in v.items()}


class DesiredConfig(BaseModel):
    """The input document of a reconciliation run."""

    model_config = ConfigDict(extra="forbid")

    sensitive: bool = False
    packages: List[PackageEntry] = []
    services: Dict[str, ServiceEntry] = {}
    file_directives: Dict[str, DirectiveEntry] = {}
    firewall_rules: List[FirewallRuleEntry] = []
    firewall_policy: Dict[Literal["incoming", "outgoing", "routed"], PolicyEntry] = {}
    firewall_enabled: Optional[FirewallStateEntry] = None
    jails: Dict[str, JailEntry] = {}
    managed_files: List[ManagedFile] = []

    @field_validator("packages", mode="before")
    @classmethod
    def _short_packages(cls, v):
        return [{"name": p} if isinstance(p, str) else p for p in (v or [])]

    @field_validator("services", mode="before")
    @classmethod
    def _short_services(cls, v):
        return {
            name: entry if isinstance(entry, dict) else {"state": entry}
            for name, entry in (v or {}).items()
        }

    @field_validator("file_directives", mode="before")
    @classmethod
    def _short_directives(cls, v):
        return {
            key: entry if isinstance(entry, dict) else {"value": entry}
            for key, entry in (v or {}).items()
        }

    @field_validator("firewall_policy", mode="before")
    @classmethod
    def _short_policies(cls, v):
        return {
            direction: entry if isinstance(entry, dict) else {"action": entry}
            for direction, entry in (v or {}).items()
        }

    @field_validator("firewall_enabled", mode="before")
    @classmethod
    def _short_firewall_state(cls, v):
        return {"enabled": v} if isinstance(v, bool) else v

    @field_validator("jails", mode="before")
    @classmethod
    def _short_jails(cls, v):
        jails = {}
        for name, entry in (v or {}).items():
            if entry is None or "settings" not in entry:
                entry = {"settings": entry}
            jails[name] = entry
        return jails

    @model_validator(mode="after")
    def _known_files(self) -> "DesiredConfig":
        catalog = self.file_catalog()
        for key in self.file_directives:
            file_name, sep, directive = key.partition(":")
            if not sep or not directive:
                raise ValueError(f"Directive key must look like '<file>:<Directive>', got {key!r}")
            if file_name not in catalog:
                raise ValueError(f"Unknown managed file {file_name!r} in {key!r}")
        return self

    def file_catalog(self) -> Dict[str, ManagedFile]:
        catalog = dict(DEFAULT_MANAGED_FILES)
        for managed in self.managed_files:
            catalog[managed.name] = managed
        return catalog

    def _sensitive(self, flag: Optional[bool]) -> bool:
        return self.sensitive if flag is None else flag

    def to_resources(self) -> List[Resource]:
        """Expand the document into Resources, in declaration order."""
        resources: List[Resource] = []
        catalog = self.file_catalog()

        for pkg in self.packages:
            resources.append(Resource(
                kind=ResourceKind.PACKAGE,
                identity=pkg.name,
                desired_value="installed" if pkg.state == "present" else None,
                sensitive=self._sensitive(pkg.sensitive),
            ))

        notified: Dict[str, bool] = {}
        required_rules: List[str] = []
        for key, entry in self.file_directives.items():
            file_name, _, directive = key.partition(":")
            managed = catalog[file_name]
            notify = [managed.service] if managed.service else []
            sensitive = self._sensitive(entry.sensitive)
            for svc in notify:
                # A restart that applies a sensitive change is itself sensitive
                notified[svc] = notified.get(svc, False) or sensitive
            if (
                managed.listen_directive
                and directive.lower() == managed.listen_directive.lower()
                and entry.value is not None
            ):
                required_rules.append(f"{entry.value}/tcp")
            resources.append(Resource(
                kind=ResourceKind.FILE_DIRECTIVE,
                identity=key,
                desired_value=entry.value,
                sensitive=sensitive,
                notify=notify,
                options={"file": managed.model_dump(), "directive": directive},
            ))

        for name, jail in self.jails.items():
            resources.append(Resource(
                kind=ResourceKind.JAIL_RULE,
                identity=name,
                desired_value=jail.settings,
                sensitive=self._sensitive(jail.sensitive),
            ))

        for name, svc in self.services.items():
            resources.append(Resource(
                kind=ResourceKind.SERVICE,
                identity=name,
                desired_value=svc.state,
                sensitive=self._sensitive(svc.sensitive) or notified.get(name, False),
            ))
        for name, sensitive in notified.items():
            if name not in self.services:
                # Only here to be restarted; its enabled/active state is left alone
                resources.append(Resource(
                    kind=ResourceKind.SERVICE,
                    identity=name,
                    desired_value=None,
                    sensitive=sensitive,
                    options={"implicit": True},
                ))

        allowed: List[str] = []
        for rule in self.firewall_rules:
            value = None
            if rule.state == "present":
                value = {"action": rule.action, "port": rule.port, "proto": rule.proto}
                if rule.action in ("allow", "limit"):
                    allowed.append(rule.signature)
            resources.append(Resource(
                kind=ResourceKind.FIREWALL_RULE,
                identity=f"rule:{rule.signature}",
                desired_value=value,
                sensitive=self._sensitive(rule.sensitive),
                options={"comment": rule.comment} if rule.comment else {},
            ))

        for direction, policy in self.firewall_policy.items():
            resources.append(Resource(
                kind=ResourceKind.FIREWALL_RULE,
                identity=f"default:{direction}",
                desired_value=policy.action,
                sensitive=self._sensitive(policy.sensitive),
            ))

        if self.firewall_enabled is not None:
            state = self.firewall_enabled
            resources.append(Resource(
                kind=ResourceKind.FIREWALL_RULE,
                identity="state",
                desired_value="enabled" if state.enabled else "disabled",
                sensitive=self._sensitive(state.sensitive),
                options={"require": required_rules, "allow": allowed},
            ))

        return resources
