"""Resources — the declared units of host configuration, and what a probe saw."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    PACKAGE = "package"
    SERVICE = "service"
    FILE_DIRECTIVE = "file_directive"
    FIREWALL_RULE = "firewall_rule"
    JAIL_RULE = "jail_rule"


class Resource(BaseModel):
    """A single managed unit of configuration, as declared by the caller."""

    kind: ResourceKind
    identity: str                           # e.g. "curl", "sshd_config:Port", "rule:2222/tcp"
    desired_value: Any = None               # None = resource should be absent
    sensitive: bool = False                 # A failed apply can lock the operator out
    notify: List[str] = []                  # Services restarted when this resource changes
    options: Dict[str, Any] = {}            # Adapter hints, never compared

    @property
    def key(self) -> str:
        """Unique key within one configuration document."""
        identity = self.identity
        if self.kind == ResourceKind.FILE_DIRECTIVE:
            # sshd keywords are case-insensitive; keep the file name as given
            file_name, _, directive = identity.partition(":")
            identity = f"{file_name}:{directive.lower()}"
        return f"{self.kind.value}:{identity}"


class ObservedState(BaseModel):
    """Snapshot of a resource at probe time. Re-probed, never mutated."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    identity: str
    value: Any = None                       # None = resource absent
    probed_at: datetime

    @property
    def present(self) -> bool:
        return self.value is not None


class ManagedFile(BaseModel):
    """A configuration file the file-directive adapter is allowed to edit."""

    name: str                               # Prefix used in directive identities
    path: str
    service: Optional[str] = None           # Restarted after a directive changes
    validator: Optional[str] = None         # Name of a registered ConfigValidator
    separator: str = " "                    # Between directive and value
    listen_directive: Optional[str] = None  # Directive whose value is a listening port
