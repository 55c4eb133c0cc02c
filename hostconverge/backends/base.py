"""
Collaborator interfaces.

The engine never touches the package manager, init system, firewall or ban
daemon directly; adapters drive them through these narrow protocols. Each has
a subprocess-backed implementation in `backends.system` and an in-memory one
in `backends.memory`.
"""

from typing import Dict, List, Optional, Protocol, Tuple


class PackageManager(Protocol):
    def is_installed(self, name: str) -> bool: ...

    def refresh(self) -> None: ...

    def install(self, name: str) -> None: ...

    def remove(self, name: str) -> None: ...


class ServiceManager(Protocol):
    def exists(self, name: str) -> bool: ...

    def is_active(self, name: str) -> bool: ...

    def is_enabled(self, name: str) -> bool: ...

    def enable(self, name: str) -> None: ...

    def disable(self, name: str) -> None: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str) -> None: ...

    def restart(self, name: str) -> None: ...


class FirewallBackend(Protocol):
    """Rules are dicts: {"action": "allow", "port": 2222, "proto": "tcp", "comment": ...}."""

    def list_rules(self) -> List[dict]: ...

    def add_rule(self, rule: dict) -> None: ...

    def delete_rule(self, rule: dict) -> None: ...

    def default_policies(self) -> Dict[str, str]: ...

    def set_default_policy(self, direction: str, action: str) -> None: ...

    def is_enabled(self) -> bool: ...

    def enable(self) -> None: ...

    def disable(self) -> None: ...


class BanDaemon(Protocol):
    """Jail configuration is {section: {setting: value}}."""

    config_path: Optional[str]

    def read_jails(self) -> Dict[str, Dict[str, str]]: ...

    def write_jail(self, config: Dict[str, Dict[str, str]]) -> None: ...

    def restart(self) -> None: ...


class ConfigValidator(Protocol):
    def check(self, path: str) -> Tuple[bool, str]: ...


class PortListener(Protocol):
    def is_listening(self, port: int) -> bool: ...
