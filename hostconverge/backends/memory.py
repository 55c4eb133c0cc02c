"""
In-memory collaborators.

Stand-ins for apt, systemd, ufw, fail2ban and sshd used by the test-suite and
by sandboxed API/CLI runs. They keep a call log and can be told to fail on
specific calls.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from hostconverge.errors import BackendError


class MemoryPackageManager:
    def __init__(
        self,
        installed: Iterable[str] = (),
        fail_on: Iterable[str] = (),
        partial: bool = False,
    ):
        self.installed: Set[str] = set(installed)
        self.fail_on = set(fail_on)
        self.partial = partial              # Failing calls still change state first
        self.calls: List[Tuple[str, str]] = []

    def is_installed(self, name: str) -> bool:
        return name in self.installed

    def refresh(self) -> None:
        self.calls.append(("refresh", ""))

    def install(self, name: str) -> None:
        self.calls.append(("install", name))
        if name in self.fail_on:
            if self.partial:
                self.installed.add(name)
            raise BackendError(f"install {name} failed", cmd=["install", name], returncode=100)
        self.installed.add(name)

    def remove(self, name: str) -> None:
        self.calls.append(("remove", name))
        if name in self.fail_on:
            if self.partial:
                self.installed.discard(name)
            raise BackendError(f"remove {name} failed", cmd=["remove", name], returncode=100)
        self.installed.discard(name)


class MemoryServiceManager:
    def __init__(
        self,
        units: Optional[Dict[str, Dict[str, bool]]] = None,
        fail_on: Iterable[Tuple[str, str]] = (),
        start_activates: bool = True,
    ):
        self.units: Dict[str, Dict[str, bool]] = {
            name: dict(state) for name, state in (units or {}).items()
        }
        self.fail_on = set(fail_on)         # {("restart", "ssh"), ...}
        self.start_activates = start_activates
        self.calls: List[Tuple[str, str]] = []

    def _call(self, verb: str, name: str) -> Dict[str, bool]:
        self.calls.append((verb, name))
        if (verb, name) in self.fail_on:
            raise BackendError(f"systemctl {verb} {name} failed", cmd=["systemctl", verb, name], returncode=1)
        return self.units.setdefault(name, {"enabled": False, "active": False})

    def exists(self, name: str) -> bool:
        return name in self.units

    def is_active(self, name: str) -> bool:
        return self.units.get(name, {}).get("active", False)

    def is_enabled(self, name: str) -> bool:
        return self.units.get(name, {}).get("enabled", False)

    def enable(self, name: str) -> None:
        self._call("enable", name)["enabled"] = True

    def disable(self, name: str) -> None:
        self._call("disable", name)["enabled"] = False

    def start(self, name: str) -> None:
        self._call("start", name)["active"] = self.start_activates

    def stop(self, name: str) -> None:
        self._call("stop", name)["active"] = False

    def restart(self, name: str) -> None:
        self._call("restart", name)["active"] = self.start_activates


class MemoryFirewall:
    def __init__(
        self,
        rules: Optional[List[dict]] = None,
        policies: Optional[Dict[str, str]] = None,
        enabled: bool = False,
        fail_on: Iterable[str] = (),
    ):
        self.rules: List[dict] = [dict(r) for r in (rules or [])]
        self.policies: Dict[str, str] = dict(policies or {})
        self.enabled = enabled
        self.fail_on = set(fail_on)         # {"add_rule", "enable", ...}
        self.calls: List[Tuple[str, object]] = []

    def _call(self, verb: str, arg: object = None) -> None:
        self.calls.append((verb, arg))
        if verb in self.fail_on:
            raise BackendError(f"ufw {verb} failed", cmd=["ufw", verb], returncode=1)

    @staticmethod
    def _same(a: dict, b: dict) -> bool:
        return (a["action"], a["port"], a["proto"]) == (b["action"], b["port"], b["proto"])

    def list_rules(self) -> List[dict]:
        return [dict(r) for r in self.rules]

    def add_rule(self, rule: dict) -> None:
        self._call("add_rule", rule)
        if not any(self._same(r, rule) for r in self.rules):
            self.rules.append(dict(rule))

    def delete_rule(self, rule: dict) -> None:
        self._call("delete_rule", rule)
        self.rules = [r for r in self.rules if not self._same(r, rule)]

    def default_policies(self) -> Dict[str, str]:
        return dict(self.policies)

    def set_default_policy(self, direction: str, action: str) -> None:
        self._call("set_default_policy", (direction, action))
        self.policies[direction] = action

    def is_enabled(self) -> bool:
        return self.enabled

    def enable(self) -> None:
        self._call("enable")
        self.enabled = True

    def disable(self) -> None:
        self._call("disable")
        self.enabled = False


class MemoryBanDaemon:
    def __init__(
        self,
        jails: Optional[Dict[str, Dict[str, str]]] = None,
        config_path: Optional[str] = None,
        fail_restart: bool = False,
    ):
        self.jails: Dict[str, Dict[str, str]] = {
            name: dict(settings) for name, settings in (jails or {}).items()
        }
        self.config_path = config_path
        self.fail_restart = fail_restart
        self.writes = 0
        self.restarts = 0

    def read_jails(self) -> Dict[str, Dict[str, str]]:
        return {name: dict(settings) for name, settings in self.jails.items()}

    def write_jail(self, config: Dict[str, Dict[str, str]]) -> None:
        self.writes += 1
        self.jails = {name: dict(settings) for name, settings in config.items()}

    def restart(self) -> None:
        self.restarts += 1
        if self.fail_restart:
            raise BackendError("fail2ban restart failed", cmd=["systemctl", "restart", "fail2ban"], returncode=1)


class StaticValidator:
    """
    Answers syntax checks from a fixed verdict or a sequence of verdicts
    (one per call, the last one repeating). Keeps the checked file contents.
    """

    def __init__(self, verdicts: Union[bool, Sequence[bool]] = True, message: str = "syntax error"):
        self.verdicts = [verdicts] if isinstance(verdicts, bool) else list(verdicts)
        self.message = message
        self.checked: List[str] = []

    def check(self, path: str) -> Tuple[bool, str]:
        self.checked.append(Path(path).read_text())
        index = min(len(self.checked), len(self.verdicts)) - 1
        ok = self.verdicts[index]
        return ok, "" if ok else self.message


class MemoryListener:
    def __init__(self, open_ports: Iterable[int] = ()):
        self.open_ports = set(open_ports)
        self.checked: List[int] = []

    def is_listening(self, port: int) -> bool:
        self.checked.append(port)
        return port in self.open_ports
