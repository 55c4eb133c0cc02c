"""
Subprocess-backed collaborators for Debian/Ubuntu hosts.

apt/dpkg, systemctl, ufw, fail2ban, `sshd -t` and a plain TCP connect.
Every command failure surfaces as BackendError; adapters decide whether that
is a probe or an apply failure.
"""

import configparser
import logging
import os
import re
import shutil
import socket
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from hostconverge.errors import BackendError

logger = logging.getLogger(__name__)


def run_command(
    cmd: List[str],
    timeout: Optional[float] = None,
    check: bool = True,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """Run a collaborator command, translating failures into BackendError."""
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
    except FileNotFoundError as e:
        raise BackendError(f"Command not found: {cmd[0]}", cmd=cmd) from e
    except subprocess.TimeoutExpired as e:
        raise BackendError(
            f"Command timed out after {timeout}s: {' '.join(cmd)}", cmd=cmd
        ) from e

    if check and result.returncode != 0:
        raise BackendError(
            f"Command failed ({result.returncode}): {' '.join(cmd)}",
            cmd=cmd,
            returncode=result.returncode,
            stderr=(result.stderr or "").strip(),
        )
    return result


def write_atomic(path: Path, content: str) -> None:
    """Replace `path` with `content`, keeping its mode when it already exists."""
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        if path.exists():
            shutil.copymode(str(path), tmp)
        else:
            os.chmod(tmp, 0o644)
        os.replace(tmp, str(path))
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class AptPackageManager:
    """Package management through apt-get/dpkg-query."""

    def __init__(self, timeout: float = 900.0):
        self.timeout = timeout
        self._env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")

    def is_installed(self, name: str) -> bool:
        result = run_command(
            ["dpkg-query", "-W", "-f=${Status}", name], check=False
        )
        return result.returncode == 0 and result.stdout.strip().endswith(" installed")

    def refresh(self) -> None:
        run_command(["apt-get", "update", "-qq"], timeout=self.timeout, env=self._env)

    def install(self, name: str) -> None:
        run_command(
            ["apt-get", "install", "-y", name], timeout=self.timeout, env=self._env
        )

    def remove(self, name: str) -> None:
        run_command(
            ["apt-get", "remove", "-y", name], timeout=self.timeout, env=self._env
        )


class SystemctlServiceManager:
    """
    systemd units through systemctl.

    Debian/Ubuntu ship the SSH daemon as `ssh.service`, RHEL-likes as
    `sshd.service`; either name resolves to whichever unit exists.
    """

    _ALIASES = {"ssh": "sshd", "sshd": "ssh"}

    def __init__(self, timeout: float = 90.0):
        self.timeout = timeout

    def _unit_exists(self, name: str) -> bool:
        result = run_command(
            ["systemctl", "list-unit-files", f"{name}.service"], check=False
        )
        return f"{name}.service" in result.stdout

    def _unit(self, name: str) -> str:
        alias = self._ALIASES.get(name)
        if alias and not self._unit_exists(name) and self._unit_exists(alias):
            return alias
        return name

    def exists(self, name: str) -> bool:
        return self._unit_exists(self._unit(name))

    def is_active(self, name: str) -> bool:
        result = run_command(
            ["systemctl", "is-active", "--quiet", self._unit(name)], check=False
        )
        return result.returncode == 0

    def is_enabled(self, name: str) -> bool:
        result = run_command(
            ["systemctl", "is-enabled", "--quiet", self._unit(name)], check=False
        )
        return result.returncode == 0

    def _systemctl(self, verb: str, name: str) -> None:
        run_command(["systemctl", verb, self._unit(name)], timeout=self.timeout)

    def enable(self, name: str) -> None:
        self._systemctl("enable", name)

    def disable(self, name: str) -> None:
        self._systemctl("disable", name)

    def start(self, name: str) -> None:
        self._systemctl("start", name)

    def stop(self, name: str) -> None:
        self._systemctl("stop", name)

    def restart(self, name: str) -> None:
        self._systemctl("restart", name)


_UFW_RULE = re.compile(
    r"^ufw (?:route )?(allow|deny|reject|limit) (\d+)/(tcp|udp)(?: comment '([^']*)')?\s*$"
)
_UFW_POLICY_KEYS = {
    "incoming": "DEFAULT_INPUT_POLICY",
    "outgoing": "DEFAULT_OUTPUT_POLICY",
    "routed": "DEFAULT_FORWARD_POLICY",
}
_UFW_POLICY_VALUES = {"DROP": "deny", "ACCEPT": "allow", "REJECT": "reject"}


def parse_ufw_added(output: str) -> List[dict]:
    """Parse `ufw show added` into simple port rules; anything fancier is ignored."""
    rules = []
    for line in output.splitlines():
        match = _UFW_RULE.match(line.strip())
        if not match:
            continue
        action, port, proto, comment = match.groups()
        rule = {"action": action, "port": int(port), "proto": proto}
        if comment:
            rule["comment"] = comment
        rules.append(rule)
    return rules


def parse_ufw_defaults(text: str) -> Dict[str, str]:
    """Parse /etc/default/ufw into {"incoming": "deny", ...}."""
    values = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            values[key] = value.strip().strip('"')
    policies = {}
    for direction, key in _UFW_POLICY_KEYS.items():
        raw = values.get(key)
        if raw in _UFW_POLICY_VALUES:
            policies[direction] = _UFW_POLICY_VALUES[raw]
    return policies


class UfwFirewall:
    """Firewall management through ufw."""

    def __init__(self, defaults_path: str = "/etc/default/ufw", timeout: float = 60.0):
        self.defaults_path = defaults_path
        self.timeout = timeout

    def list_rules(self) -> List[dict]:
        # `ufw status` hides rules while the firewall is inactive
        result = run_command(["ufw", "show", "added"], timeout=self.timeout)
        return parse_ufw_added(result.stdout)

    def add_rule(self, rule: dict) -> None:
        cmd = ["ufw", rule["action"], f"{rule['port']}/{rule['proto']}"]
        if rule.get("comment"):
            cmd += ["comment", rule["comment"]]
        run_command(cmd, timeout=self.timeout)

    def delete_rule(self, rule: dict) -> None:
        run_command(
            ["ufw", "delete", rule["action"], f"{rule['port']}/{rule['proto']}"],
            timeout=self.timeout,
        )

    def default_policies(self) -> Dict[str, str]:
        try:
            text = Path(self.defaults_path).read_text()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise BackendError(f"Cannot read {self.defaults_path}: {e}") from e
        return parse_ufw_defaults(text)

    def set_default_policy(self, direction: str, action: str) -> None:
        run_command(["ufw", "default", action, direction], timeout=self.timeout)

    def is_enabled(self) -> bool:
        result = run_command(["ufw", "status"], timeout=self.timeout)
        return result.stdout.strip().splitlines()[0:1] == ["Status: active"]

    def enable(self) -> None:
        run_command(["ufw", "--force", "enable"], timeout=self.timeout)

    def disable(self) -> None:
        run_command(["ufw", "disable"], timeout=self.timeout)


def parse_jail_config(text: str) -> Dict[str, Dict[str, str]]:
    """Parse a fail2ban jail file, keeping [DEFAULT] as an ordinary section."""
    parser = configparser.ConfigParser(
        interpolation=None, default_section="\x00no-default\x00"
    )
    parser.optionxform = str
    parser.read_string(text)
    return {section: dict(parser[section]) for section in parser.sections()}


def render_jail_config(config: Dict[str, Dict[str, str]]) -> str:
    lines = ["# fail2ban jails - managed by hostconverge"]
    sections = sorted(config, key=lambda s: (s != "DEFAULT", list(config).index(s)))
    for section in sections:
        lines.append("")
        lines.append(f"[{section}]")
        for key, value in config[section].items():
            lines.append(f"{key} = {value}")
    return "\n".join(lines) + "\n"


class Fail2banDaemon:
    """fail2ban jails in jail.local, restarted through systemctl."""

    def __init__(self, config_path: str = "/etc/fail2ban/jail.local", timeout: float = 60.0):
        self.config_path = config_path
        self.timeout = timeout

    def read_jails(self) -> Dict[str, Dict[str, str]]:
        path = Path(self.config_path)
        try:
            text = path.read_text()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise BackendError(f"Cannot read {path}: {e}") from e
        try:
            return parse_jail_config(text)
        except configparser.Error as e:
            raise BackendError(f"Cannot parse {path}: {e}") from e

    def write_jail(self, config: Dict[str, Dict[str, str]]) -> None:
        path = Path(self.config_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            write_atomic(path, render_jail_config(config))
        except OSError as e:
            raise BackendError(f"Cannot write {path}: {e}") from e

    def restart(self) -> None:
        run_command(["systemctl", "restart", "fail2ban"], timeout=self.timeout)


class CommandValidator:
    """Runs a syntax-check command; `{path}` in the argv is replaced by the file to check."""

    def __init__(self, argv: List[str], timeout: float = 30.0):
        self.argv = argv
        self.timeout = timeout

    def check(self, path: str) -> Tuple[bool, str]:
        cmd = [arg.replace("{path}", path) for arg in self.argv]
        try:
            result = run_command(cmd, timeout=self.timeout, check=False)
        except BackendError as e:
            return False, str(e)
        if result.returncode != 0:
            return False, (result.stderr or result.stdout).strip()
        return True, ""


def sshd_validator() -> CommandValidator:
    sshd = shutil.which("sshd") or "/usr/sbin/sshd"
    return CommandValidator([sshd, "-t", "-f", "{path}"])


class TcpPortListener:
    """Checks whether something accepts TCP connections on a local port."""

    def __init__(self, host: str = "127.0.0.1", timeout: float = 2.0):
        self.host = host
        self.timeout = timeout

    def is_listening(self, port: int) -> bool:
        try:
            with socket.create_connection((self.host, port), timeout=self.timeout):
                return True
        except OSError:
            return False
