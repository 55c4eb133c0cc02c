"""Shared fixtures: an in-memory host with a real sshd_config under tmp_path."""

import copy
from pathlib import Path
from typing import Optional

import pytest

from hostconverge.adapters.registry import build_memory_registry
from hostconverge.backends.memory import (
    MemoryBanDaemon,
    MemoryFirewall,
    MemoryListener,
    MemoryPackageManager,
    MemoryServiceManager,
    StaticValidator,
)
from hostconverge.models.reconciler import ReconcilerConfig
from hostconverge.reconciler.engine import Reconciler

SSHD_CONFIG = """\
# This is the sshd server system-wide configuration file.

Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#AddressFamily any

#PermitRootLogin prohibit-password
PasswordAuthentication yes
KbdInteractiveAuthentication no

UsePAM yes
X11Forwarding yes
PrintMotd no

AcceptEnv LANG LC_*
Subsystem sftp /usr/lib/openssh/sftp-server

Match User anoncvs
    X11Forwarding no
    PasswordAuthentication yes
"""


class FakeHost:
    """In-memory collaborators plus a scratch root holding etc/ssh/sshd_config."""

    def __init__(
        self,
        root: Path,
        sshd_config: Optional[str] = SSHD_CONFIG,
        installed=("openssh-server",),
        units=None,
        rules=None,
        policies=None,
        firewall_enabled: bool = False,
        jails=None,
        validator: Optional[StaticValidator] = None,
        listener: Optional[MemoryListener] = None,
        config: Optional[ReconcilerConfig] = None,
        packages: Optional[MemoryPackageManager] = None,
        services: Optional[MemoryServiceManager] = None,
        firewall: Optional[MemoryFirewall] = None,
        ban_daemon: Optional[MemoryBanDaemon] = None,
    ):
        self.root = root
        self.sshd_path = root / "etc" / "ssh" / "sshd_config"
        self.sshd_path.parent.mkdir(parents=True, exist_ok=True)
        if sshd_config is not None:
            self.sshd_path.write_text(sshd_config)

        self.packages = packages or MemoryPackageManager(installed)
        self.services = services or MemoryServiceManager(
            units if units is not None else {"ssh": {"enabled": True, "active": True}}
        )
        self.firewall = firewall or MemoryFirewall(rules, policies, enabled=firewall_enabled)
        self.ban_daemon = ban_daemon or MemoryBanDaemon(jails)
        self.validator = validator or StaticValidator()
        self.listener = listener
        self.config = config or ReconcilerConfig(
            lock_path=str(root / "hostconverge.lock"),
            service_timeout_seconds=0,
            verify_timeout_seconds=0,
        )
        self.registry = build_memory_registry(
            packages=self.packages,
            services=self.services,
            firewall=self.firewall,
            ban_daemon=self.ban_daemon,
            validators={"sshd": self.validator},
            listener=listener,
            config=self.config,
            root=str(root),
        )

    def reconciler(self, **kwargs) -> Reconciler:
        return Reconciler(self.registry, config=self.config, **kwargs)

    def sshd_text(self) -> str:
        return self.sshd_path.read_text()

    def state(self) -> dict:
        """Everything a run can change, for before/after comparisons."""
        return {
            "packages": sorted(self.packages.installed),
            "units": copy.deepcopy(self.services.units),
            "rules": sorted(
                (r["action"], r["port"], r["proto"]) for r in self.firewall.rules
            ),
            "policies": dict(self.firewall.policies),
            "firewall_enabled": self.firewall.enabled,
            "jails": self.ban_daemon.read_jails(),
            "sshd_config": self.sshd_text() if self.sshd_path.exists() else None,
        }

    def backups(self):
        return sorted(self.sshd_path.parent.glob("sshd_config.backup.*"))


@pytest.fixture
def make_host(tmp_path):
    """Factory for FakeHost instances rooted in tmp_path."""
    def _make(**kwargs) -> FakeHost:
        return FakeHost(tmp_path, **kwargs)
    return _make


@pytest.fixture
def host(make_host) -> FakeHost:
    return make_host()
