"""Tests for the resource adapters."""

from datetime import datetime
from pathlib import Path

import pytest

from hostconverge.adapters.base import AdapterRegistry, persist_copy
from hostconverge.adapters.file_directive import (
    FileDirectiveAdapter,
    read_directive,
    set_directive,
)
from hostconverge.adapters.firewall import FirewallRuleAdapter
from hostconverge.adapters.jail import JailRuleAdapter
from hostconverge.adapters.package import PackageAdapter
from hostconverge.adapters.service import ServiceAdapter, service_value
from hostconverge.backends.memory import (
    MemoryBanDaemon,
    MemoryFirewall,
    MemoryListener,
    MemoryPackageManager,
    MemoryServiceManager,
    StaticValidator,
)
from hostconverge.errors import ApplyError, FatalRollbackError, ProbeError
from hostconverge.models import (
    AppliedChange,
    DEFAULT_MANAGED_FILES,
    Operation,
    Resource,
    ResourceKind,
    classify,
)

from tests.conftest import SSHD_CONFIG


def _make_operation(adapter, resource: Resource, notified: bool = False) -> Operation:
    observed = adapter.probe(resource)
    desired = adapter.desired_value(resource, observed, notified)
    return Operation(
        resource=resource,
        observed=observed,
        desired=desired,
        action=classify(observed.value, desired),
    )


def _run(adapter, resource: Resource, notified: bool = False) -> AppliedChange:
    op = _make_operation(adapter, resource, notified)
    backup = adapter.capture(op)
    return adapter.apply(op, backup)


def _directive(path: Path, name: str, value, sensitive: bool = False) -> Resource:
    managed = DEFAULT_MANAGED_FILES["sshd_config"].model_copy(update={"path": str(path)})
    return Resource(
        kind=ResourceKind.FILE_DIRECTIVE,
        identity=f"sshd_config:{name}",
        desired_value=value,
        sensitive=sensitive,
        notify=["ssh"],
        options={"file": managed.model_dump(), "directive": name},
    )


class TestDirectiveEditing:
    def test_read_active_directive(self):
        assert read_directive(SSHD_CONFIG, "PasswordAuthentication") == "yes"
        assert read_directive(SSHD_CONFIG, "acceptenv") == "LANG LC_*"

    def test_commented_directive_is_absent(self):
        assert read_directive(SSHD_CONFIG, "Port") is None

    def test_match_block_ignored(self):
        text = "Port 22\nMatch User bob\n    Port 2200\n"
        assert read_directive(text, "Port") == "22"
        assert read_directive("Match all\nX11Forwarding yes\n", "X11Forwarding") is None

    def test_equals_separator(self):
        assert read_directive("Port=2222\n", "Port") == "2222"

    def test_prefix_does_not_match(self):
        assert read_directive("PortForwarding yes\n", "Port") is None

    def test_replaces_active_occurrence(self):
        text = set_directive(SSHD_CONFIG, "PasswordAuthentication", "no")
        assert "PasswordAuthentication no" in text.splitlines()
        # Match block untouched
        assert "    PasswordAuthentication yes" in text.splitlines()

    def test_uncomments_first_commented_occurrence(self):
        text = set_directive(SSHD_CONFIG, "Port", "2222")
        lines = text.splitlines()
        assert "Port 2222" in lines
        assert "#Port 22" not in lines
        assert lines.index("Port 2222") < lines.index("#AddressFamily any")

    def test_inserts_before_match_block(self):
        text = set_directive(SSHD_CONFIG, "PubkeyAuthentication", "yes")
        lines = text.splitlines()
        assert lines.index("PubkeyAuthentication yes") < lines.index("Match User anoncvs")

    def test_appends_without_match_block(self):
        assert set_directive("UsePAM yes\n", "Port", "2222") == "UsePAM yes\nPort 2222\n"

    def test_remove_comments_out(self):
        text = set_directive("Port 22\nUsePAM yes\n", "Port", None)
        assert text == "#Port 22\nUsePAM yes\n"
        assert read_directive(text, "Port") is None

    def test_idempotent(self):
        once = set_directive(SSHD_CONFIG, "Port", "2222")
        assert set_directive(once, "Port", "2222") == once

    def test_separator(self):
        assert set_directive("", "workers", "4", " = ") == "workers = 4\n"


class TestPersistCopy:
    def test_copy_written_once_per_second(self, tmp_path):
        path = tmp_path / "sshd_config"
        path.write_text("Port 22\n")
        now = datetime(2026, 3, 1, 12, 0, 0)

        first = persist_copy(str(path), now=now)
        assert first == f"{path}.backup.20260301-120000"
        path.write_text("Port 2222\n")
        assert persist_copy(str(path), now=now) == first
        assert Path(first).read_text() == "Port 22\n"

    def test_missing_source(self, tmp_path):
        assert persist_copy(str(tmp_path / "absent")) is None


class TestPackageAdapter:
    def setup_method(self):
        self.manager = MemoryPackageManager(installed=["openssh-server"])
        self.adapter = PackageAdapter(self.manager)

    def test_probe(self):
        r = Resource(kind=ResourceKind.PACKAGE, identity="openssh-server", desired_value="installed")
        assert self.adapter.probe(r).value == "installed"
        r = Resource(kind=ResourceKind.PACKAGE, identity="curl", desired_value="installed")
        assert self.adapter.probe(r).value is None

    def test_install_refreshes_once(self):
        for name in ("ufw", "fail2ban"):
            _run(self.adapter, Resource(kind=ResourceKind.PACKAGE, identity=name, desired_value="installed"))
        assert self.manager.calls == [("refresh", ""), ("install", "ufw"), ("install", "fail2ban")]

    def test_apply_is_idempotent(self):
        r = Resource(kind=ResourceKind.PACKAGE, identity="ufw", desired_value="installed")
        op = _make_operation(self.adapter, r)
        backup = self.adapter.capture(op)
        self.adapter.apply(op, backup)
        self.adapter.apply(op, backup)
        assert self.manager.calls.count(("install", "ufw")) == 1

    def test_remove_and_rollback(self):
        r = Resource(kind=ResourceKind.PACKAGE, identity="openssh-server", desired_value=None)
        change = _run(self.adapter, r)
        assert not self.manager.is_installed("openssh-server")
        self.adapter.rollback(change)
        assert self.manager.is_installed("openssh-server")

    def test_failure_is_apply_error(self):
        manager = MemoryPackageManager(fail_on=["curl"])
        adapter = PackageAdapter(manager)
        with pytest.raises(ApplyError):
            _run(adapter, Resource(kind=ResourceKind.PACKAGE, identity="curl", desired_value="installed"))

    def test_failed_restore_is_fatal(self):
        manager = MemoryPackageManager(fail_on=["curl"], partial=True)
        adapter = PackageAdapter(manager)
        r = Resource(kind=ResourceKind.PACKAGE, identity="curl", desired_value="installed")
        op = _make_operation(adapter, r)
        backup = adapter.capture(op)
        with pytest.raises(ApplyError):
            adapter.apply(op, backup)

        with pytest.raises(FatalRollbackError) as exc:
            adapter.rollback(AppliedChange(operation=op, backup=backup, complete=False))
        assert exc.value.context["key"] == "package:curl"
        assert exc.value.context["apply_complete"] is False


class TestServiceAdapter:
    def setup_method(self):
        self.manager = MemoryServiceManager({
            "ssh": {"enabled": True, "active": True},
            "apparmor": {"enabled": True, "active": True},
        })
        self.adapter = ServiceAdapter(self.manager, timeout_seconds=0, poll_interval=0)

    def test_service_value(self):
        observed = {"enabled": True, "active": False, "restart": False}
        assert service_value("enabled", observed) == {"enabled": True, "active": True, "restart": False}
        assert service_value(None, observed, restart=True) == {"enabled": True, "active": False, "restart": False}
        assert service_value(None, None, restart=True) is None

    def test_missing_unit_is_absent(self):
        r = Resource(kind=ResourceKind.SERVICE, identity="fail2ban", desired_value="enabled")
        assert self.adapter.probe(r).value is None

    def test_enable_missing_unit(self):
        r = Resource(kind=ResourceKind.SERVICE, identity="fail2ban", desired_value="enabled")
        change = _run(self.adapter, r)
        assert self.manager.units["fail2ban"] == {"enabled": True, "active": True}
        assert self.adapter.verify(change.operation)

    def test_disable_and_rollback(self):
        r = Resource(kind=ResourceKind.SERVICE, identity="apparmor", desired_value="disabled")
        change = _run(self.adapter, r)
        assert self.manager.units["apparmor"] == {"enabled": False, "active": False}
        self.adapter.rollback(change)
        assert self.manager.units["apparmor"] == {"enabled": True, "active": True}

    def test_notified_service_restarts(self):
        r = Resource(kind=ResourceKind.SERVICE, identity="ssh", desired_value=None)
        op = _make_operation(self.adapter, r, notified=True)
        assert op.desired["restart"] is True
        self.adapter.apply(op, self.adapter.capture(op))
        assert ("restart", "ssh") in self.manager.calls
        assert self.adapter.verify(op)

    def test_disabled_missing_unit_is_converged(self):
        assert service_value("disabled", None) is None
        r = Resource(kind=ResourceKind.SERVICE, identity="cups", desired_value="disabled")
        op = _make_operation(self.adapter, r)
        assert not op.changes
        assert self.adapter.verify(op)

    def test_not_notified_is_noop(self):
        r = Resource(kind=ResourceKind.SERVICE, identity="ssh", desired_value="enabled")
        op = _make_operation(self.adapter, r)
        assert not op.changes

    def test_start_timeout(self):
        manager = MemoryServiceManager(start_activates=False)
        adapter = ServiceAdapter(manager, timeout_seconds=0, poll_interval=0)
        r = Resource(kind=ResourceKind.SERVICE, identity="fail2ban", desired_value="enabled")
        with pytest.raises(ApplyError):
            _run(adapter, r)


class TestFileDirectiveAdapter:
    @pytest.fixture(autouse=True)
    def _sshd_config(self, tmp_path):
        self.path = tmp_path / "sshd_config"
        self.path.write_text(SSHD_CONFIG)
        self.path.chmod(0o600)
        self.validator = StaticValidator()
        self.adapter = FileDirectiveAdapter({"sshd": self.validator}, poll_interval=0)

    def test_probe(self):
        assert self.adapter.probe(_directive(self.path, "PasswordAuthentication", "no")).value == "yes"
        assert self.adapter.probe(_directive(self.path, "Port", "2222")).value is None

    def test_missing_file_probes_absent(self, tmp_path):
        r = _directive(tmp_path / "nope", "Port", "2222")
        assert self.adapter.probe(r).value is None

    def test_validate_checks_candidate(self):
        assert self.adapter.validate(_directive(self.path, "Port", "2222"))
        assert "Port 2222" in self.validator.checked[0].splitlines()
        # Candidate never replaces the live file during validation
        assert self.path.read_text() == SSHD_CONFIG
        assert sorted(p.name for p in self.path.parent.iterdir()) == ["sshd_config"]

    def test_validate_rejects(self):
        adapter = FileDirectiveAdapter({"sshd": StaticValidator(False)})
        assert not adapter.validate(_directive(self.path, "Port", "2222"))

    def test_unknown_validator_rejects(self):
        adapter = FileDirectiveAdapter({})
        assert not adapter.validate(_directive(self.path, "Port", "2222"))

    def test_apply_backup_and_rollback(self):
        change = _run(self.adapter, _directive(self.path, "Port", "2222"))
        assert read_directive(self.path.read_text(), "Port") == "2222"
        assert (self.path.stat().st_mode & 0o777) == 0o600
        assert Path(change.backup.path).read_text() == SSHD_CONFIG

        self.adapter.rollback(change)
        assert self.path.read_text() == SSHD_CONFIG

    def test_apply_rejected_leaves_file(self):
        adapter = FileDirectiveAdapter({"sshd": StaticValidator(False)})
        r = _directive(self.path, "Port", "2222")
        op = _make_operation(adapter, r)
        backup = adapter.capture(op)
        with pytest.raises(ApplyError):
            adapter.apply(op, backup)
        assert self.path.read_text() == SSHD_CONFIG

    def test_verify_checks_listener(self):
        listener = MemoryListener(open_ports=[22])
        adapter = FileDirectiveAdapter(
            {"sshd": self.validator}, listener=listener,
            verify_timeout_seconds=0, poll_interval=0,
        )
        change = _run(adapter, _directive(self.path, "Port", "2222"))
        assert not adapter.verify(change.operation)
        listener.open_ports.add(2222)
        assert adapter.verify(change.operation)
        assert listener.checked == [2222, 2222]

    def test_non_listen_directive_skips_listener(self):
        listener = MemoryListener()
        adapter = FileDirectiveAdapter({"sshd": self.validator}, listener=listener)
        change = _run(adapter, _directive(self.path, "PermitRootLogin", "no"))
        assert adapter.verify(change.operation)
        assert listener.checked == []

    def test_root_reroots_paths(self, tmp_path):
        root = tmp_path / "sandbox"
        adapter = FileDirectiveAdapter({"sshd": self.validator}, root=str(root))
        r = _directive(Path("/etc/ssh/sshd_config"), "Port", "2222")
        _run(adapter, r)
        assert (root / "etc/ssh/sshd_config").read_text() == "Port 2222\n"


class TestFirewallRuleAdapter:
    def setup_method(self):
        self.firewall = MemoryFirewall(rules=[{"action": "allow", "port": 22, "proto": "tcp"}])
        self.adapter = FirewallRuleAdapter(self.firewall)

    def _rule(self, port: int, action="allow", comment=None) -> Resource:
        return Resource(
            kind=ResourceKind.FIREWALL_RULE,
            identity=f"rule:{port}/tcp",
            desired_value={"action": action, "port": port, "proto": "tcp"},
            options={"comment": comment} if comment else {},
        )

    def test_probe_rule(self):
        assert self.adapter.probe(self._rule(22)).value == {"action": "allow", "port": 22, "proto": "tcp"}
        assert self.adapter.probe(self._rule(2222)).value is None

    def test_add_rule_with_comment(self):
        _run(self.adapter, self._rule(2222, comment="SSH"))
        assert {"action": "allow", "port": 2222, "proto": "tcp", "comment": "SSH"} in self.firewall.rules

    def test_update_replaces_rule(self):
        change = _run(self.adapter, self._rule(22, action="limit"))
        assert self.firewall.rules == [{"action": "limit", "port": 22, "proto": "tcp"}]
        self.adapter.rollback(change)
        assert self.firewall.rules == [{"action": "allow", "port": 22, "proto": "tcp"}]

    def test_policy_and_rollback(self):
        r = Resource(kind=ResourceKind.FIREWALL_RULE, identity="default:incoming", desired_value="deny")
        self.firewall.policies["incoming"] = "allow"
        change = _run(self.adapter, r)
        assert self.firewall.policies["incoming"] == "deny"
        self.adapter.rollback(change)
        assert self.firewall.policies["incoming"] == "allow"

    def test_policy_needs_known_prior(self):
        r = Resource(kind=ResourceKind.FIREWALL_RULE, identity="default:incoming", desired_value="deny")
        assert not self.adapter.validate(r)
        self.firewall.policies["incoming"] = "allow"
        assert self.adapter.validate(r)

    def test_restoring_unknown_policy_is_fatal(self):
        r = Resource(kind=ResourceKind.FIREWALL_RULE, identity="default:routed", desired_value="deny")
        change = _run(self.adapter, r)
        assert change.backup.prior is None
        with pytest.raises(FatalRollbackError):
            self.adapter.rollback(change)
        assert self.firewall.policies["routed"] == "deny"

    def test_enable(self):
        r = Resource(kind=ResourceKind.FIREWALL_RULE, identity="state", desired_value="enabled")
        change = _run(self.adapter, r)
        assert self.firewall.enabled
        self.adapter.rollback(change)
        assert not self.firewall.enabled

    def test_lockout_guard(self):
        r = Resource(
            kind=ResourceKind.FIREWALL_RULE,
            identity="state",
            desired_value="enabled",
            options={"require": ["2222/tcp"], "allow": []},
        )
        assert not self.adapter.validate(r)
        r.options["allow"] = ["2222/tcp"]
        assert self.adapter.validate(r)

    def test_lockout_guard_accepts_existing_rule(self):
        r = Resource(
            kind=ResourceKind.FIREWALL_RULE,
            identity="state",
            desired_value="enabled",
            options={"require": ["22/tcp"], "allow": []},
        )
        assert self.adapter.validate(r)

    def test_backend_failure(self):
        adapter = FirewallRuleAdapter(MemoryFirewall(fail_on=["add_rule"]))
        with pytest.raises(ApplyError):
            _run(adapter, self._rule(2222))


class TestJailRuleAdapter:
    def setup_method(self):
        self.daemon = MemoryBanDaemon({"DEFAULT": {"bantime": "600"}})
        self.adapter = JailRuleAdapter(self.daemon)

    def _jail(self, name, settings) -> Resource:
        return Resource(kind=ResourceKind.JAIL_RULE, identity=name, desired_value=settings)

    def test_write_restart_and_rollback(self):
        change = _run(self.adapter, self._jail("sshd", {"enabled": "true", "port": "2222"}))
        assert self.daemon.jails["sshd"] == {"enabled": "true", "port": "2222"}
        assert self.daemon.restarts == 1

        self.adapter.rollback(change)
        assert self.daemon.jails == {"DEFAULT": {"bantime": "600"}}
        assert self.daemon.restarts == 2

    def test_remove_jail(self):
        _run(self.adapter, self._jail("DEFAULT", None))
        assert self.daemon.jails == {}

    def test_persists_config_copy(self, tmp_path):
        config_path = tmp_path / "jail.local"
        config_path.write_text("[DEFAULT]\nbantime = 600\n")
        daemon = MemoryBanDaemon(config_path=str(config_path))
        adapter = JailRuleAdapter(daemon)
        change = _run(adapter, self._jail("sshd", {"enabled": "true"}))
        assert change.backup.path.startswith(f"{config_path}.backup.")

    def test_restart_failure_on_rollback_is_fatal(self):
        daemon = MemoryBanDaemon(fail_restart=True)
        adapter = JailRuleAdapter(daemon)
        r = self._jail("sshd", {"enabled": "true"})
        op = _make_operation(adapter, r)
        backup = adapter.capture(op)
        with pytest.raises(ApplyError):
            adapter.apply(op, backup)
        with pytest.raises(FatalRollbackError):
            adapter.rollback(AppliedChange(operation=op, backup=backup, complete=False))


class TestAdapterRegistry:
    def test_missing_adapter_is_probe_error(self):
        registry = AdapterRegistry([PackageAdapter(MemoryPackageManager())])
        assert registry.has(ResourceKind.PACKAGE)
        with pytest.raises(ProbeError):
            registry.get(ResourceKind.SERVICE)
