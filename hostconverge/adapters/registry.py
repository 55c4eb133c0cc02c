"""Registry factories wiring the adapters to system or in-memory backends."""

from typing import Dict, Optional

from hostconverge.adapters.base import AdapterRegistry
from hostconverge.adapters.file_directive import FileDirectiveAdapter
from hostconverge.adapters.firewall import FirewallRuleAdapter
from hostconverge.adapters.jail import JailRuleAdapter
from hostconverge.adapters.package import PackageAdapter
from hostconverge.adapters.service import ServiceAdapter
from hostconverge.backends.base import (
    BanDaemon,
    ConfigValidator,
    FirewallBackend,
    PackageManager,
    PortListener,
    ServiceManager,
)
from hostconverge.backends.memory import (
    MemoryBanDaemon,
    MemoryFirewall,
    MemoryListener,
    MemoryPackageManager,
    MemoryServiceManager,
    StaticValidator,
)
from hostconverge.backends.system import (
    AptPackageManager,
    Fail2banDaemon,
    SystemctlServiceManager,
    TcpPortListener,
    UfwFirewall,
    sshd_validator,
)
from hostconverge.models.reconciler import ReconcilerConfig


def build_registry(
    packages: PackageManager,
    services: ServiceManager,
    firewall: FirewallBackend,
    ban_daemon: BanDaemon,
    validators: Dict[str, ConfigValidator],
    listener: Optional[PortListener] = None,
    config: Optional[ReconcilerConfig] = None,
    poll_interval: float = 0.5,
    root: Optional[str] = None,
) -> AdapterRegistry:
    config = config or ReconcilerConfig()
    return AdapterRegistry([
        PackageAdapter(packages),
        ServiceAdapter(
            services,
            timeout_seconds=config.service_timeout_seconds,
            poll_interval=poll_interval,
        ),
        FileDirectiveAdapter(
            validators,
            listener=listener,
            verify_timeout_seconds=config.verify_timeout_seconds,
            poll_interval=poll_interval,
            root=root,
        ),
        FirewallRuleAdapter(firewall),
        JailRuleAdapter(ban_daemon),
    ])


def build_system_registry(config: Optional[ReconcilerConfig] = None) -> AdapterRegistry:
    """Adapters driving apt, systemctl, ufw, fail2ban and sshd on this host."""
    return build_registry(
        packages=AptPackageManager(),
        services=SystemctlServiceManager(),
        firewall=UfwFirewall(),
        ban_daemon=Fail2banDaemon(),
        validators={"sshd": sshd_validator()},
        listener=TcpPortListener(),
        config=config,
    )


def build_memory_registry(
    packages: Optional[MemoryPackageManager] = None,
    services: Optional[MemoryServiceManager] = None,
    firewall: Optional[MemoryFirewall] = None,
    ban_daemon: Optional[MemoryBanDaemon] = None,
    validators: Optional[Dict[str, ConfigValidator]] = None,
    listener: Optional[MemoryListener] = None,
    config: Optional[ReconcilerConfig] = None,
    root: Optional[str] = None,
) -> AdapterRegistry:
    """
    Adapters over in-memory backends. File directives still edit real files;
    pass `root` to keep them under a scratch directory.
    """
    return build_registry(
        packages=packages if packages is not None else MemoryPackageManager(),
        services=services if services is not None else MemoryServiceManager(),
        firewall=firewall if firewall is not None else MemoryFirewall(),
        ban_daemon=ban_daemon if ban_daemon is not None else MemoryBanDaemon(),
        validators=validators if validators is not None else {"sshd": StaticValidator()},
        listener=listener,
        config=config,
        poll_interval=0.0,
        root=root,
    )
