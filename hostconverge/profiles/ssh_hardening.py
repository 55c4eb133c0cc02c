"""
SSH hardening profile.

Moves sshd to a custom port, disables root and password logins, puts ufw in
front of it (deny incoming, allow outgoing, allow the SSH port) and has
fail2ban ban brute-force sources.
"""

from typing import Dict, Optional

from hostconverge.models.desired import DesiredConfig

MIN_PORT = 1024
MAX_PORT = 65535

SSHD_SETTINGS = {
    "PermitRootLogin": "no",
    "PubkeyAuthentication": "yes",
    "PasswordAuthentication": "no",
    "ChallengeResponseAuthentication": "no",
    "UsePAM": "yes",
    "X11Forwarding": "no",
    "PrintMotd": "no",
    "AcceptEnv": "LANG LC_*",
}

# Settings that can lock the operator out when they go wrong
LOCKOUT_DIRECTIVES = {"Port", "PermitRootLogin", "PasswordAuthentication", "PubkeyAuthentication"}

BAN_DEFAULTS = {
    "bantime": "3600",
    "findtime": "600",
    "maxretry": "5",
}


def validate_port(port: int) -> int:
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValueError(f"SSH port must be between {MIN_PORT} and {MAX_PORT}, got {port}")
    return port


def ssh_hardening_profile(
    port: int,
    auth_log: str = "/var/log/auth.log",
    alert_email: str = "root@localhost",
    extra_sshd_settings: Optional[Dict[str, str]] = None,
) -> DesiredConfig:
    """Desired configuration for a hardened SSH host listening on `port`."""
    validate_port(port)

    directives = {"Port": str(port), **SSHD_SETTINGS, **(extra_sshd_settings or {})}
    file_directives = {
        f"sshd_config:{name}": {"value": value, "sensitive": name in LOCKOUT_DIRECTIVES}
        for name, value in directives.items()
    }

    return DesiredConfig.model_validate({
        "packages": ["ufw", "fail2ban"],
        "file_directives": file_directives,
        "firewall_policy": {"incoming": "deny", "outgoing": "allow"},
        "firewall_rules": [
            {"port": port, "proto": "tcp", "action": "allow", "comment": "SSH"},
        ],
        "firewall_enabled": {"enabled": True, "sensitive": True},
        "jails": {
            "DEFAULT": {
                **BAN_DEFAULTS,
                "destemail": alert_email,
                "sender": alert_email,
                "action": "%(action_)s",
            },
            "sshd": {
                "enabled": "true",
                "port": str(port),
                "filter": "sshd",
                "logpath": auth_log,
                **BAN_DEFAULTS,
            },
        },
        "services": {"fail2ban": "enabled"},
    })
