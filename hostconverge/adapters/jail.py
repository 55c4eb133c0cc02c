"""Ban-daemon jails: one section of the jail file per identity."""

import logging

from hostconverge.adapters.base import ResourceAdapter, persist_copy
from hostconverge.backends.base import BanDaemon
from hostconverge.models.plan import AppliedChange, Backup, Operation
from hostconverge.models.resource import Resource, ResourceKind

logger = logging.getLogger(__name__)


class JailRuleAdapter(ResourceAdapter):
    kind = ResourceKind.JAIL_RULE

    def __init__(self, daemon: BanDaemon):
        self.daemon = daemon

    def _read(self, resource: Resource):
        return self.daemon.read_jails().get(resource.identity)

    def _backup_content(self, operation: Operation) -> dict:
        path = getattr(self.daemon, "config_path", None)
        return {
            "content": self.daemon.read_jails(),
            "path": persist_copy(path) if path else None,
        }

    def _apply(self, operation: Operation, backup: Backup) -> None:
        name = operation.resource.identity
        config = self.daemon.read_jails()
        if config.get(name) == operation.desired:
            return
        if operation.desired is None:
            config.pop(name, None)
        else:
            config[name] = dict(operation.desired)
        self.daemon.write_jail(config)
        logger.info("Restarting ban daemon for jail %s", name)
        self.daemon.restart()

    def _restore(self, change: AppliedChange) -> None:
        prior = change.backup.content
        if prior is None:
            return
        if self.daemon.read_jails() != prior:
            self.daemon.write_jail(prior)
        self.daemon.restart()
