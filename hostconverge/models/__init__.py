"""hostconverge data models."""

from hostconverge.models.desired import (
    DEFAULT_MANAGED_FILES,
    DesiredConfig,
    DirectiveEntry,
    FirewallRuleEntry,
    FirewallStateEntry,
    JailEntry,
    PackageEntry,
    PolicyEntry,
    ServiceEntry,
)
from hostconverge.models.plan import (
    Action,
    AppliedChange,
    Backup,
    Operation,
    Plan,
    classify,
)
from hostconverge.models.reconciler import ReconcilerConfig
from hostconverge.models.report import (
    Outcome,
    OutcomeRecord,
    RunState,
    StateTransition,
    Summary,
)
from hostconverge.models.resource import (
    ManagedFile,
    ObservedState,
    Resource,
    ResourceKind,
)

__all__ = [
    "Action",
    "AppliedChange",
    "Backup",
    "DEFAULT_MANAGED_FILES",
    "DesiredConfig",
    "DirectiveEntry",
    "FirewallRuleEntry",
    "FirewallStateEntry",
    "JailEntry",
    "ManagedFile",
    "ObservedState",
    "Operation",
    "Outcome",
    "OutcomeRecord",
    "PackageEntry",
    "Plan",
    "PolicyEntry",
    "ReconcilerConfig",
    "Resource",
    "ResourceKind",
    "RunState",
    "ServiceEntry",
    "StateTransition",
    "Summary",
    "classify",
]
