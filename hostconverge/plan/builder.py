"""
Plan Builder — diffs desired configuration against probed state.

Behavioral Contract:
- Never touches the host beyond probing resources missing from the snapshot
- Identical duplicate resources collapse to one; conflicting ones raise PlanConflictError
- A changed resource notifies the services it names; they gain restart=True
- Operations follow the fixed dependency order
    package -> file_directive, jail_rule -> service -> firewall rule/policy -> firewall state
  with declaration order breaking ties
"""

import heapq
import logging
from typing import Dict, List, Optional, Set
from uuid import uuid4

from hostconverge.adapters.base import AdapterRegistry
from hostconverge.errors import PlanConflictError
from hostconverge.models.plan import Operation, Plan, classify
from hostconverge.models.resource import ObservedState, Resource, ResourceKind, utcnow
from hostconverge.probe.snapshot import Prober

logger = logging.getLogger(__name__)

# Stage of each resource; an operation depends on every operation of an earlier stage
STAGE_ORDER = [
    "package",
    "file_directive",
    "jail_rule",
    "service",
    "firewall_rule",
    "firewall_state",
]
DEPENDS_ON: Dict[str, Set[str]] = {
    "package": set(),
    "file_directive": {"package"},
    "jail_rule": {"package"},
    "service": {"package", "file_directive", "jail_rule"},
    "firewall_rule": {"package", "file_directive", "jail_rule", "service"},
    "firewall_state": {"package", "file_directive", "jail_rule", "service", "firewall_rule"},
}


def stage_of(resource: Resource) -> str:
    if resource.kind == ResourceKind.FIREWALL_RULE and resource.identity == "state":
        return "firewall_state"
    return resource.kind.value


def order_operations(operations: List[Operation]) -> List[Operation]:
    """Kahn's algorithm over the stage dependencies; ties go to declaration order."""
    stages = [stage_of(op.resource) for op in operations]
    indegree = [0] * len(operations)
    edges: Dict[int, List[int]] = {i: [] for i in range(len(operations))}
    notify_targets = {
        op.resource.identity: i
        for i, op in enumerate(operations)
        if op.resource.kind == ResourceKind.SERVICE
    }

    for j, stage in enumerate(stages):
        for i, other in enumerate(stages):
            if other in DEPENDS_ON[stage]:
                edges[i].append(j)
                indegree[j] += 1
    for i, op in enumerate(operations):
        for name in op.resource.notify:
            j = notify_targets.get(name)
            if j is not None and j not in edges[i]:
                edges[i].append(j)
                indegree[j] += 1

    ready = [i for i, d in enumerate(indegree) if d == 0]
    heapq.heapify(ready)
    ordered: List[Operation] = []
    while ready:
        i = heapq.heappop(ready)
        ordered.append(operations[i])
        for j in edges[i]:
            indegree[j] -= 1
            if indegree[j] == 0:
                heapq.heappush(ready, j)

    if len(ordered) != len(operations):
        stuck = [operations[i].key for i, d in enumerate(indegree) if d > 0]
        raise PlanConflictError(f"Dependency cycle between {', '.join(stuck)}", keys=stuck)
    return ordered


class PlanBuilder:
    def __init__(self, registry: AdapterRegistry):
        self.registry = registry
        self.prober = Prober(registry)

    def collect(self, resources: List[Resource]) -> List[Resource]:
        """
        Deduplicate declared resources, keeping the first declaration.

        Raises PlanConflictError when two resources share a key but disagree
        on the desired value or on sensitivity.
        """
        unique: Dict[str, Resource] = {}
        for resource in resources:
            seen = unique.get(resource.key)
            if seen is None:
                unique[resource.key] = resource
                continue
            if (
                seen.desired_value != resource.desired_value
                or seen.sensitive != resource.sensitive
            ):
                raise PlanConflictError(
                    f"Conflicting declarations for {resource.key}: "
                    f"{seen.desired_value!r} vs {resource.desired_value!r}",
                    keys=[resource.key],
                )
            if resource.notify and resource.notify != seen.notify:
                merged = list(seen.notify) + [n for n in resource.notify if n not in seen.notify]
                unique[resource.key] = seen.model_copy(update={"notify": merged})
        return list(unique.values())

    def build(
        self,
        resources: List[Resource],
        snapshot: Optional[Dict[str, ObservedState]] = None,
    ) -> Plan:
        resources = self.collect(resources)
        snapshot = dict(snapshot or {})
        for resource in resources:
            if resource.key not in snapshot:
                snapshot[resource.key] = self.prober.probe(resource)

        notified: Set[str] = set()
        for resource in resources:
            adapter = self.registry.get(resource.kind)
            observed = snapshot[resource.key]
            if resource.notify and observed.value != adapter.desired_value(resource, observed):
                notified.update(resource.notify)

        operations = []
        for resource in resources:
            adapter = self.registry.get(resource.kind)
            observed = snapshot[resource.key]
            desired = adapter.desired_value(
                resource,
                observed,
                notified=resource.kind == ResourceKind.SERVICE and resource.identity in notified,
            )
            operations.append(Operation(
                resource=resource,
                observed=observed,
                desired=desired,
                action=classify(observed.value, desired),
            ))

        plan = Plan(
            id=f"plan_{uuid4().hex[:12]}",
            operations=order_operations(operations),
            created_at=utcnow(),
        )
        logger.info(
            "Built plan %s: %d operations, %d changes",
            plan.id, len(plan.operations), len(plan.changes),
        )
        return plan
