"""
Probe — reads the current state of managed resources.

Never mutates the host. Absence is an ObservedState with value None;
ProbeError is reserved for environment access failures.
"""

import logging
from typing import Dict, Iterable

from hostconverge.adapters.base import AdapterRegistry
from hostconverge.models.resource import ObservedState, Resource

logger = logging.getLogger(__name__)


class Prober:
    def __init__(self, registry: AdapterRegistry):
        self.registry = registry

    def probe(self, resource: Resource) -> ObservedState:
        return self.registry.get(resource.kind).probe(resource)

    def snapshot(self, resources: Iterable[Resource]) -> Dict[str, ObservedState]:
        """Probe every resource once, keyed by resource key."""
        observed: Dict[str, ObservedState] = {}
        for resource in resources:
            if resource.key not in observed:
                observed[resource.key] = self.probe(resource)
        logger.debug("Probed %d resources", len(observed))
        return observed
