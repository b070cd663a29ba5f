"""
Placement of new instances across the host pool.
Balances launches so hosts end up near an even container count.
"""

import math
import logging
from typing import Dict
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class NoHostsAvailable(Exception):
    """Instances were requested but the host pool is empty."""


@dataclass
class PlacementPlan:
    """Result of a placement run."""
    ideal_per_host: int
    launches: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.launches.values())


class PlacementPlanner:
    """
    Greedy round-robin placement.

    With `total` containers already running on `H` hosts and `desired` new ones
    to place, every host may grow up to ceil((total + desired) / H). Hosts are
    visited round-robin by a cursor that moves on every visit, and a host below
    that ceiling takes one instance per visit. It is not optimal
    but never sorts the pool.
    """

    def plan(self, distribution: Dict[str, int], desired: int) -> Dict[str, int]:
        return self.build(distribution, desired).launches

    def build(self, distribution: Dict[str, int], desired: int) -> PlacementPlan:
        if desired < 0:
            raise ValueError("desired instance count must be >= 0")

        hosts = list(distribution)
        launches = {host: 0 for host in hosts}
        if desired == 0:
            return PlacementPlan(ideal_per_host=0, launches=launches)
        if not hosts:
            raise NoHostsAvailable("No hosts registered to place instances on")

        total = sum(distribution.values())
        host_count = len(hosts)
        ideal = math.ceil((total + desired) / host_count)

        # Headroom below `ideal` summed over all hosts is >= desired, and the
        # cursor visits every host once per `host_count` steps, so this terminates.
        remaining = desired
        cursor = desired
        while remaining > 0:
            host = hosts[cursor % host_count]
            cursor -= 1
            if distribution[host] + launches[host] < ideal:
                launches[host] += 1
                remaining -= 1

        logger.info(f"Placement for {desired} instance(s) over {host_count} host(s), ideal={ideal}: {launches}")
        return PlacementPlan(ideal_per_host=ideal, launches=launches)
