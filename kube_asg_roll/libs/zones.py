"""Availability zone ordering and balance checks for a node pool."""
import logging
from collections import Counter
from itertools import zip_longest
from typing import Dict, Iterable, List, Optional

from kube_asg_roll.libs.common import PollOpts, Retrier, TopologyError, Waiter
from kube_asg_roll.libs.kubernetes import KubernetesController, Node

LOGGER = logging.getLogger(__name__)
REQUIRED_ZONES = 3


class ZoneCountError(TopologyError):
    """Risen when the node pool is not spread over exactly the required number of zones."""


class ZoneImbalanceError(TopologyError):
    """Risen when the node counts of two zones differ by more than the tolerance."""


def group_by_zone(nodes: Iterable[Node]) -> Dict[str, List[Node]]:
    """Group the nodes by zone, zones and nodes keep the order in which they were first seen."""
    groups: Dict[str, List[Node]] = {}
    for node in nodes:
        groups.setdefault(node.zone, []).append(node)

    return groups


def interleave_by_zone(nodes: Iterable[Node]) -> List[Node]:
    """Order the nodes visiting the zones round-robin.

    Zones A:[a0,a1], B:[b0], C:[c0,c1] give [a0,b0,c0,a1,c1], so draining in this order never takes
    more than one node ahead from any zone.
    """
    groups = group_by_zone(nodes)
    return [node for round_nodes in zip_longest(*groups.values()) for node in round_nodes if node is not None]


def zone_counts(nodes: Iterable[Node]) -> Dict[str, int]:
    """Count the nodes per zone, sorted by zone name."""
    return dict(sorted(Counter(node.zone for node in nodes).items()))


def check_balance(counts: Dict[str, int], tolerance: int = 1) -> int:
    """Check the per-zone counts, returning the spread between the biggest and smallest zone.

    Raises ZoneCountError if there are not exactly REQUIRED_ZONES zones, ZoneImbalanceError if the spread is
    bigger than the tolerance.
    """
    if len(counts) != REQUIRED_ZONES:
        raise ZoneCountError(f"Expected nodes in exactly {REQUIRED_ZONES} zones, got {len(counts)}: {counts}")

    spread = max(counts.values()) - min(counts.values())
    if spread > tolerance:
        raise ZoneImbalanceError(
            f"Zones are unbalanced, the node counts differ by {spread} (tolerance {tolerance}): {counts}"
        )

    return spread


class ZoneBalanceChecker:
    """Checks that the nodes of a role are evenly spread across the zones."""

    def __init__(
        self,
        kubernetes: KubernetesController,
        role: str,
        retrier: Retrier,
        waiter: Waiter,
        poll_opts: PollOpts,
    ):
        """Init."""
        self.kubernetes = kubernetes
        self.role = role
        self.retrier = retrier
        self.waiter = waiter
        self.poll_opts = poll_opts

    def _list_nodes(self) -> List[Node]:
        return self.retrier.call(self.kubernetes.list_nodes, self.role)

    def await_zone_labels_populated(self) -> List[Node]:
        """Wait until every node of the role has a zone label, returns the nodes."""
        nodes: Optional[List[Node]] = None

        def _all_labeled() -> bool:
            nonlocal nodes
            nodes = self._list_nodes()
            unlabeled = [node.name for node in nodes if not node.zone]
            if unlabeled:
                LOGGER.info("Nodes without zone label yet: %s", ", ".join(unlabeled))
                return False

            return True

        self.waiter.wait_for(
            check=_all_labeled,
            description=f"zone labels on all the '{self.role}' nodes",
            interval_seconds=self.poll_opts.zone_labels_interval_seconds,
            timeout_seconds=self.poll_opts.timeout_seconds,
        )
        return nodes or []

    def assert_balance(self, tolerance: int = 1) -> Dict[str, int]:
        """Check the zone balance of the role's nodes, returning the per-zone counts.

        Equal counts pass silently, counts within the tolerance pass with a warning, anything else raises.
        """
        counts = zone_counts(self.await_zone_labels_populated())
        spread = check_balance(counts, tolerance=tolerance)
        if spread == 0:
            LOGGER.debug("Zones are balanced: %s", counts)
        else:
            LOGGER.warning("Zones differ by %d node(s), within tolerance %d: %s", spread, tolerance, counts)

        return counts
