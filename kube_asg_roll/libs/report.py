"""Human readable reports of the changes between two snapshots."""
import logging
import sys
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, Sequence, TextIO, Tuple, TypeVar

from prettytable import PrettyTable

from kube_asg_roll.libs.aws import AsgInstance
from kube_asg_roll.libs.kubernetes import Node
from kube_asg_roll.libs.snapshots import NOW, Snapshot, SnapshotStore

LOGGER = logging.getLogger(__name__)
SEPARATOR = "-" * 60
Machine = TypeVar("Machine", Node, AsgInstance)


@dataclass(frozen=True)
class AzCount:
    """Total count of machines and the count for each zone, like "6 (2/2/2)"."""

    total: int
    per_zone: Tuple[int, ...]

    @classmethod
    def of(cls, machines: Iterable[Machine], zones: Sequence[str]) -> "AzCount":
        """Count the machines, per_zone follows the order of zones."""
        machines = list(machines)
        counts = Counter(machine.zone for machine in machines)
        return cls(total=len(machines), per_zone=tuple(counts.get(zone, 0) for zone in zones))

    def __sub__(self, other: "AzCount") -> "AzCount":
        """Signed difference, total and zone by zone."""
        return AzCount(
            total=self.total - other.total,
            per_zone=tuple(mine - theirs for mine, theirs in zip(self.per_zone, other.per_zone)),
        )

    def __str__(self) -> str:
        """Render as "total (zone1/zone2/zone3)"."""
        return f"{self.total} ({'/'.join(str(count) for count in self.per_zone)})"


@dataclass(frozen=True)
class MachineDiff(Generic[Machine]):
    """Machines that appeared and disappeared between two snapshots."""

    added: Tuple[Machine, ...]
    removed: Tuple[Machine, ...]


def diff_machines(
    before: Sequence[Machine], after: Sequence[Machine], key: Callable[[Machine], str]
) -> MachineDiff[Machine]:
    """Diff two lists of machines by identity key, keeping the order in which they are listed."""
    before_keys = {key(machine) for machine in before}
    after_keys = {key(machine) for machine in after}
    return MachineDiff(
        added=tuple(machine for machine in after if key(machine) not in before_keys),
        removed=tuple(machine for machine in before if key(machine) not in after_keys),
    )


@dataclass(frozen=True)
class SnapshotDiff:
    """Node and instance changes between two snapshots."""

    nodes: MachineDiff[Node]
    instances: MachineDiff[AsgInstance]


def diff_snapshots(before: Snapshot, after: Snapshot) -> SnapshotDiff:
    """Diff the nodes (by name and creation time) and the instances (by id) of two snapshots."""
    return SnapshotDiff(
        nodes=diff_machines(before.nodes, after.nodes, key=lambda node: node.node_id),
        instances=diff_machines(before.asg.instances, after.asg.instances, key=lambda instance: instance.instance_id),
    )


def snapshot_zones(*snapshots: Snapshot) -> List[str]:
    """Sorted zones of all the instances and nodes of the given snapshots."""
    zones = set()
    for snapshot in snapshots:
        zones.update(instance.zone for instance in snapshot.asg.instances)
        zones.update(node.zone for node in snapshot.nodes)

    return sorted(zone for zone in zones if zone)


class Reporter:
    """Writes reports of the roll progress to a text stream."""

    def __init__(self, store: SnapshotStore, asg_name: str, stream: Optional[TextIO] = None, verbose: bool = False):
        """Init.

        With verbose the reports also list every added and removed machine.
        """
        self.store = store
        self.asg_name = asg_name
        self.stream = stream if stream is not None else sys.stdout
        self.verbose = verbose

    @staticmethod
    def cluster_report(snapshot: Snapshot, zones: Sequence[str]) -> List[str]:
        """Status of the group and the nodes in a snapshot."""
        asg = snapshot.asg
        new_nodes = [node for node in snapshot.nodes if node.retiring is None]
        old_nodes = [node for node in snapshot.nodes if node.retiring is not None]
        return [
            f'Cluster status at "{snapshot.timestamp}":',
            (
                "* ASG(min,max,desired,disabled actions): "
                f"{asg.min_size},{asg.max_size},{asg.desired_capacity},{len(asg.suspended_processes)}"
            ),
            f"* AWS Instances: {AzCount.of(asg.instances, zones)}",
            (
                f"* Kube Nodes (all, new, old): {AzCount.of(snapshot.nodes, zones)}, "
                f"{AzCount.of(new_nodes, zones)}, {AzCount.of(old_nodes, zones)}"
            ),
        ]

    @staticmethod
    def changes_report(before: Snapshot, after: Snapshot, zones: Sequence[str]) -> List[str]:
        """Added, removed and net count of instances and nodes between two snapshots."""
        diff = diff_snapshots(before, after)
        lines = [f'Changes between "{before.timestamp}" and "{after.timestamp}":']
        for title, changes in (("AWS Instances", diff.instances), ("Kube Nodes", diff.nodes)):
            added = AzCount.of(changes.added, zones)
            removed = AzCount.of(changes.removed, zones)
            lines.append(f"* {title}: +{added} -{removed} = {added - removed}")

        return lines

    @staticmethod
    def changes_table(before: Snapshot, after: Snapshot) -> str:
        """Table with every added and removed machine."""
        diff = diff_snapshots(before, after)
        table = PrettyTable(["Type", "Change", "Id", "Zone"])
        table.align = "l"
        for change, instances in (("+", diff.instances.added), ("-", diff.instances.removed)):
            for instance in instances:
                table.add_row(["instance", change, instance.instance_id, instance.zone])

        for change, nodes in (("+", diff.nodes.added), ("-", diff.nodes.removed)):
            for node in nodes:
                table.add_row(["node", change, node.name, node.zone])

        return table.get_string()

    def full_report(self, before_timestamp: str, after_timestamp: str) -> str:
        """Report block with the status before, the changes and the status after."""
        before = self.store.get_snapshot(before_timestamp)
        after = self.store.get_snapshot(after_timestamp)
        zones = snapshot_zones(before, after)

        lines = [SEPARATOR, f"Full report of {self.asg_name} (zones {'/'.join(zones)}):", ""]
        lines.extend(self.cluster_report(before, zones))
        lines.append("")
        lines.extend(self.changes_report(before, after, zones))
        lines.append("")
        lines.extend(self.cluster_report(after, zones))
        if self.verbose:
            lines.append("")
            lines.append(self.changes_table(before, after))

        lines.append(SEPARATOR)
        return "\n".join(lines)

    def run_report(self, since: Optional[str] = None) -> str:
        """Take a new snapshot and write the report of the changes since the given snapshot.

        Without since the report is against the new snapshot itself, to show the starting point of a run.
        Returns the timestamp of the new snapshot.
        """
        timestamp = self.store.make_snapshot()
        report = self.full_report(since or timestamp, NOW)
        LOGGER.debug("Writing report of %s since %s", self.asg_name, since or timestamp)
        self.stream.write(report + "\n")
        self.stream.flush()
        return timestamp
