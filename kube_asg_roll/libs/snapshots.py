"""File backed log of point in time snapshots of the autoscaling group and its nodes."""
import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence, Tuple

from kube_asg_roll.libs.aws import AutoScalingGroup
from kube_asg_roll.libs.common import RollError
from kube_asg_roll.libs.kubernetes import Node

LOGGER = logging.getLogger(__name__)
NOW = "now"
SNAPSHOT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class SnapshotError(RollError):
    """Risen when the snapshots file can't be used."""


class SnapshotNotFound(SnapshotError):
    """Risen when there's no snapshot with the requested timestamp."""


def utc_now() -> datetime:
    """Current time, timezone aware in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    """State of the autoscaling group and the role's nodes at a given time."""

    timestamp: str
    asg: AutoScalingGroup
    nodes: Tuple[Node, ...]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        """Get a snapshot from a record of the snapshots file."""
        return cls(
            timestamp=data["timestamp"],
            asg=AutoScalingGroup.from_dict(data["asg"]),
            nodes=tuple(Node.from_dict(node) for node in data["nodes"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the snapshot as a record of the snapshots file."""
        return {
            "timestamp": self.timestamp,
            "asg": self.asg.to_dict(),
            "nodes": [node.to_dict() for node in self.nodes],
        }


class SnapshotStore:
    """Append only sequence of snapshots plus a single "now" snapshot that is replaced on every capture."""

    def __init__(
        self,
        path: Path,
        capture: Callable[[], Tuple[AutoScalingGroup, Sequence[Node]]],
        clock: Callable[[], datetime] = utc_now,
    ):
        """Init.

        capture is called on every new snapshot to get the current group and nodes.
        """
        self.path = path
        self._capture = capture
        self._clock = clock

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return []

        try:
            records = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise SnapshotError(f"Unable to read snapshots file {self.path}: {error}") from error

        if not isinstance(records, list):
            raise SnapshotError(f"Snapshots file {self.path} must contain a list, got {type(records).__name__}")

        return records

    def _save(self, records: List[Dict[str, Any]]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=directory, prefix=f".{self.path.name}.", delete=False
        ) as tmp_file:
            try:
                json.dump(records, tmp_file, indent=2)
                tmp_file.write("\n")
            except BaseException:
                tmp_file.close()
                os.unlink(tmp_file.name)
                raise

        os.replace(tmp_file.name, self.path)

    def make_snapshot(self) -> str:
        """Capture the current state, store it and return its timestamp."""
        asg, nodes = self._capture()
        timestamp = self._clock().strftime(SNAPSHOT_TIMESTAMP_FORMAT)
        records = [record for record in self._load() if record["timestamp"] != NOW]
        if any(record["timestamp"] == timestamp for record in records):
            raise SnapshotError(f"There's already a snapshot with timestamp {timestamp} in {self.path}")

        snapshot = Snapshot(timestamp=timestamp, asg=asg, nodes=tuple(nodes))
        records.append(snapshot.to_dict())
        records.append(replace(snapshot, timestamp=NOW).to_dict())
        self._save(records)
        LOGGER.debug("Stored snapshot %s in %s", timestamp, self.path)
        return timestamp

    def get_snapshot(self, timestamp: str) -> Snapshot:
        """Get the snapshot with exactly the given timestamp (or "now")."""
        for record in self._load():
            if record["timestamp"] == timestamp:
                return Snapshot.from_dict(record)

        raise SnapshotNotFound(f"No snapshot with timestamp {timestamp} in {self.path}")

    def snapshots(self) -> List[Snapshot]:
        """Get all the timestamped snapshots, oldest first."""
        return [Snapshot.from_dict(record) for record in self._load() if record["timestamp"] != NOW]

    def first_timestamp(self) -> str:
        """Get the timestamp of the oldest snapshot."""
        for record in self._load():
            if record["timestamp"] != NOW:
                return record["timestamp"]

        raise SnapshotNotFound(f"There are no snapshots in {self.path}")
