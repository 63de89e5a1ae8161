"""Roll all the kubernetes nodes of a role, replacing them with new instances of their autoscaling group.

The roll will:
1. Label all the nodes of the role as retiring and cordon them (skipped when resuming);
2. Find the autoscaling group that owns the retiring nodes;
3. Grow the group by one batch and wait for the new nodes to be Ready (when resuming, only if the interrupted roll
   did not get this far);
4. Drain and terminate the retiring nodes one at a time, visiting the zones round-robin, waiting for a whole
   batch of new nodes to be Ready before starting on the next batch;
5. Wait for the group to shrink back to its original size, restore its max size and resume its processes.

Usage example:
    kube-asg-roll --kube-context prod-eu-west-1 --aws-profile prod --role worker --batch-size 3

If the roll is interrupted, it logs the retire time to pass to --resume to continue it:
    kube-asg-roll --kube-context prod-eu-west-1 --aws-profile prod --role worker --resume 2024-05-01T10-00-00Z
"""
import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO, Tuple

from kube_asg_roll.libs.aws import (
    AutoScalingController,
    AutoScalingGroup,
    AwsInstanceTerminating,
    AwsNotFound,
)
from kube_asg_roll.libs.common import (
    PreconditionError,
    Retrier,
    RollError,
    Settings,
    Waiter,
    setup_logging,
)
from kube_asg_roll.libs.kubernetes import DrainStatus, KubernetesController, Node
from kube_asg_roll.libs.report import Reporter
from kube_asg_roll.libs.snapshots import SnapshotNotFound, SnapshotStore
from kube_asg_roll.libs.zones import REQUIRED_ZONES, ZoneBalanceChecker, interleave_by_zone

LOGGER = logging.getLogger(__name__)
RETIRE_TIME_FORMAT = "%Y-%m-%dT%H-%M-%SZ"
UPSCALE_SUSPENDED_PROCESSES = ("AZRebalance", "AlarmNotification", "ScheduledActions")
FINAL_BATCH_SUSPENDED_PROCESSES = ("Launch",)
# Terminate, HealthCheck, ReplaceUnhealthy and AddToLoadBalancer are never suspended
RESUMED_PROCESSES = ("Launch", "AZRebalance", "AlarmNotification", "ScheduledActions")


class RollPhase(Enum):
    """Phases of a roll, in the order they run."""

    INIT = "init"
    LABEL_FOR_CYCLING = "label for cycling"
    DISCOVER_ASG = "discover autoscaling group"
    UPSCALE = "upscale"
    DRAIN = "drain"
    AWAIT_SCALE_DOWN = "await scale down"
    DOWNSCALE = "downscale"
    DONE = "done"


def validate_batch_size(batch_size: int) -> int:
    """Check that the batch size is a positive multiple of the number of zones."""
    if batch_size <= 0 or batch_size % REQUIRED_ZONES != 0:
        raise PreconditionError(f"The batch size must be a positive multiple of {REQUIRED_ZONES}, got {batch_size}")

    return batch_size


def validate_retire_time(retire_time: str) -> str:
    """Check that the retire time is in the label safe format used when labeling the nodes."""
    try:
        datetime.strptime(retire_time, RETIRE_TIME_FORMAT)
    except ValueError as error:
        raise PreconditionError(
            f"Invalid retire time '{retire_time}', expected something like 2024-05-01T10-00-00Z"
        ) from error

    return retire_time


def new_retire_time(now: Optional[datetime] = None) -> str:
    """Retire time for a fresh roll, ISO 8601 in UTC with dashes instead of colons to be a valid label value."""
    return (now or datetime.now(timezone.utc)).strftime(RETIRE_TIME_FORMAT)


@dataclass(frozen=True)
class RollOpts:
    """Validated options of a roll."""

    kube_context: str
    aws_profile: str
    role: str
    retire_time: str
    resuming: bool = False
    batch_size: int = 3
    drain_timeout: int = 600
    verbose_report: bool = False
    report_only: bool = False
    aws_region: Optional[str] = None
    snapshots_file: Path = Path("./snapshots.json")
    settings: Settings = field(default_factory=Settings)

    def __post_init__(self):
        """Validate the options."""
        if not self.role:
            raise PreconditionError("The node role can't be empty")

        validate_batch_size(self.batch_size)
        validate_retire_time(self.retire_time)
        if self.drain_timeout <= 0:
            raise PreconditionError(f"The drain timeout must be a positive number of seconds, got {self.drain_timeout}")

    @classmethod
    def from_args(cls, args: argparse.Namespace, settings: Settings) -> "RollOpts":
        """Get the options from the parsed command line and the loaded settings."""
        return cls(
            kube_context=args.kube_context,
            aws_profile=args.aws_profile,
            aws_region=args.aws_region,
            role=args.role,
            retire_time=args.resume or new_retire_time(),
            resuming=args.resume is not None,
            batch_size=args.batch_size,
            drain_timeout=args.drain_timeout,
            verbose_report=args.verbose_report,
            report_only=args.report_only,
            snapshots_file=args.snapshots_file or settings.snapshots_file,
            settings=settings,
        )


class RollNodes:
    """Zero downtime roll of the kubernetes nodes of a role backed by an autoscaling group."""

    def argument_parser(self) -> argparse.ArgumentParser:
        """Parse the command line arguments."""
        parser = argparse.ArgumentParser(
            prog="kube-asg-roll",
            description=__doc__,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--kube-context", required=True, help="Kubeconfig context of the cluster.")
        parser.add_argument("--aws-profile", required=True, help="AWS profile with access to the autoscaling group.")
        parser.add_argument("--aws-region", default=None, help="AWS region, if not the one of the profile.")
        parser.add_argument("--role", required=True, help="Value of the role label of the nodes to roll.")
        parser.add_argument(
            "--resume",
            metavar="RETIRE_TIME",
            default=None,
            help="Resume the roll that labeled the nodes with this retire time, skipping labeling and upscaling.",
        )
        parser.add_argument(
            "--drain-timeout",
            type=int,
            default=600,
            help="Seconds to wait for a node to drain, after that it's terminated anyhow.",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=3,
            help="Number of nodes replaced per batch, must be a multiple of 3.",
        )
        parser.add_argument(
            "--verbose-report",
            action="store_true",
            help="Add to the reports the list of the added and removed nodes and instances.",
        )
        parser.add_argument(
            "--report-only",
            action="store_true",
            help="Only print the report of the changes since the first snapshot, don't roll anything.",
        )
        parser.add_argument("--config", type=Path, default=None, help="Path to a yaml settings file.")
        parser.add_argument(
            "--snapshots-file",
            type=Path,
            default=None,
            help="Path to the snapshots file, defaults to the one in the settings (./snapshots.json).",
        )
        parser.add_argument("--log-dir", type=Path, default=None, help="Also write the logs to a file in here.")
        parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level.")

        return parser

    def get_runner(
        self, args: argparse.Namespace, cancel_event: Optional[threading.Event] = None
    ) -> "RollNodesRunner":
        """Get the runner for the parsed arguments, connected to the real cluster and AWS account."""
        settings = Settings.from_file(args.config)
        opts = RollOpts.from_args(args, settings)
        waiter = Waiter(cancel_event)
        return RollNodesRunner(
            opts=opts,
            kubernetes=KubernetesController.from_context(
                kube_context=opts.kube_context, label_keys=settings.labels, sleep=waiter.sleep
            ),
            autoscaling=AutoScalingController.from_profile(profile=opts.aws_profile, region=opts.aws_region),
            cancel_event=waiter.cancel_event,
        )


class RollNodesRunner:
    """Runner for RollNodes."""

    def __init__(
        self,
        opts: RollOpts,
        kubernetes: KubernetesController,
        autoscaling: AutoScalingController,
        stream: Optional[TextIO] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Init."""
        self.opts = opts
        self.kubernetes = kubernetes
        self.autoscaling = autoscaling
        self.stream = stream
        self.phase = RollPhase.INIT
        self.waiter = Waiter(cancel_event)
        self.retrier = Retrier(opts.settings.retry, self.waiter)
        self.poll = opts.settings.poll
        self.labels = opts.settings.labels
        self.balance = ZoneBalanceChecker(
            kubernetes=kubernetes, role=opts.role, retrier=self.retrier, waiter=self.waiter, poll_opts=self.poll
        )
        self.store = SnapshotStore(path=opts.snapshots_file, capture=self._capture)
        self.asg_name: Optional[str] = None
        self.reporter = Reporter(store=self.store, asg_name="", stream=stream, verbose=opts.verbose_report)
        self.run_timestamp: Optional[str] = None

    @property
    def runtime_description(self) -> str:
        """Short description of the roll for the logs."""
        return f"roll of role '{self.opts.role}' with retire time {self.opts.retire_time}"

    def _enter(self, phase: RollPhase) -> None:
        self.phase = phase
        LOGGER.info("Phase: %s", phase.value)

    def _retiring_filter(self) -> Dict[str, str]:
        return {self.labels.retiring: self.opts.retire_time}

    def _capture(self) -> Tuple[AutoScalingGroup, List[Node]]:
        nodes = self.retrier.call(self.kubernetes.list_nodes, self.opts.role)
        return self._describe_asg(), nodes

    def _describe_asg(self) -> AutoScalingGroup:
        return self.retrier.call(self.autoscaling.describe_asg, self.asg_name)

    def _report(self) -> None:
        self.reporter.run_report(self.run_timestamp)

    def run(self) -> None:
        """Main entry point."""
        if self.opts.report_only:
            self._report_only()
            return

        LOGGER.info("Starting %s", self.runtime_description)
        if self.opts.resuming:
            LOGGER.info("Resuming, the nodes are already labeled")
        else:
            self._enter(RollPhase.LABEL_FOR_CYCLING)
            self._label_for_cycling()

        self._enter(RollPhase.DISCOVER_ASG)
        asg = self._discover_asg(label_filters=self._retiring_filter())
        self._check_asg(asg)
        self.run_timestamp = self.reporter.run_report()

        size = asg.min_size
        # a resumed roll can have stopped before or in the middle of the upscale
        if not self.opts.resuming or asg.desired_capacity == size:
            self._enter(RollPhase.UPSCALE)
            self._upscale(size)
            self._report()
        elif set(UPSCALE_SUSPENDED_PROCESSES) - set(asg.suspended_processes):
            self._enter(RollPhase.UPSCALE)
            self._finish_upscale()

        self._enter(RollPhase.DRAIN)
        self._drain(size)

        self._enter(RollPhase.AWAIT_SCALE_DOWN)
        self._await_scale_down(size)

        self._enter(RollPhase.DOWNSCALE)
        self._downscale(size)
        self._report()

        self._enter(RollPhase.DONE)
        LOGGER.info("Roll of role '%s' completed successfully", self.opts.role)

    def _report_only(self) -> None:
        self._discover_asg(label_filters=None)
        try:
            since: Optional[str] = self.store.first_timestamp()
        except SnapshotNotFound:
            since = None

        self.reporter.run_report(since)

    def _label_for_cycling(self) -> None:
        """Label and cordon all the nodes of the role, the set of nodes to roll is decided here once."""
        nodes = self.retrier.call(self.kubernetes.list_nodes, self.opts.role)
        if not nodes:
            raise PreconditionError(f"No nodes found with {self.labels.role}={self.opts.role}")

        for node in nodes:
            self.retrier.call(
                self.kubernetes.label_node, node.name, self.labels.retiring, self.opts.retire_time, overwrite=True
            )
            self.retrier.call(self.kubernetes.cordon_node, node.name)
            LOGGER.info("Labeled node %s with %s=%s and cordoned it", node.name, self.labels.retiring,
                        self.opts.retire_time)

        LOGGER.info("%d nodes will be retired, to resume this roll use --resume %s", len(nodes), self.opts.retire_time)

    def _discover_asg(self, label_filters: Optional[Dict[str, str]]) -> AutoScalingGroup:
        """Find the autoscaling group through the instance of the first node matching the filters.

        The instance can be going away in the meantime (a resumed roll for example), in that case it waits and
        tries again with the current nodes.
        """
        asg_name: Optional[str] = None

        def _found() -> bool:
            nonlocal asg_name
            nodes = self.retrier.call(self.kubernetes.list_nodes, self.opts.role, label_filters)
            if not nodes:
                raise PreconditionError(
                    f"No nodes found with {self.labels.role}={self.opts.role} and labels {label_filters or {}}"
                )

            try:
                instance = self.retrier.call(self.autoscaling.describe_instance_by_private_dns, nodes[0].name)
            except (AwsInstanceTerminating, AwsNotFound) as error:
                LOGGER.info("Unable to use node %s to find the autoscaling group: %s", nodes[0].name, error)
                return False

            if instance.asg_name:
                asg_name = instance.asg_name
            else:
                try:
                    asg_name = self.retrier.call(self.autoscaling.find_asg_for_instance, instance.instance_id)
                except AwsNotFound as error:
                    raise PreconditionError(
                        f"Node {nodes[0].name} ({instance.instance_id}) is not managed by an autoscaling group"
                    ) from error

            return True

        self.waiter.wait_for(
            check=_found,
            description=f"an instance of the '{self.opts.role}' nodes to find their autoscaling group",
            interval_seconds=self.poll.discovery_interval_seconds,
            timeout_seconds=self.poll.timeout_seconds,
        )
        self.asg_name = asg_name
        self.reporter.asg_name = asg_name
        asg = self._describe_asg()
        LOGGER.info(
            "Found autoscaling group %s (min=%d, max=%d, desired=%d)",
            asg.name,
            asg.min_size,
            asg.max_size,
            asg.desired_capacity,
        )
        return asg

    def _check_asg(self, asg: AutoScalingGroup) -> None:
        batch_size = self.opts.batch_size
        if batch_size > asg.min_size:
            raise PreconditionError(
                f"The batch size {batch_size} is bigger than the size {asg.min_size} of autoscaling group {asg.name}"
            )

        if asg.min_size % batch_size != 0:
            raise PreconditionError(
                f"The batch size {batch_size} does not evenly divide the size {asg.min_size} of autoscaling group "
                f"{asg.name}"
            )

        if not self.opts.resuming and not asg.min_size == asg.max_size == asg.desired_capacity:
            raise PreconditionError(
                f"Autoscaling group {asg.name} is not at rest (min={asg.min_size}, max={asg.max_size}, "
                f"desired={asg.desired_capacity}), if a previous roll was interrupted use --resume"
            )

    def _count_new_ready_nodes(self) -> int:
        nodes = self.retrier.call(self.kubernetes.list_nodes, self.opts.role)
        return len([node for node in nodes if node.ready and node.retiring is None])

    def _wait_for_new_ready_nodes(self, count: int) -> None:
        def _enough() -> bool:
            ready = self._count_new_ready_nodes()
            LOGGER.debug("%d/%d new Ready nodes", ready, count)
            return ready >= count

        self.waiter.wait_for(
            check=_enough,
            description=f"{count} new Ready '{self.opts.role}' nodes",
            interval_seconds=self.poll.ready_nodes_interval_seconds,
            timeout_seconds=self.poll.timeout_seconds,
        )

    def _upscale(self, size: int) -> None:
        """Grow the group by one batch, so the first batch of old nodes can go without losing capacity."""
        new_size = size + self.opts.batch_size
        self.retrier.call(self.autoscaling.resize_asg, self.asg_name, desired=new_size, max_size=new_size)
        self._finish_upscale()

    def _finish_upscale(self) -> None:
        self._wait_for_new_ready_nodes(self.opts.batch_size)
        self.retrier.call(self.autoscaling.suspend_processes, self.asg_name, UPSCALE_SUSPENDED_PROCESSES)
        self.balance.assert_balance()

    def _drain(self, size: int) -> None:
        """Drain and terminate the retiring nodes in zone interleaved order.

        The counter tracks how many new Ready nodes must exist before a node is retired. A resumed roll has less
        retiring nodes left, so it starts further on and it doesn't wait again for the batches already done.
        """
        batch_size = self.opts.batch_size
        retiring = self.retrier.call(self.kubernetes.list_nodes, self.opts.role, self._retiring_filter())
        ordered = interleave_by_zone(retiring)
        counter = batch_size + size - len(ordered)
        LOGGER.info("%d nodes to retire, starting at position %d of %d", len(ordered), counter, size)

        for node in ordered:
            if counter % batch_size == 0 and counter < size:
                self._wait_for_new_ready_nodes(counter)
            elif counter == size:
                LOGGER.info("Starting the last batch, freezing the group at its final size")
                self._report()
                self._wait_for_new_ready_nodes(size)
                self.retrier.call(self.autoscaling.suspend_processes, self.asg_name, FINAL_BATCH_SUSPENDED_PROCESSES)
                self._report()

            self._retire_node(node)
            counter += 1

    def _retire_node(self, node: Node) -> None:
        try:
            instance = self.retrier.call(self.autoscaling.describe_instance_by_private_dns, node.name)
        except (AwsNotFound, AwsInstanceTerminating) as error:
            LOGGER.warning("Skipping node %s, its instance is already gone: %s", node.name, error)
            return

        result = self.kubernetes.drain_node(node.name, timeout_seconds=self.opts.drain_timeout)
        if result.status == DrainStatus.TIMED_OUT:
            LOGGER.warning("Node %s did not drain in %ss, terminating it anyhow", node.name, self.opts.drain_timeout)
        elif result.status == DrainStatus.FAILED:
            LOGGER.error(
                "Unable to drain node %s (%s), API status %s, terminating it anyhow",
                node.name,
                instance.instance_id,
                result.code,
            )
        else:
            LOGGER.info("Drained node %s", node.name)

        self.retrier.call(self.autoscaling.terminate_instance, instance.instance_id)
        LOGGER.info("Retired node %s (%s, %s)", node.name, instance.instance_id, instance.zone)

    def _await_scale_down(self, size: int) -> None:
        self.waiter.sleep(self.poll.scale_down_settle_seconds)

        def _scaled_down() -> bool:
            instances = len(self._describe_asg().instances)
            LOGGER.debug("Autoscaling group %s has %d/%d instances", self.asg_name, instances, size)
            return instances == size

        self.waiter.wait_for(
            check=_scaled_down,
            description=f"autoscaling group {self.asg_name} to go back to {size} instances",
            interval_seconds=self.poll.scale_down_interval_seconds,
            timeout_seconds=self.poll.timeout_seconds,
        )

    def _downscale(self, size: int) -> None:
        self.retrier.call(self.autoscaling.resize_asg, self.asg_name, desired=size, max_size=size)
        self.balance.assert_balance()
        self.retrier.call(self.autoscaling.resume_processes, self.asg_name, RESUMED_PROCESSES)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run a roll from the command line, returns the exit code."""
    cookbook = RollNodes()
    args = cookbook.argument_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, log_dir=args.log_dir)

    cancel_event = threading.Event()

    def _cancel(signum, _frame):
        LOGGER.warning("Got signal %s, stopping at the next wait", signal.Signals(signum).name)
        cancel_event.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)

    runner: Optional[RollNodesRunner] = None
    try:
        runner = cookbook.get_runner(args, cancel_event=cancel_event)
        runner.run()
    except RollError as error:
        LOGGER.error("%s: %s", type(error).__name__, error)
        if runner is not None and not runner.opts.report_only:
            if runner.phase in (RollPhase.INIT, RollPhase.LABEL_FOR_CYCLING) and not runner.opts.resuming:
                LOGGER.error("The nodes were not all labeled yet, start the roll again without --resume")
            else:
                LOGGER.error(
                    "Roll stopped in phase '%s', to continue it use --resume %s",
                    runner.phase.value,
                    runner.opts.retire_time,
                )
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
