"""AWS autoscaling and EC2 related library functions and classes."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from kube_asg_roll.libs.common import PreconditionError, TransientApiError

LOGGER = logging.getLogger(__name__)
ASG_NAME_TAG = "aws:autoscaling:groupName"
TERMINATING_STATES = ("shutting-down", "terminated")


class AwsError(Exception):
    """Parent class for all AWS related errors."""


class AwsApiError(AwsError, TransientApiError):
    """Risen when an AWS API call fails."""


class AwsNotFound(AwsError):
    """Risen when the requested instance or autoscaling group does not exist."""


class AwsInstanceTerminating(AwsError):
    """Risen when the instance backing a node is already going away."""


@dataclass(frozen=True)
class Instance:
    """EC2 instance, as returned by describe-instances."""

    instance_id: str
    zone: str
    private_dns_name: str
    state: str
    asg_name: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Instance":
        """Get an instance from an entry of the Reservations[].Instances list."""
        tags = {tag["Key"]: tag["Value"] for tag in data.get("Tags", [])}
        return cls(
            instance_id=data["InstanceId"],
            zone=data.get("Placement", {}).get("AvailabilityZone", ""),
            private_dns_name=data.get("PrivateDnsName", ""),
            state=data.get("State", {}).get("Name", ""),
            asg_name=tags.get(ASG_NAME_TAG),
        )


@dataclass(frozen=True)
class AsgInstance:
    """Instance as listed by its autoscaling group."""

    instance_id: str
    zone: str

    def to_dict(self) -> Dict[str, str]:
        """Serialize the instance for a snapshot."""
        return {"id": self.instance_id, "zone": self.zone}


@dataclass(frozen=True)
class AutoScalingGroup:
    """Autoscaling group, reduced to what the roll needs."""

    name: str
    min_size: int
    max_size: int
    desired_capacity: int
    instances: Tuple[AsgInstance, ...] = ()
    suspended_processes: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AutoScalingGroup":
        """Get a group from an entry of the describe-auto-scaling-groups AutoScalingGroups list."""
        return cls(
            name=data["AutoScalingGroupName"],
            min_size=data["MinSize"],
            max_size=data["MaxSize"],
            desired_capacity=data["DesiredCapacity"],
            instances=tuple(
                AsgInstance(instance_id=instance["InstanceId"], zone=instance["AvailabilityZone"])
                for instance in data.get("Instances", [])
            ),
            suspended_processes=tuple(
                process["ProcessName"] for process in data.get("SuspendedProcesses", [])
            ),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoScalingGroup":
        """Get a group from the dict stored in a snapshot."""
        return cls(
            name=data["name"],
            min_size=data["min_size"],
            max_size=data["max_size"],
            desired_capacity=data["desired_capacity"],
            instances=tuple(
                AsgInstance(instance_id=instance["id"], zone=instance["zone"]) for instance in data["instances"]
            ),
            suspended_processes=tuple(data["suspended_processes"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the group for a snapshot."""
        return {
            "name": self.name,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "desired_capacity": self.desired_capacity,
            "instances": [instance.to_dict() for instance in self.instances],
            "suspended_processes": list(self.suspended_processes),
        }


def _client_error(error: ClientError, action: str) -> AwsApiError:
    code = error.response.get("Error", {}).get("Code", "Unknown")
    return AwsApiError(f"Unable to {action}: ({code}) {error}", code=code)


class AutoScalingController:
    """Controller for autoscaling groups and their instances."""

    def __init__(self, autoscaling_client: Any, ec2_client: Any):
        """Init."""
        self._autoscaling = autoscaling_client
        self._ec2 = ec2_client

    @classmethod
    def from_profile(cls, profile: str, region: Optional[str] = None) -> "AutoScalingController":
        """Get a controller using the credentials of the given AWS profile."""
        try:
            session = boto3.session.Session(profile_name=profile, region_name=region)
            return cls(autoscaling_client=session.client("autoscaling"), ec2_client=session.client("ec2"))
        except (ProfileNotFound, BotoCoreError) as error:
            raise PreconditionError(f"Unable to set up AWS clients for profile '{profile}': {error}") from error

    def describe_instance_by_private_dns(self, private_dns_name: str) -> Instance:
        """Get the instance whose private DNS name is the given one (the kubernetes node name)."""
        try:
            response = self._ec2.describe_instances(
                Filters=[{"Name": "network-interface.private-dns-name", "Values": [private_dns_name]}]
            )
        except ClientError as error:
            raise _client_error(error, f"describe instance {private_dns_name}") from error

        instances = [
            Instance.from_api(instance)
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instances:
            raise AwsNotFound(f"No instance found with private DNS name {private_dns_name}")

        # the DNS name of a terminated instance can already be reused by a new one
        for instance in instances:
            if instance.state not in TERMINATING_STATES:
                return instance

        states = ", ".join(f"{instance.instance_id} is {instance.state}" for instance in instances)
        raise AwsInstanceTerminating(
            f"All the instances with private DNS name {private_dns_name} are going away: {states}"
        )

    def terminate_instance(self, instance_id: str) -> None:
        """Terminate the given instance."""
        try:
            self._ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as error:
            raise _client_error(error, f"terminate instance {instance_id}") from error

        LOGGER.info("Terminated instance %s", instance_id)

    def describe_asg(self, name: str) -> AutoScalingGroup:
        """Get the current state of the autoscaling group."""
        try:
            response = self._autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[name])
        except ClientError as error:
            raise _client_error(error, f"describe autoscaling group {name}") from error

        groups = response.get("AutoScalingGroups", [])
        if not groups:
            raise AwsNotFound(f"Autoscaling group {name} not found")

        return AutoScalingGroup.from_api(groups[0])

    def resize_asg(self, name: str, desired: int, max_size: int) -> None:
        """Set the desired capacity and max size of the group, the min size is left as is."""
        try:
            self._autoscaling.update_auto_scaling_group(
                AutoScalingGroupName=name, DesiredCapacity=desired, MaxSize=max_size
            )
        except ClientError as error:
            raise _client_error(error, f"resize autoscaling group {name}") from error

        LOGGER.info("Resized autoscaling group %s to desired=%d max=%d", name, desired, max_size)

    def suspend_processes(self, name: str, processes: Iterable[str]) -> None:
        """Suspend the given scaling processes of the group."""
        processes = list(processes)
        try:
            self._autoscaling.suspend_processes(AutoScalingGroupName=name, ScalingProcesses=processes)
        except ClientError as error:
            raise _client_error(error, f"suspend processes {processes} of {name}") from error

        LOGGER.info("Suspended processes %s of autoscaling group %s", ", ".join(processes), name)

    def resume_processes(self, name: str, processes: Iterable[str]) -> None:
        """Resume the given scaling processes of the group."""
        processes = list(processes)
        try:
            self._autoscaling.resume_processes(AutoScalingGroupName=name, ScalingProcesses=processes)
        except ClientError as error:
            raise _client_error(error, f"resume processes {processes} of {name}") from error

        LOGGER.info("Resumed processes %s of autoscaling group %s", ", ".join(processes), name)

    def list_asgs(self) -> List[AutoScalingGroup]:
        """Get all the autoscaling groups of the account and region."""
        try:
            paginator = self._autoscaling.get_paginator("describe_auto_scaling_groups")
            return [
                AutoScalingGroup.from_api(group)
                for page in paginator.paginate()
                for group in page.get("AutoScalingGroups", [])
            ]
        except ClientError as error:
            raise _client_error(error, "list autoscaling groups") from error

    def find_asg_for_instance(self, instance_id: str) -> str:
        """Get the name of the autoscaling group that contains the given instance."""
        for group in self.list_asgs():
            if any(instance.instance_id == instance_id for instance in group.instances):
                return group.name

        raise AwsNotFound(f"No autoscaling group contains instance {instance_id}")
