"""Kubernetes related library functions and classes."""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from kube_asg_roll.libs.common import LabelKeys, PreconditionError, TransientApiError

LOGGER = logging.getLogger(__name__)
# Set by older cloud controllers, only used when the topology label is missing
LEGACY_ZONE_LABEL = "failure-domain.beta.kubernetes.io/zone"
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
KUBE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class KubernetesError(Exception):
    """Parent class for all kubernetes related errors."""


class KubernetesApiError(KubernetesError, TransientApiError):
    """Risen when the kubernetes API returns an error."""


class KubernetesNodeNotFound(KubernetesError):
    """Risen when the given node does not exist."""


class KubernetesLabelConflict(KubernetesError):
    """Risen when a label already has a different value and overwriting was not requested."""


class DrainStatus(Enum):
    """Possible outcomes of a node drain."""

    DRAINED = "drained"
    TIMED_OUT = "timed out"
    FAILED = "failed"


@dataclass(frozen=True)
class DrainResult:
    """Outcome of a node drain, code is the API status code of a failed drain."""

    status: DrainStatus
    code: Optional[int] = None


def _format_timestamp(timestamp: Any) -> str:
    if isinstance(timestamp, datetime):
        return timestamp.strftime(KUBE_TIMESTAMP_FORMAT)

    return str(timestamp) if timestamp is not None else ""


@dataclass(frozen=True)
class Node:
    """Kubernetes node, reduced to what the roll needs."""

    name: str
    zone: str
    ready: bool
    retiring: Optional[str]
    creation_timestamp: str

    @property
    def node_id(self) -> str:
        """Identity of the node, the name alone can be reused by a new node."""
        return f"{self.name}-{self.creation_timestamp}"

    @classmethod
    def from_api(cls, node: client.V1Node, label_keys: LabelKeys) -> "Node":
        """Get a node from a V1Node as returned by the API."""
        labels = node.metadata.labels or {}
        conditions = (node.status.conditions if node.status else None) or []
        return cls(
            name=node.metadata.name,
            zone=labels.get(label_keys.zone) or labels.get(LEGACY_ZONE_LABEL) or "",
            ready=any(condition.type == "Ready" and condition.status == "True" for condition in conditions),
            retiring=labels.get(label_keys.retiring),
            creation_timestamp=_format_timestamp(node.metadata.creation_timestamp),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Get a node from the dict stored in a snapshot."""
        return cls(
            name=data["name"],
            zone=data.get("zone") or "",
            ready=bool(data.get("ready", False)),
            retiring=data.get("retiring"),
            creation_timestamp=data.get("creation_timestamp", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node for a snapshot."""
        return {
            "id": self.node_id,
            "name": self.name,
            "zone": self.zone,
            "ready": self.ready,
            "retiring": self.retiring,
            "creation_timestamp": self.creation_timestamp,
        }


def _is_daemonset_pod(pod: client.V1Pod) -> bool:
    owner_references = pod.metadata.owner_references or []
    return any(owner.kind == "DaemonSet" for owner in owner_references)


def _is_mirror_pod(pod: client.V1Pod) -> bool:
    return MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {})


class KubernetesController:
    """Controller for the nodes of a kubernetes cluster."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        policy_api: client.PolicyV1Api,
        label_keys: LabelKeys = LabelKeys(),
        sleep: Callable[[float], None] = time.sleep,
        eviction_retry_seconds: float = 5.0,
    ):
        """Init."""
        self._core_api = core_api
        self._policy_api = policy_api
        self.label_keys = label_keys
        self._sleep = sleep
        self.eviction_retry_seconds = eviction_retry_seconds

    @classmethod
    def from_context(
        cls, kube_context: str, label_keys: LabelKeys, sleep: Callable[[float], None] = time.sleep
    ) -> "KubernetesController":
        """Get a controller talking to the cluster of the given kubeconfig context."""
        try:
            api_client = config.new_client_from_config(context=kube_context)
        except ConfigException as error:
            raise PreconditionError(f"Unable to load kubeconfig context '{kube_context}': {error}") from error

        return cls(
            core_api=client.CoreV1Api(api_client),
            policy_api=client.PolicyV1Api(api_client),
            label_keys=label_keys,
            sleep=sleep,
        )

    @staticmethod
    def _api_error(error: ApiException, action: str) -> KubernetesError:
        if error.status == 404:
            return KubernetesNodeNotFound(f"Unable to {action}, not found: {error.reason}")

        return KubernetesApiError(f"Unable to {action}: ({error.status}) {error.reason}", code=error.status)

    def list_nodes(self, role: str, label_filters: Optional[Dict[str, str]] = None) -> List[Node]:
        """Get the nodes with the given role, optionally filtered by more labels."""
        selector = {self.label_keys.role: role}
        selector.update(label_filters or {})
        label_selector = ",".join(f"{key}={value}" for key, value in selector.items())
        try:
            response = self._core_api.list_node(label_selector=label_selector)
        except ApiException as error:
            raise self._api_error(error, f"list nodes with selector '{label_selector}'") from error

        return [Node.from_api(node, self.label_keys) for node in response.items]

    def get_node(self, name: str) -> Node:
        """Get only the given node."""
        try:
            return Node.from_api(self._core_api.read_node(name), self.label_keys)
        except ApiException as error:
            raise self._api_error(error, f"get node {name}") from error

    def label_node(self, name: str, key: str, value: str, overwrite: bool = False) -> None:
        """Set a label on a node, refusing to change an existing value unless overwrite is set."""
        try:
            if not overwrite:
                current = (self._core_api.read_node(name).metadata.labels or {}).get(key)
                if current is not None and current != value:
                    raise KubernetesLabelConflict(
                        f"Node {name} already has label {key}={current}, refusing to set it to {value}"
                    )

            self._core_api.patch_node(name, {"metadata": {"labels": {key: value}}})
        except ApiException as error:
            raise self._api_error(error, f"label node {name} with {key}={value}") from error

        LOGGER.debug("Labeled node %s with %s=%s", name, key, value)

    def cordon_node(self, name: str) -> None:
        """Mark the node as unschedulable."""
        try:
            self._core_api.patch_node(name, {"spec": {"unschedulable": True}})
        except ApiException as error:
            raise self._api_error(error, f"cordon node {name}") from error

        LOGGER.debug("Cordoned node %s", name)

    def get_evictable_pods(self, name: str) -> List[client.V1Pod]:
        """Get the pods running on the node that a drain has to evict (no daemonset nor mirror pods)."""
        pods = self._core_api.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={name}").items
        return [pod for pod in pods if not _is_daemonset_pod(pod) and not _is_mirror_pod(pod)]

    def _evict_pod(self, pod: client.V1Pod) -> bool:
        """Returns False when the eviction was refused by a disruption budget and has to be tried again."""
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=pod.metadata.name, namespace=pod.metadata.namespace),
        )
        try:
            self._policy_api.create_namespaced_pod_eviction(
                name=pod.metadata.name, namespace=pod.metadata.namespace, body=body
            )
        except ApiException as error:
            if error.status == 429:
                LOGGER.debug("Eviction of %s/%s refused for now", pod.metadata.namespace, pod.metadata.name)
                return False
            if error.status == 404:
                return True
            raise

        return True

    def drain_node(self, name: str, timeout_seconds: float) -> DrainResult:
        """Evict all the pods from the node and wait for them to be gone.

        It never raises for API errors, the outcome is in the returned DrainResult.
        """
        deadline = time.time() + timeout_seconds
        try:
            pending = [pod for pod in self.get_evictable_pods(name) if pod.metadata.deletion_timestamp is None]
            LOGGER.info("Draining node %s, evicting %d pods", name, len(pending))
            while pending:
                pending = [pod for pod in pending if not self._evict_pod(pod)]
                if not pending:
                    break

                if time.time() >= deadline:
                    LOGGER.warning("Node %s: %d pods could not be evicted in %ss", name, len(pending), timeout_seconds)
                    return DrainResult(status=DrainStatus.TIMED_OUT)

                self._sleep(self.eviction_retry_seconds)

            while True:
                remaining = self.get_evictable_pods(name)
                if not remaining:
                    break

                if time.time() >= deadline:
                    LOGGER.warning("Node %s: %d pods still running after %ss", name, len(remaining), timeout_seconds)
                    return DrainResult(status=DrainStatus.TIMED_OUT)

                self._sleep(self.eviction_retry_seconds)

        except ApiException as error:
            LOGGER.error("Error draining node %s: (%s) %s", name, error.status, error.reason)
            return DrainResult(status=DrainStatus.FAILED, code=error.status)

        return DrainResult(status=DrainStatus.DRAINED)
