from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest import mock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from kube_asg_roll.libs.common import LabelKeys, TestUtils
from kube_asg_roll.libs.kubernetes import (
    DrainResult,
    DrainStatus,
    KubernetesApiError,
    KubernetesController,
    KubernetesLabelConflict,
    KubernetesNodeNotFound,
    Node,
)


def get_api_node(
    name: str = "ip-10-0-0-1.eu-west-1.compute.internal",
    labels: Optional[Dict[str, str]] = None,
    ready: str = "True",
) -> client.V1Node:
    return client.V1Node(
        metadata=client.V1ObjectMeta(
            name=name,
            labels=labels if labels is not None else {"role": "worker"},
            creation_timestamp=datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc),
        ),
        status=client.V1NodeStatus(
            conditions=[
                client.V1NodeCondition(type="MemoryPressure", status="False"),
                client.V1NodeCondition(type="Ready", status=ready),
            ]
        ),
    )


def get_api_pod(
    name: str, namespace: str = "default", owner_kind: Optional[str] = None, mirror: bool = False
) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            owner_references=[
                client.V1OwnerReference(api_version="apps/v1", kind=owner_kind, name="owner", uid="uid")
            ]
            if owner_kind
            else None,
            annotations={"kubernetes.io/config.mirror": "hash"} if mirror else None,
        )
    )


def get_controller() -> KubernetesController:
    return KubernetesController(
        core_api=mock.create_autospec(spec=client.CoreV1Api, spec_set=True, instance=True),
        policy_api=mock.create_autospec(spec=client.PolicyV1Api, spec_set=True, instance=True),
        label_keys=LabelKeys(),
        sleep=lambda _: None,
        eviction_retry_seconds=0,
    )


@pytest.mark.parametrize(
    **TestUtils.to_parametrize(
        {
            "Ready node with topology zone": {
                "api_node": get_api_node(labels={"role": "worker", "topology.kubernetes.io/zone": "eu-west-1a"}),
                "expected_node": Node(
                    name="ip-10-0-0-1.eu-west-1.compute.internal",
                    zone="eu-west-1a",
                    ready=True,
                    retiring=None,
                    creation_timestamp="2024-05-01T10:00:00Z",
                ),
            },
            "Not ready retiring node with the legacy zone label": {
                "api_node": get_api_node(
                    labels={
                        "role": "worker",
                        "failure-domain.beta.kubernetes.io/zone": "eu-west-1b",
                        "retiring": "2024-05-01T10-00-00Z",
                    },
                    ready="Unknown",
                ),
                "expected_node": Node(
                    name="ip-10-0-0-1.eu-west-1.compute.internal",
                    zone="eu-west-1b",
                    ready=False,
                    retiring="2024-05-01T10-00-00Z",
                    creation_timestamp="2024-05-01T10:00:00Z",
                ),
            },
            "Node without zone yet": {
                "api_node": get_api_node(labels=None),
                "expected_node": Node(
                    name="ip-10-0-0-1.eu-west-1.compute.internal",
                    zone="",
                    ready=True,
                    retiring=None,
                    creation_timestamp="2024-05-01T10:00:00Z",
                ),
            },
        }
    )
)
def test_Node_from_api(api_node: client.V1Node, expected_node: Node):
    gotten_node = Node.from_api(api_node, LabelKeys())

    assert gotten_node == expected_node


def test_Node_node_id_changes_when_the_name_is_reused():
    old_node = Node(name="node1", zone="a", ready=True, retiring=None, creation_timestamp="2024-05-01T10:00:00Z")
    new_node = Node(name="node1", zone="a", ready=True, retiring=None, creation_timestamp="2024-05-02T10:00:00Z")

    assert old_node.node_id != new_node.node_id


def test_Node_to_dict_and_from_dict():
    node = Node(name="node1", zone="a", ready=True, retiring="2024-05-01T10-00-00Z", creation_timestamp="ts")

    serialized = node.to_dict()

    assert serialized["id"] == "node1-ts"
    assert Node.from_dict(serialized) == node


@pytest.mark.parametrize(
    **TestUtils.to_parametrize(
        {
            "Only the role": {
                "label_filters": None,
                "expected_selector": "role=worker",
            },
            "Role and retiring label": {
                "label_filters": {"retiring": "2024-05-01T10-00-00Z"},
                "expected_selector": "role=worker,retiring=2024-05-01T10-00-00Z",
            },
        }
    )
)
def test_KubernetesController_list_nodes_selector(label_filters: Optional[Dict[str, str]], expected_selector: str):
    controller = get_controller()
    controller._core_api.list_node.return_value = client.V1NodeList(items=[get_api_node()])

    gotten_nodes = controller.list_nodes("worker", label_filters=label_filters)

    controller._core_api.list_node.assert_called_once_with(label_selector=expected_selector)
    assert [node.name for node in gotten_nodes] == ["ip-10-0-0-1.eu-west-1.compute.internal"]


@pytest.mark.parametrize(
    **TestUtils.to_parametrize(
        {
            "Not found": {
                "status": 404,
                "expected_exception": KubernetesNodeNotFound,
            },
            "Server error": {
                "status": 500,
                "expected_exception": KubernetesApiError,
            },
        }
    )
)
def test_KubernetesController_get_node_raising(status: int, expected_exception: type):
    controller = get_controller()
    controller._core_api.read_node.side_effect = ApiException(status=status, reason="nope")

    with pytest.raises(expected_exception):
        controller.get_node("node1")


def test_KubernetesController_api_error_keeps_the_status_code():
    controller = get_controller()
    controller._core_api.list_node.side_effect = ApiException(status=503, reason="unavailable")

    with pytest.raises(KubernetesApiError) as error:
        controller.list_nodes("worker")

    assert error.value.code == 503


@pytest.mark.parametrize(
    **TestUtils.to_parametrize(
        {
            "No previous value": {
                "current_labels": {"role": "worker"},
                "overwrite": False,
            },
            "Same previous value": {
                "current_labels": {"role": "worker", "retiring": "2024-05-01T10-00-00Z"},
                "overwrite": False,
            },
            "Different previous value and overwrite": {
                "current_labels": {"role": "worker", "retiring": "2023-01-01T00-00-00Z"},
                "overwrite": True,
            },
        }
    )
)
def test_KubernetesController_label_node_happy_path(current_labels: Dict[str, str], overwrite: bool):
    controller = get_controller()
    controller._core_api.read_node.return_value = get_api_node(labels=current_labels)

    controller.label_node("node1", "retiring", "2024-05-01T10-00-00Z", overwrite=overwrite)

    controller._core_api.patch_node.assert_called_once_with(
        "node1", {"metadata": {"labels": {"retiring": "2024-05-01T10-00-00Z"}}}
    )


def test_KubernetesController_label_node_refuses_to_change_a_label():
    controller = get_controller()
    controller._core_api.read_node.return_value = get_api_node(
        labels={"role": "worker", "retiring": "2023-01-01T00-00-00Z"}
    )

    with pytest.raises(KubernetesLabelConflict):
        controller.label_node("node1", "retiring", "2024-05-01T10-00-00Z")

    controller._core_api.patch_node.assert_not_called()


def test_KubernetesController_cordon_node():
    controller = get_controller()

    controller.cordon_node("node1")

    controller._core_api.patch_node.assert_called_once_with("node1", {"spec": {"unschedulable": True}})


def test_KubernetesController_get_evictable_pods_skips_daemonsets_and_mirror_pods():
    controller = get_controller()
    controller._core_api.list_pod_for_all_namespaces.return_value = client.V1PodList(
        items=[
            get_api_pod("app", owner_kind="ReplicaSet"),
            get_api_pod("fluentd", namespace="kube-system", owner_kind="DaemonSet"),
            get_api_pod("kube-proxy", namespace="kube-system", mirror=True),
            get_api_pod("bare"),
        ]
    )

    gotten_pods = controller.get_evictable_pods("node1")

    assert [pod.metadata.name for pod in gotten_pods] == ["app", "bare"]
    controller._core_api.list_pod_for_all_namespaces.assert_called_once_with(field_selector="spec.nodeName=node1")


@pytest.mark.parametrize(
    **TestUtils.to_parametrize(
        {
            "Node without pods": {
                "pod_lists": [[]],
                "eviction_side_effect": [],
                "expected_result": DrainResult(status=DrainStatus.DRAINED),
                "expected_evictions": 0,
            },
            "Pods go away after the eviction": {
                "pod_lists": [[get_api_pod("app1"), get_api_pod("app2")], [get_api_pod("app2")], []],
                "eviction_side_effect": [None, None],
                "expected_result": DrainResult(status=DrainStatus.DRAINED),
                "expected_evictions": 2,
            },
            "Eviction refused by a disruption budget is tried again": {
                "pod_lists": [[get_api_pod("app1")], []],
                "eviction_side_effect": [ApiException(status=429, reason="Too Many Requests"), None],
                "expected_result": DrainResult(status=DrainStatus.DRAINED),
                "expected_evictions": 2,
            },
            "Pod already gone": {
                "pod_lists": [[get_api_pod("app1")], []],
                "eviction_side_effect": [ApiException(status=404, reason="Not Found")],
                "expected_result": DrainResult(status=DrainStatus.DRAINED),
                "expected_evictions": 1,
            },
            "Eviction error": {
                "pod_lists": [[get_api_pod("app1")]],
                "eviction_side_effect": [ApiException(status=500, reason="Internal Server Error")],
                "expected_result": DrainResult(status=DrainStatus.FAILED, code=500),
                "expected_evictions": 1,
            },
        }
    )
)
def test_KubernetesController_drain_node(
    pod_lists: List[List[client.V1Pod]],
    eviction_side_effect: List[Any],
    expected_result: DrainResult,
    expected_evictions: int,
):
    controller = get_controller()
    controller._core_api.list_pod_for_all_namespaces.side_effect = [
        client.V1PodList(items=pods) for pods in pod_lists
    ]
    controller._policy_api.create_namespaced_pod_eviction.side_effect = eviction_side_effect

    gotten_result = controller.drain_node("node1", timeout_seconds=60)

    assert gotten_result == expected_result
    assert controller._policy_api.create_namespaced_pod_eviction.call_count == expected_evictions


def test_KubernetesController_drain_node_times_out_when_pods_stay():
    controller = get_controller()
    controller._core_api.list_pod_for_all_namespaces.return_value = client.V1PodList(items=[get_api_pod("app1")])

    gotten_result = controller.drain_node("node1", timeout_seconds=0)

    assert gotten_result == DrainResult(status=DrainStatus.TIMED_OUT)
