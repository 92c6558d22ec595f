"""Pytest configuration and fixtures."""

import copy
import json
import threading
import time
import types
from typing import Any, Dict, List, Optional, Tuple

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from podmover.config.settings import MoverSettings
from podmover.lease import LeaseMap
from podmover.move import pods as pods_module
from podmover import retry as retry_module


DEFAULT_SCHEDULER = "default-scheduler"
RESERVED_SCHEDULER = "turbo-none-exist-scheduler"
LEGACY_ANNOTATION = "scheduler.alpha.kubernetes.io/name"


# ── Object builders ───────────────────────────────────────────


def make_template(
    scheduler: Optional[str] = DEFAULT_SCHEDULER,
    annotations: Optional[Dict[str, str]] = None,
    labels: Optional[Dict[str, str]] = None,
) -> client.V1PodTemplateSpec:
    return client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(
            labels=labels or {"app": "web"},
            annotations=annotations,
        ),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name="app", image="nginx:1.25")],
            scheduler_name=scheduler,
        ),
    )


def make_rc(name: str, namespace: str = "default", **template_kwargs) -> client.V1ReplicationController:
    return client.V1ReplicationController(
        api_version="v1",
        kind="ReplicationController",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, uid=f"uid-{name}"),
        spec=client.V1ReplicationControllerSpec(
            replicas=1,
            selector={"app": "web"},
            template=make_template(**template_kwargs),
        ),
    )


def make_rs(name: str, namespace: str = "default", **template_kwargs) -> client.V1ReplicaSet:
    return client.V1ReplicaSet(
        api_version="apps/v1",
        kind="ReplicaSet",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, uid=f"uid-{name}"),
        spec=client.V1ReplicaSetSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels={"app": "web"}),
            template=make_template(**template_kwargs),
        ),
    )


def make_pod(
    name: str,
    node: Optional[str] = "n1",
    namespace: str = "default",
    owner_kind: Optional[str] = None,
    owner_name: Optional[str] = None,
    phase: str = "Running",
    scheduler: Optional[str] = DEFAULT_SCHEDULER,
    annotations: Optional[Dict[str, str]] = None,
    grace: Optional[int] = None,
    created_by: Optional[Tuple[str, str]] = None,
) -> client.V1Pod:
    """Build a pod; ``created_by`` sets the legacy owner annotation."""
    owner_references = None
    if owner_kind:
        owner_references = [
            client.V1OwnerReference(
                api_version="v1" if owner_kind == "ReplicationController" else "apps/v1",
                kind=owner_kind,
                name=owner_name,
                uid=f"uid-{owner_name}",
                controller=True,
            )
        ]

    annotations = dict(annotations or {})
    if created_by:
        annotations["kubernetes.io/created-by"] = json.dumps({
            "kind": "SerializedReference",
            "apiVersion": "v1",
            "reference": {"kind": created_by[0], "name": created_by[1]},
        })

    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            resource_version="100",
            self_link=f"/api/v1/namespaces/{namespace}/pods/{name}",
            labels={"app": "web"},
            annotations=annotations or None,
            owner_references=owner_references,
        ),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name="app", image="nginx:1.25")],
            node_name=node,
            hostname=name,
            scheduler_name=scheduler,
            termination_grace_period_seconds=grace,
        ),
        status=client.V1PodStatus(phase=phase, host_ip="10.0.0.1"),
    )


# ── Fake cluster ──────────────────────────────────────────────


class FakeCluster:
    """In-memory stand-in for the CoreV1Api and AppsV1Api calls podmover makes.

    Objects are stored and returned as deep copies, like a real API server.
    ``fail(method, *outcomes)`` queues outcomes for the next calls of a
    method: an exception is raised, ``None`` lets the call through.

    With ``spawn_replacements`` set, deleting a controller-owned pod makes
    the fake controller create a Pending replacement using the
    controller's current pod template, as a real controller would.
    """

    def __init__(self):
        self.pods: Dict[Tuple[str, str], client.V1Pod] = {}
        self.rcs: Dict[Tuple[str, str], client.V1ReplicationController] = {}
        self.rss: Dict[Tuple[str, str], client.V1ReplicaSet] = {}
        self.calls: List[Tuple[str, str]] = []
        self.replaced: List[Any] = []
        self.failures: Dict[str, List[Optional[Exception]]] = {}
        self.spawn_replacements = True
        self.delete_delay = 0.0
        self._spawned = 0
        self._lock = threading.RLock()

    # Setup helpers

    def add_pod(self, pod: client.V1Pod) -> client.V1Pod:
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = copy.deepcopy(pod)
        return pod

    def add_rc(self, rc: client.V1ReplicationController) -> None:
        self.rcs[(rc.metadata.namespace, rc.metadata.name)] = copy.deepcopy(rc)

    def add_rs(self, rs: client.V1ReplicaSet) -> None:
        self.rss[(rs.metadata.namespace, rs.metadata.name)] = copy.deepcopy(rs)

    def fail(self, method: str, *outcomes: Optional[Exception]) -> None:
        self.failures.setdefault(method, []).extend(outcomes)

    def called(self, method: str) -> List[str]:
        return [name for m, name in self.calls if m == method]

    def rc_scheduler(self, name: str, namespace: str = "default") -> Optional[str]:
        return self.rcs[(namespace, name)].spec.template.spec.scheduler_name

    def rs_scheduler(self, name: str, namespace: str = "default") -> Optional[str]:
        return self.rss[(namespace, name)].spec.template.spec.scheduler_name

    def rc_annotations(self, name: str, namespace: str = "default") -> Optional[Dict[str, str]]:
        return self.rcs[(namespace, name)].spec.template.metadata.annotations

    def set_rc_scheduler(self, name: str, scheduler: str, namespace: str = "default") -> None:
        with self._lock:
            self.rcs[(namespace, name)].spec.template.spec.scheduler_name = scheduler

    # CoreV1Api: pods

    def read_namespaced_pod(self, name, namespace, **kwargs):
        with self._lock:
            self._record("read_namespaced_pod", name)
            return copy.deepcopy(self._get(self.pods, namespace, name))

    def delete_namespaced_pod(self, name, namespace, body=None, **kwargs):
        with self._lock:
            self._record("delete_namespaced_pod", name)
            pod = self._get(self.pods, namespace, name)
            del self.pods[(namespace, name)]
            self._spawn_replacement(pod)
        if self.delete_delay:
            threading.Event().wait(self.delete_delay)
        return client.V1Status(status="Success")

    def create_namespaced_pod(self, namespace, body, **kwargs):
        with self._lock:
            self._record("create_namespaced_pod", body.metadata.name)
            key = (namespace, body.metadata.name)
            if key in self.pods:
                raise ApiException(status=409, reason="AlreadyExists")
            pod = copy.deepcopy(body)
            pod.metadata.uid = f"uid-{body.metadata.name}-new"
            pod.metadata.resource_version = "200"
            phase = "Running" if pod.spec.node_name else "Pending"
            pod.status = client.V1PodStatus(phase=phase)
            self.pods[key] = pod
            return copy.deepcopy(pod)

    def list_namespaced_pod(self, namespace, field_selector=None, **kwargs):
        with self._lock:
            self._record("list_namespaced_pod", namespace)
            phase = None
            if field_selector and field_selector.startswith("status.phase="):
                phase = field_selector.split("=", 1)[1]
            items = [
                copy.deepcopy(pod)
                for (ns, _), pod in sorted(self.pods.items())
                if ns == namespace and (phase is None or pod.status.phase == phase)
            ]
            return client.V1PodList(items=items)

    # CoreV1Api: replication controllers

    def read_namespaced_replication_controller(self, name, namespace, **kwargs):
        with self._lock:
            self._record("read_namespaced_replication_controller", name)
            return copy.deepcopy(self._get(self.rcs, namespace, name))

    def replace_namespaced_replication_controller(self, name, namespace, body, **kwargs):
        with self._lock:
            self._record("replace_namespaced_replication_controller", name)
            self._get(self.rcs, namespace, name)
            self.rcs[(namespace, name)] = copy.deepcopy(body)
            self.replaced.append(copy.deepcopy(body))
            return copy.deepcopy(body)

    # AppsV1Api: replica sets

    def read_namespaced_replica_set(self, name, namespace, **kwargs):
        with self._lock:
            self._record("read_namespaced_replica_set", name)
            return copy.deepcopy(self._get(self.rss, namespace, name))

    def replace_namespaced_replica_set(self, name, namespace, body, **kwargs):
        with self._lock:
            self._record("replace_namespaced_replica_set", name)
            self._get(self.rss, namespace, name)
            self.rss[(namespace, name)] = copy.deepcopy(body)
            self.replaced.append(copy.deepcopy(body))
            return copy.deepcopy(body)

    # Internals

    def _record(self, method: str, name: str) -> None:
        self.calls.append((method, name))
        queued = self.failures.get(method)
        if queued:
            outcome = queued.pop(0)
            if outcome is not None:
                raise outcome

    @staticmethod
    def _get(store, namespace, name):
        try:
            return store[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found")

    def _spawn_replacement(self, pod: client.V1Pod) -> None:
        if not self.spawn_replacements:
            return
        for owner in pod.metadata.owner_references or []:
            if not owner.controller:
                continue
            store = self.rcs if owner.kind == "ReplicationController" else self.rss
            controller = store.get((pod.metadata.namespace, owner.name))
            if controller is None:
                return

            self._spawned += 1
            template = copy.deepcopy(controller.spec.template)
            name = f"{owner.name}-r{self._spawned}"
            replacement = client.V1Pod(
                api_version="v1",
                kind="Pod",
                metadata=client.V1ObjectMeta(
                    name=name,
                    namespace=pod.metadata.namespace,
                    labels=template.metadata.labels,
                    annotations=template.metadata.annotations,
                    owner_references=copy.deepcopy(pod.metadata.owner_references),
                ),
                spec=template.spec,
                status=client.V1PodStatus(phase="Pending"),
            )
            self.pods[(pod.metadata.namespace, name)] = replacement
            return


def api_error(status: int = 500, reason: str = "Internal Server Error") -> ApiException:
    return ApiException(status=status, reason=reason)


# ── Fixtures ──────────────────────────────────────────────────


@pytest.fixture
def cluster():
    """An empty fake cluster."""
    return FakeCluster()


@pytest.fixture
def settings():
    """Settings with every retry pause disabled and short lock waits."""
    return MoverSettings(
        namespace="default",
        node_name="n2",
        lock_timeout=5.0,
        lock_retry_sleep=0.01,
        update_timeout=0.0,
        update_sleep=0.0,
        check_sleep=0.0,
        health_check_delay=0.0,
    )


@pytest.fixture
def legacy_settings(settings):
    """Settings for a cluster that keeps the scheduler in an annotation."""
    settings.k8s_version = "1.5"
    return settings


@pytest.fixture
def lease_map():
    """A lease map without a running reaper."""
    return LeaseMap(ttl=60.0, reap_interval=5.0)


@pytest.fixture
def pod_sleeps(monkeypatch):
    """Skip the fixed pause between deleting and recreating a pod.

    Returns the list of requested sleeps.
    """
    sleeps: List[float] = []
    fake_time = types.SimpleNamespace(sleep=sleeps.append, monotonic=time.monotonic)
    monkeypatch.setattr(pods_module, "time", fake_time)
    return sleeps


@pytest.fixture
def no_sleep(monkeypatch, pod_sleeps):
    """Skip every sleep in pod moves and retries."""
    fake_time = types.SimpleNamespace(sleep=pod_sleeps.append, monotonic=time.monotonic)
    monkeypatch.setattr(retry_module, "time", fake_time)
    return pod_sleeps
