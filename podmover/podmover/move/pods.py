"""Pod-level helpers: owner lookup, recreation, health and cleanup.

Moving a pod means deleting it and creating a copy of it with
``spec.nodeName`` already set to the destination, which bypasses the
scheduler entirely.
"""

import copy
import json
import logging
import time
from typing import Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from podmover.errors import (
    AlreadyOnNodeError,
    HealthCheckError,
    MoveError,
    OwnerParseError,
    RetryError,
)
from podmover.retry import retry_during
from podmover.scheduler.accessor import SCHEDULER_ANNOTATION_KEY


logger = logging.getLogger(__name__)


# Legacy owner annotation (a JSON SerializedReference)
CREATED_BY_ANNOTATION = "kubernetes.io/created-by"

POD_DELETION_GRACE_PERIOD_DEFAULT = 0
POD_DELETION_GRACE_PERIOD_MAX = 10

# Pause between pod creation attempts
CREATE_RETRY_SLEEP = 3.0

POD_PHASE_RUNNING = "Running"
POD_PHASE_PENDING = "Pending"


def pod_id(pod: client.V1Pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


def parse_parent_info(pod: client.V1Pod) -> Tuple[str, str]:
    """Find the controller that owns a pod.

    Looks at the ``controller`` owner reference first and falls back to
    the legacy ``kubernetes.io/created-by`` annotation.

    Returns:
        ``(kind, name)``, or ``("", "")`` for a standalone pod.

    Raises:
        OwnerParseError: If the created-by annotation is not valid JSON.
    """
    meta = pod.metadata
    for owner in meta.owner_references or []:
        if owner.controller:
            return owner.kind, owner.name

    logger.debug("cannot find pod-%s parent by OwnerReferences", pod_id(pod))

    annotations = meta.annotations or {}
    value = annotations.get(CREATED_BY_ANNOTATION)
    if value is not None:
        try:
            ref = json.loads(value)
            reference = ref.get("reference") or {}
            return reference.get("kind", ""), reference.get("name", "")
        except (ValueError, AttributeError) as e:
            raise OwnerParseError(
                f"failed to decode parent annotation of pod-{pod_id(pod)}: {e} [{value}]"
            )

    logger.debug("cannot find pod-%s parent by Annotations", pod_id(pod))
    return "", ""


def parse_pod_scheduler_name(pod: client.V1Pod, modern: bool) -> str:
    """Return the scheduler a pod was created for."""
    if modern:
        return (pod.spec.scheduler_name if pod.spec else None) or ""

    annotations = pod.metadata.annotations or {}
    return annotations.get(SCHEDULER_ANNOTATION_KEY, "")


def calc_grace_period(pod: client.V1Pod) -> int:
    """Termination grace period used when deleting the original pod."""
    grace = POD_DELETION_GRACE_PERIOD_DEFAULT
    declared = pod.spec.termination_grace_period_seconds if pod.spec else None
    if declared is not None:
        grace = min(int(declared), POD_DELETION_GRACE_PERIOD_MAX)
    return grace


def copy_pod_info(pod: client.V1Pod, node_name: str) -> client.V1Pod:
    """Build the pod to create on ``node_name`` from the original pod.

    Identity, labels, annotations, owner references and the pod spec are
    kept. Fields only the API server may set are cleared, as are the
    host-specific spec fields. Status is not copied and ``pod`` is left
    untouched.
    """
    meta = copy.deepcopy(pod.metadata)
    meta.self_link = None
    meta.resource_version = None
    meta.generation = None
    meta.creation_timestamp = None
    meta.deletion_timestamp = None
    meta.deletion_grace_period_seconds = None
    meta.uid = None
    meta.managed_fields = None

    spec = copy.deepcopy(pod.spec)
    spec.hostname = None
    spec.subdomain = None
    spec.node_name = node_name

    return client.V1Pod(
        api_version=pod.api_version or "v1",
        kind=pod.kind or "Pod",
        metadata=meta,
        spec=spec,
    )


def move_pod(
    core_api: client.CoreV1Api,
    pod: client.V1Pod,
    node_name: str,
    retry_num: int,
) -> client.V1Pod:
    """Delete ``pod`` and recreate it bound to ``node_name``.

    Args:
        core_api: Core API client.
        pod: The pod as currently stored in the cluster.
        node_name: Destination node.
        retry_num: Attempts for the create call.

    Returns:
        The newly created pod.

    Raises:
        MoveError: If the delete or the create fails.
    """
    pid = pod_id(pod)
    namespace = pod.metadata.namespace
    logger.info("move-pod: begin to move %s from %s to %s", pid, pod.spec.node_name, node_name)

    # 1. copy the original pod
    npod = copy_pod_info(pod, node_name)

    # 2. kill the original pod
    grace = calc_grace_period(pod)
    try:
        core_api.delete_namespaced_pod(
            pod.metadata.name,
            namespace,
            body=client.V1DeleteOptions(grace_period_seconds=grace),
        )
    except ApiException as e:
        message = f"move-failed: failed to delete original pod-{pid}: {e.reason}"
        logger.error(message)
        raise MoveError(message) from e

    # 3. create (and bind) the new pod once the old one is gone
    time.sleep(grace + 1)
    created = []

    def _create() -> None:
        created.append(core_api.create_namespaced_pod(namespace, npod))

    try:
        retry_during(retry_num, (grace + 3) * retry_num, CREATE_RETRY_SLEEP, _create)
    except RetryError as e:
        message = f"move-failed: failed to create new pod-{pid}: {e}"
        logger.error(message)
        raise MoveError(message) from e

    logger.info("move-finished: %s from %s to %s", pid, pod.spec.node_name, node_name)
    return created[-1]


def check_pod_move_health(
    core_api: client.CoreV1Api,
    namespace: str,
    pod_name: str,
    node_name: str,
) -> client.V1Pod:
    """Verify a moved pod is Running on ``node_name``.

    Raises:
        HealthCheckError: If the pod cannot be read, is not running or
            runs elsewhere.
    """
    pid = f"{namespace}/{pod_name}"
    try:
        pod = core_api.read_namespaced_pod(pod_name, namespace)
    except ApiException as e:
        raise HealthCheckError(f"failed to get pod-{pid}: {e.reason}") from e

    phase = pod.status.phase if pod.status else None
    if phase != POD_PHASE_RUNNING:
        raise HealthCheckError(f"pod-{pid} is not running: {phase}")

    if pod.spec.node_name != node_name:
        raise HealthCheckError(
            f"pod-{pid} is running on another node ({pod.spec.node_name} vs. {node_name})"
        )

    return pod


def clean_pending_pods(
    core_api: client.CoreV1Api,
    namespace: str,
    scheduler_name: str,
    parent_kind: str,
    modern: bool,
) -> int:
    """Delete pending pods left behind for the non-existent scheduler.

    While a controller points at the non-existent scheduler, any pod it
    creates stays Pending forever. All such pods of the same controller
    kind are removed, not only those of the current move.

    Returns:
        Number of pods deleted.

    Raises:
        ApiException: If the pending pods cannot be listed.
    """
    pods = core_api.list_namespaced_pod(
        namespace, field_selector=f"status.phase={POD_PHASE_PENDING}"
    )

    deleted = 0
    for pod in pods.items:
        # already being deleted
        if pod.metadata.deletion_grace_period_seconds is not None:
            continue

        if parse_pod_scheduler_name(pod, modern) != scheduler_name:
            continue

        try:
            kind, parent = parse_parent_info(pod)
        except OwnerParseError:
            continue
        if not parent or kind != parent_kind:
            continue

        logger.debug("begin to delete pending pod: %s", pod_id(pod))
        try:
            core_api.delete_namespaced_pod(
                pod.metadata.name,
                namespace,
                body=client.V1DeleteOptions(grace_period_seconds=0),
            )
            deleted += 1
        except ApiException as e:
            logger.warning("failed to delete pending pod %s: %s", pod_id(pod), e.reason)

    return deleted


def get_pod(core_api: client.CoreV1Api, namespace: str, name: str) -> client.V1Pod:
    """Read a pod that is about to be moved.

    Raises:
        MoveError: If the pod cannot be read; nothing has been mutated.
    """
    try:
        return core_api.read_namespaced_pod(name, namespace)
    except ApiException as e:
        message = f"move-failed: get original pod:{namespace}/{name}: {e.reason}"
        logger.error(message)
        raise MoveError(message, mutated=False) from e


def relocate_pod(
    core_api: client.CoreV1Api,
    namespace: str,
    name: str,
    node_name: str,
    retry_num: int,
) -> client.V1Pod:
    """Fetch a pod and move it to ``node_name``.

    Raises:
        MoveError: If the pod cannot be read or moved.
        AlreadyOnNodeError: If the pod already runs on ``node_name``.
    """
    pod = get_pod(core_api, namespace, name)
    if pod.spec.node_name == node_name:
        raise AlreadyOnNodeError(pod_id(pod), node_name)
    return move_pod(core_api, pod, node_name, retry_num)
