"""Read and write the scheduler name of a pod's owning controller.

The scheduler name lives in one of two places depending on the cluster:
- Kubernetes >= 1.6: ``spec.template.spec.schedulerName`` (typed field)
- Kubernetes < 1.6: the ``scheduler.alpha.kubernetes.io/name`` annotation
  on the controller's pod template

Both ReplicationControllers (core/v1) and ReplicaSets (apps/v1) are
supported. The kind and encoding are picked once, in
``new_scheduler_accessor``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from kubernetes import client

from podmover.errors import InvalidationError, UnsupportedKindError


logger = logging.getLogger(__name__)


KIND_REPLICATION_CONTROLLER = "ReplicationController"
KIND_REPLICA_SET = "ReplicaSet"

# Kubernetes < 1.6 keeps the scheduler name in the pod template annotations
SCHEDULER_ANNOTATION_KEY = "scheduler.alpha.kubernetes.io/name"
EMPTY_SCHEDULER = "None"


# ------------------------------------------------------------------
# Controller clients (one per kind)
# ------------------------------------------------------------------


class ControllerClient(ABC):
    """Fetch and write back one controller object."""

    kind = ""

    def __init__(self, namespace: str, name: str):
        self.namespace = namespace
        self.name = name

    @property
    def id(self) -> str:
        return f"{self.kind}-{self.namespace}/{self.name}"

    @abstractmethod
    def read(self) -> Any:
        """Fetch the controller object."""

    @abstractmethod
    def replace(self, obj: Any) -> Any:
        """Write the (modified) controller object back."""


class ReplicationControllerClient(ControllerClient):
    """ReplicationControllers through the core/v1 API."""

    kind = KIND_REPLICATION_CONTROLLER

    def __init__(self, core_api: client.CoreV1Api, namespace: str, name: str):
        super().__init__(namespace, name)
        self.core_api = core_api

    def read(self) -> Any:
        return self.core_api.read_namespaced_replication_controller(
            self.name, self.namespace
        )

    def replace(self, obj: Any) -> Any:
        return self.core_api.replace_namespaced_replication_controller(
            self.name, self.namespace, obj
        )


class ReplicaSetClient(ControllerClient):
    """ReplicaSets through the apps/v1 API."""

    kind = KIND_REPLICA_SET

    def __init__(self, apps_api: client.AppsV1Api, namespace: str, name: str):
        super().__init__(namespace, name)
        self.apps_api = apps_api

    def read(self) -> Any:
        return self.apps_api.read_namespaced_replica_set(self.name, self.namespace)

    def replace(self, obj: Any) -> Any:
        return self.apps_api.replace_namespaced_replica_set(
            self.name, self.namespace, obj
        )


# ------------------------------------------------------------------
# Scheduler accessors (one per encoding)
# ------------------------------------------------------------------


class SchedulerAccessor(ABC):
    """Get/set the scheduler name of a controller's pod template."""

    def __init__(self, controller: ControllerClient):
        self.controller = controller

    @property
    def kind(self) -> str:
        return self.controller.kind

    def get(self) -> str:
        """Return the controller's current scheduler name."""
        return self._read_scheduler(self.controller.read())

    def check(self, expected: str) -> bool:
        """Return True if the current scheduler name equals ``expected``."""
        return self.get() == expected

    def set(self, scheduler_name: str) -> str:
        """Point the controller at ``scheduler_name``.

        No write is issued if the controller already uses that scheduler.

        Returns:
            The scheduler name observed before the update, or ``""`` if no
            update was necessary.
        """
        obj = self.controller.read()
        current = self._read_scheduler(obj)
        if current == scheduler_name:
            logger.debug(
                "no need to update schedulerName for %s", self.controller.id
            )
            return ""

        template = _pod_template(obj)
        if template is None:
            raise InvalidationError(
                f"{self.controller.id} has no pod template to update"
            )

        self._write_scheduler(template, scheduler_name)
        self.controller.replace(obj)
        logger.info(
            "update %s schedulerName [%s] to [%s]",
            self.controller.id, current, scheduler_name,
        )
        return current

    @abstractmethod
    def _read_scheduler(self, obj: Any) -> str:
        """Extract the scheduler name from a controller object."""

    @abstractmethod
    def _write_scheduler(self, template: client.V1PodTemplateSpec, name: str) -> None:
        """Store ``name`` on the controller's pod template."""


class FieldSchedulerAccessor(SchedulerAccessor):
    """Scheduler name stored in ``spec.template.spec.schedulerName``."""

    def _read_scheduler(self, obj: Any) -> str:
        template = _pod_template(obj)
        if template is None or template.spec is None:
            return ""
        return template.spec.scheduler_name or ""

    def _write_scheduler(self, template: client.V1PodTemplateSpec, name: str) -> None:
        if template.spec is None:
            raise InvalidationError(
                f"{self.controller.id} has no pod spec in its template"
            )
        template.spec.scheduler_name = name


class AnnotationSchedulerAccessor(SchedulerAccessor):
    """Scheduler name stored in the pod template annotations (Kubernetes < 1.6)."""

    def _read_scheduler(self, obj: Any) -> str:
        template = _pod_template(obj)
        annotations = None
        if template is not None and template.metadata is not None:
            annotations = template.metadata.annotations
        return parse_annotated_scheduler(annotations)

    def _write_scheduler(self, template: client.V1PodTemplateSpec, name: str) -> None:
        if template.metadata is None:
            template.metadata = client.V1ObjectMeta()
        annotations = dict(template.metadata.annotations or {})

        if name == EMPTY_SCHEDULER:
            annotations.pop(SCHEDULER_ANNOTATION_KEY, None)
        else:
            annotations[SCHEDULER_ANNOTATION_KEY] = name

        template.metadata.annotations = annotations or None


def parse_annotated_scheduler(annotations: Optional[Dict[str, str]]) -> str:
    """Decode the legacy scheduler annotation; missing or empty means ``None``."""
    if not annotations:
        return EMPTY_SCHEDULER
    result = annotations.get(SCHEDULER_ANNOTATION_KEY)
    if not result:
        return EMPTY_SCHEDULER
    return result


def _pod_template(obj: Any) -> Optional[client.V1PodTemplateSpec]:
    spec = getattr(obj, "spec", None)
    if spec is None:
        return None
    return spec.template


def new_scheduler_accessor(
    core_api: client.CoreV1Api,
    apps_api: client.AppsV1Api,
    kind: str,
    namespace: str,
    name: str,
    modern: bool = True,
) -> SchedulerAccessor:
    """Build the accessor for a controller kind and API generation.

    Args:
        core_api: Core API client (ReplicationControllers).
        apps_api: Apps API client (ReplicaSets).
        kind: Controller kind, ``ReplicationController`` or ``ReplicaSet``.
        namespace: Controller namespace.
        name: Controller name.
        modern: True for Kubernetes >= 1.6 (typed field), False for the
            legacy annotation.

    Raises:
        UnsupportedKindError: For any other controller kind.
    """
    if kind == KIND_REPLICATION_CONTROLLER:
        controller: ControllerClient = ReplicationControllerClient(
            core_api, namespace, name
        )
    elif kind == KIND_REPLICA_SET:
        controller = ReplicaSetClient(apps_api, namespace, name)
    else:
        raise UnsupportedKindError(kind, name)

    if modern:
        return FieldSchedulerAccessor(controller)
    return AnnotationSchedulerAccessor(controller)
