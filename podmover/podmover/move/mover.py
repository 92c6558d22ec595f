"""Per-request entry point: move one or several pods to a node."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kubernetes import client

from podmover.config.settings import MoverSettings
from podmover.errors import AlreadyOnNodeError, EXIT_OK, exit_code_for
from podmover.lease import LeaseMap
from podmover.move.orchestrator import MoveOrchestrator
from podmover.move.pods import (
    check_pod_move_health,
    get_pod,
    move_pod,
    parse_parent_info,
    pod_id,
)


logger = logging.getLogger(__name__)


@dataclass
class MoveResult:
    """Outcome of moving one pod."""

    pod: str
    ok: bool
    error: Optional[Exception] = None
    exit_code: int = EXIT_OK
    new_pod: Optional[client.V1Pod] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "pod": self.pod,
            "ok": self.ok,
            "exitCode": self.exit_code,
        }
        if self.error is not None:
            result["error"] = str(self.error)
        if self.new_pod is not None:
            result["node"] = self.new_pod.spec.node_name
        return result

    @classmethod
    def success(cls, pod: str, new_pod: client.V1Pod) -> "MoveResult":
        return cls(pod=pod, ok=True, new_pod=new_pod)

    @classmethod
    def failure(cls, pod: str, error: Exception) -> "MoveResult":
        return cls(pod=pod, ok=False, error=error, exit_code=exit_code_for(error))


class PodMover:
    """Move pods to a chosen node, bypassing the scheduler.

    Usage::

        with PodMover(core_api, apps_api, settings) as mover:
            results = mover.move_many("default", ["web-1", "web-2"], "node-2")
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        settings: MoverSettings,
        lease_map: Optional[LeaseMap] = None,
    ):
        self.core_api = core_api
        self.apps_api = apps_api
        self.settings = settings

        # A lease map passed in is owned (started/stopped) by the caller
        self._owns_leases = lease_map is None
        if lease_map is None:
            lease_map = LeaseMap(ttl=settings.lease_ttl, reap_interval=settings.reap_interval)
            lease_map.start()
        self.lease_map = lease_map

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def move(self, namespace: str, pod_name: str, node_name: str) -> client.V1Pod:
        """Move one pod to ``node_name``.

        Returns:
            The recreated pod.

        Raises:
            PodMoverError: A subclass describing what failed; its
                ``exit_code`` tells whether anything was mutated.
        """
        pod = get_pod(self.core_api, namespace, pod_name)
        if pod.spec.node_name == node_name:
            raise AlreadyOnNodeError(pod_id(pod), node_name)

        kind, parent = parse_parent_info(pod)
        if not parent:
            logger.info("pod-[%s] has no parent, move it directly", pod_id(pod))
            return move_pod(self.core_api, pod, node_name, self.settings.retry_less)

        logger.info("pod-[%s] is owned by %s-%s", pod_id(pod), kind, parent)
        orchestrator = MoveOrchestrator(
            self.core_api,
            self.apps_api,
            self.lease_map,
            namespace,
            pod_name,
            kind,
            parent,
            node_name,
            self.settings,
        )
        return orchestrator.run()

    def move_many(
        self, namespace: str, pod_names: List[str], node_name: str
    ) -> List[MoveResult]:
        """Move several pods concurrently, one thread per pod.

        A failure only affects its own pod.

        Returns:
            One MoveResult per pod, in the order of ``pod_names``.
        """
        results: List[Optional[MoveResult]] = [None] * len(pod_names)

        def _worker(index: int, name: str) -> None:
            results[index] = self._move_one(namespace, name, node_name)

        threads = []
        for i, name in enumerate(pod_names):
            thread = threading.Thread(
                target=_worker, args=(i, name), name=f"move-{name}", daemon=True
            )
            thread.start()
            threads.append(thread)

        for thread in threads:
            thread.join()

        return [r for r in results if r is not None]

    def check_health(self, namespace: str, pod_name: str, node_name: str) -> client.V1Pod:
        """Check that a moved pod is Running on ``node_name``."""
        return check_pod_move_health(self.core_api, namespace, pod_name, node_name)

    def close(self) -> None:
        """Stop the lease reaper if this mover started it."""
        if self._owns_leases:
            self.lease_map.stop()

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "PodMover":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _move_one(self, namespace: str, pod_name: str, node_name: str) -> MoveResult:
        pid = f"{namespace}/{pod_name}"
        try:
            new_pod = self.move(namespace, pod_name, node_name)
        except Exception as e:
            logger.error("move pod-[%s] to [%s] failed: %s", pid, node_name, e)
            return MoveResult.failure(pid, e)

        logger.info("move pod-[%s] to [%s] succeeded", pid, node_name)
        return MoveResult.success(pid, new_pod)
