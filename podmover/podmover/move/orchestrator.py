"""Relocation of a controller-owned pod.

Deleting a pod owned by a ReplicationController or ReplicaSet makes the
controller create a replacement right away. To keep the scheduler from
placing that replacement, the controller is first pointed at a scheduler
that does not exist. The pod is then recreated on the destination node,
and finally the controller's original scheduler is restored.

Moves that share a controller are serialized through a lease. If a mover
stops renewing its lease, the lease reaper restores the scheduler through
the same verify-then-restore path that the normal cleanup uses.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, List, Optional

from kubernetes import client

from podmover.config.settings import MoverSettings
from podmover.errors import (
    InvalidationError,
    LockTimeoutError,
    RestoreError,
    RetryError,
    StaleLeaseError,
)
from podmover.lease import LeaseMap
from podmover.move.pods import clean_pending_pods, relocate_pod
from podmover.retry import retry_during
from podmover.scheduler import new_scheduler_accessor


logger = logging.getLogger(__name__)


class MoveState(str, Enum):
    """Progress of one controller-owned move."""

    INIT = "init"
    OWNER_RESOLVED = "owner_resolved"
    LOCK_ACQUIRED = "lock_acquired"
    SCHEDULER_INVALIDATED = "scheduler_invalidated"
    VERIFIED = "verified"
    RELOCATED = "relocated"
    RESTORING = "restoring"
    DONE = "done"
    FAILED = "failed"


class _LeaseBusy(Exception):
    """Another move holds the controller lease."""


class _SchedulerMismatch(Exception):
    """The controller does not (yet) use the expected scheduler."""


class MoveOrchestrator:
    """Move one pod whose owner is a ReplicationController or ReplicaSet.

    Usage::

        orchestrator = MoveOrchestrator(core_api, apps_api, leases, "default",
                                        "web-x7k2p", "ReplicaSet", "web-5d8f",
                                        "node-2", settings)
        new_pod = orchestrator.run()

    ``run`` is equivalent to::

        with orchestrator:
            orchestrator.invalidate_scheduler()
            orchestrator.verify_scheduler()
            orchestrator.relocate()
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        lease_map: LeaseMap,
        namespace: str,
        pod_name: str,
        kind: str,
        controller_name: str,
        node_name: str,
        settings: MoverSettings,
    ):
        """Initialise the orchestrator.

        Raises:
            UnsupportedKindError: If ``kind`` is not a supported controller.
        """
        self.state = MoveState.INIT
        self.core_api = core_api
        self.lease_map = lease_map
        self.namespace = namespace
        self.pod_name = pod_name
        self.kind = kind
        self.controller_name = controller_name
        self.node_name = node_name
        self.settings = settings

        self.accessor = new_scheduler_accessor(
            core_api, apps_api, kind, namespace, controller_name,
            modern=settings.modern_api,
        )
        self.lease_key = f"{kind}-{namespace}-{controller_name}"
        self.lease_version = 0
        self._locked = False

        # Scheduler name to put back; None until one has been observed
        self.previous_scheduler: Optional[str] = None

        # Guards previous_scheduler against the lease expiry callback
        self._guard = threading.Lock()
        self._expired = False
        self._expiry_done = threading.Event()

        self._set_state(MoveState.OWNER_RESOLVED)

    @property
    def pod_id(self) -> str:
        return f"{self.namespace}/{self.pod_name}"

    @property
    def reserved_scheduler(self) -> str:
        return self.settings.scheduler_name

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> client.V1Pod:
        """Run the whole move and return the recreated pod.

        Raises:
            LockTimeoutError: If the controller lease is not free in time.
            InvalidationError: If the scheduler could not be invalidated.
            MoveError: If the pod could not be recreated.
            RestoreError: If the original scheduler could not be restored.
        """
        with self:
            self.invalidate_scheduler()
            self.verify_scheduler()
            return self.relocate()

    def acquire_lock(self) -> int:
        """Wait for the controller lease.

        Returns:
            The version of the acquired lease.

        Raises:
            LockTimeoutError: If the lease stayed taken for ``lock_timeout``.
        """
        timeout = self.settings.lock_timeout
        sleep = self.settings.lock_retry_sleep
        attempts = int(timeout / max(sleep, 0.01)) + 1

        def _acquire() -> None:
            version, ok = self.lease_map.acquire(
                self.lease_key, self.pod_id, self._on_lease_expired
            )
            if not ok:
                holder = self.lease_map.get(self.lease_key)
                owner = holder.payload if holder is not None else "another move"
                raise _LeaseBusy(f"lease [{self.lease_key}] is held by pod-[{owner}]")
            self.lease_version = version

        try:
            retry_during(attempts, timeout, sleep, _acquire)
        except RetryError as e:
            logger.error("move-failed: pod-[%s]: %s", self.pod_id, e)
            raise LockTimeoutError(self.lease_key, timeout) from e

        self._locked = True
        logger.info(
            "got lock [%s] for pod-[%s] (version=%d)",
            self.lease_key, self.pod_id, self.lease_version,
        )
        self._set_state(MoveState.LOCK_ACQUIRED)
        return self.lease_version

    def renew_lock(self) -> None:
        """Extend the lease by one TTL.

        Raises:
            StaleLeaseError: If the lease expired or was taken over.
        """
        if not self.lease_map.renew(self.lease_key, self.lease_version):
            raise StaleLeaseError(self.lease_key, self.lease_version)

    def release_lock(self) -> None:
        if not self._locked:
            return
        self.lease_map.release(self.lease_key, self.lease_version)
        self._locked = False
        logger.debug("released lock [%s]", self.lease_key)

    def invalidate_scheduler(self) -> None:
        """Point the controller at the non-existent scheduler.

        Raises:
            StaleLeaseError: If the lease was lost between attempts.
            InvalidationError: If the controller could not be updated.
        """
        reserved = self.reserved_scheduler
        captured: List[str] = []

        def _update() -> None:
            self.renew_lock()
            current = self.accessor.get()
            if current == reserved:
                return
            # "" is a real value here: the default scheduler
            with self._guard:
                if self._expired:
                    raise StaleLeaseError(self.lease_key, self.lease_version)
                if self.previous_scheduler is None:
                    self.previous_scheduler = current
            captured.append(current)
            self.accessor.set(reserved)

        try:
            self._retry(self.settings.retry_less, self.settings.update_timeout,
                        self.settings.update_sleep, _update)
        except RetryError as e:
            raise InvalidationError(
                f"move-failed: pod-[{self.pod_id}], parent-[{self.controller_name}]: "
                f"failed to invalidate scheduler: {e}"
            ) from e

        if not captured:
            logger.warning(
                "%s already uses scheduler [%s]; nothing to restore later",
                self.accessor.controller.id, self.reserved_scheduler,
            )
        self._set_state(MoveState.SCHEDULER_INVALIDATED)

    def verify_scheduler(self) -> None:
        """Confirm the controller now uses the non-existent scheduler.

        Raises:
            StaleLeaseError: If the lease was lost.
            InvalidationError: If the controller reports another scheduler.
        """
        try:
            self._check_scheduler(self.reserved_scheduler, renew=True)
        except RetryError as e:
            raise InvalidationError(
                f"move-failed: pod-[{self.pod_id}], parent-[{self.controller_name}]: "
                f"scheduler is not [{self.reserved_scheduler}]: {e}"
            ) from e
        self._set_state(MoveState.VERIFIED)

    def relocate(self) -> client.V1Pod:
        """Recreate the pod on the destination node."""
        pod = relocate_pod(
            self.core_api, self.namespace, self.pod_name, self.node_name,
            self.settings.retry_less,
        )
        self._set_state(MoveState.RELOCATED)
        return pod

    def cleanup(self, error: Optional[BaseException] = None) -> None:
        """Restore the scheduler, drop stray pending pods, release the lease.

        Args:
            error: The error that ended the move, if any.

        Raises:
            RestoreError: If the original scheduler could not be restored.
        """
        self._set_state(MoveState.RESTORING)
        try:
            self._verify_then_restore(holding_lease=True)
        except RestoreError as e:
            if error is not None:
                raise RestoreError(str(e), cause=error) from error
            raise
        finally:
            self._clean_pending_pods()
            self.release_lock()

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "MoveOrchestrator":
        self.acquire_lock()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.cleanup(exc)
        except Exception:
            self._set_state(MoveState.FAILED)
            raise
        self._set_state(MoveState.FAILED if exc is not None else MoveState.DONE)
        return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: MoveState) -> None:
        logger.debug("pod-[%s]: %s -> %s", self.pod_id, self.state.value, state.value)
        self.state = state

    def _retry(
        self, attempts: int, timeout: float, sleep: float, func: Callable[[], Any]
    ) -> None:
        """retry_during, except that a lost lease stops retrying at once."""
        stale: List[StaleLeaseError] = []

        def _attempt() -> None:
            try:
                func()
            except StaleLeaseError as e:
                stale.append(e)

        retry_during(attempts, timeout, sleep, _attempt)
        if stale:
            raise stale[-1]

    def _check_scheduler(self, expected: str, renew: bool) -> None:
        """Wait until the controller uses ``expected``.

        Raises:
            RetryError: If it still does not after ``retry_less`` attempts.
            StaleLeaseError: If ``renew`` is set and the lease was lost.
        """
        def _check() -> None:
            if renew:
                self.renew_lock()
            if not self.accessor.check(expected):
                raise _SchedulerMismatch(
                    f"{self.accessor.controller.id} does not use scheduler [{expected}]"
                )

        self._retry(self.settings.retry_less, self.settings.update_timeout,
                    self.settings.check_sleep, _check)

    def _verify_then_restore(self, holding_lease: bool) -> bool:
        """Put the captured scheduler back if ours is still in place.

        Args:
            holding_lease: Renew the lease before each cluster call. Once
                it is lost, wait for the expiry callback and finish whatever
                it left undone. False when called by the expiry callback.

        Returns:
            True if the scheduler was written back.

        Raises:
            RestoreError: If the scheduler could not be checked or restored.
        """
        with self._guard:
            previous = self.previous_scheduler
        if previous is None:
            return False

        controller_id = self.accessor.controller.id
        try:
            self._check_scheduler(self.reserved_scheduler, renew=holding_lease)
        except StaleLeaseError:
            return self._restore_after_expiry()
        except RetryError as e:
            if isinstance(e.last_error, _SchedulerMismatch):
                logger.warning(
                    "%s; it was changed by someone else, skip restore", e.last_error
                )
                return False
            raise RestoreError(
                f"failed to read scheduler of {controller_id}: {e}"
            ) from e

        def _restore() -> None:
            if holding_lease:
                self.renew_lock()
            self.accessor.set(previous)

        try:
            self._retry(self.settings.retry_more, self.settings.update_timeout,
                        self.settings.update_sleep, _restore)
        except StaleLeaseError:
            return self._restore_after_expiry()
        except RetryError as e:
            raise RestoreError(
                f"failed to restore scheduler of {controller_id} to [{previous}]: {e}"
            ) from e

        with self._guard:
            self.previous_scheduler = None
        logger.info("restored scheduler of %s to [%s]", controller_id, previous)
        return True

    def _restore_after_expiry(self) -> bool:
        """Finish the restore once the lease has been lost.

        The expiry callback may have run before the scheduler was captured
        or before the invalidating write was visible. Anything still
        captured after it finished is restored here without the lease.
        """
        controller_id = self.accessor.controller.id
        if not self._expiry_done.wait(self.settings.lock_timeout):
            logger.warning(
                "expiry handler of lock [%s] did not finish", self.lease_key
            )
        with self._guard:
            pending = self.previous_scheduler is not None
        if not pending:
            logger.info(
                "lock [%s] expired; %s restored by the expiry handler",
                self.lease_key, controller_id,
            )
            return False

        logger.warning(
            "lock [%s] expired; restoring %s without it", self.lease_key, controller_id
        )
        return self._verify_then_restore(holding_lease=False)

    def _clean_pending_pods(self) -> None:
        try:
            count = clean_pending_pods(
                self.core_api, self.namespace, self.reserved_scheduler,
                self.kind, self.settings.modern_api,
            )
        except Exception as e:
            logger.warning(
                "failed to clean pending pods in %s: %s", self.namespace, e
            )
            return
        if count:
            logger.info("deleted %d pending pod(s) in %s", count, self.namespace)

    def _on_lease_expired(self, payload: Any) -> None:
        """Expiry callback run by the lease reaper thread."""
        logger.warning(
            "lock [%s] of pod-[%s] expired before the move finished",
            self.lease_key, payload,
        )
        with self._guard:
            self._expired = True
            self._locked = False
        try:
            self._verify_then_restore(holding_lease=False)
        except RestoreError as e:
            logger.error("expiry restore of %s failed: %s", self.accessor.controller.id, e)
        finally:
            self._expiry_done.set()
