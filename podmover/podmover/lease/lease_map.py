"""Expiring, versioned leases keyed by controller.

A lease gives one mover exclusive use of a controller's scheduler name.
Holders renew the lease while they work and release it when done. If a
holder disappears, the reaper thread expires the lease and runs its
``on_expire`` callback, which restores the controller's scheduler.

Every successful ``acquire`` gets a new version, and versions are never
reused. ``renew`` and ``release`` only act when the caller presents the
installed version, so a holder whose lease already expired cannot
disturb the next holder.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)


ExpireCallback = Callable[[Any], None]


@dataclass
class Lease:
    """One installed lease."""

    key: str
    version: int
    deadline: float
    payload: Any = None
    on_expire: Optional[ExpireCallback] = None
    # Set by the reaper once it has claimed the lease for expiry
    expiring: bool = False


class LeaseMap:
    """Thread-safe map of expiring leases with a background reaper."""

    def __init__(
        self,
        ttl: float = 30.0,
        reap_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialise an empty map.

        Args:
            ttl: Seconds a lease lives after acquire/renew.
            reap_interval: Seconds between reaper passes.
            clock: Monotonic clock, injectable for tests.
        """
        self.ttl = ttl
        self.reap_interval = reap_interval
        self._clock = clock

        self._lock = threading.Lock()
        self._leases: Dict[str, Lease] = {}
        self._versions: Dict[str, int] = {}

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lease operations
    # ------------------------------------------------------------------

    def acquire(
        self,
        key: str,
        payload: Any = None,
        on_expire: Optional[ExpireCallback] = None,
    ) -> Tuple[int, bool]:
        """Try to take the lease for ``key``.

        Fails while any lease for ``key`` is installed, including one past
        its deadline that the reaper has not expired yet.

        Returns:
            ``(version, True)`` on success, ``(0, False)`` otherwise.
        """
        with self._lock:
            if key in self._leases:
                return 0, False

            version = self._versions.get(key, 0) + 1
            self._versions[key] = version
            self._leases[key] = Lease(
                key=key,
                version=version,
                deadline=self._clock() + self.ttl,
                payload=payload,
                on_expire=on_expire,
            )

        logger.debug("lease [%s] acquired (version=%d)", key, version)
        return version, True

    def renew(self, key: str, version: int) -> bool:
        """Push the deadline of ``key`` out by one TTL.

        Returns:
            False if ``version`` is not the installed lease (it expired,
            was released or belongs to a newer holder).
        """
        with self._lock:
            lease = self._leases.get(key)
            if lease is None or lease.version != version or lease.expiring:
                return False
            lease.deadline = self._clock() + self.ttl
            return True

    def release(self, key: str, version: int) -> None:
        """Drop the lease for ``key`` if ``version`` still holds it."""
        with self._lock:
            lease = self._leases.get(key)
            if lease is None or lease.version != version or lease.expiring:
                logger.debug(
                    "lease [%s] version %d not held; release ignored", key, version
                )
                return
            del self._leases[key]

        logger.debug("lease [%s] released (version=%d)", key, version)

    def get(self, key: str) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._leases

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)

    # ------------------------------------------------------------------
    # Reaper
    # ------------------------------------------------------------------

    def reap(self) -> int:
        """Expire every lease past its deadline.

        Each callback runs outside the map lock, exactly once. The key
        stays blocked until its callback has returned.

        Returns:
            The number of leases expired.
        """
        now = self._clock()
        with self._lock:
            expired: List[Lease] = [
                lease for lease in self._leases.values()
                if not lease.expiring and lease.deadline <= now
            ]
            for lease in expired:
                lease.expiring = True

        for lease in expired:
            logger.warning(
                "lease [%s] expired (version=%d)", lease.key, lease.version
            )
            if lease.on_expire is not None:
                try:
                    lease.on_expire(lease.payload)
                except Exception:
                    logger.exception(
                        "expiry callback for lease [%s] failed", lease.key
                    )

            with self._lock:
                current = self._leases.get(lease.key)
                if current is not None and current.version == lease.version:
                    del self._leases[lease.key]

        return len(expired)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background reaper thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="lease-reaper", daemon=True
        )
        self._thread.start()
        logger.debug(
            "lease reaper started (ttl=%ss interval=%ss)", self.ttl, self.reap_interval
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the reaper thread and wait for it to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("lease reaper stopped")

    def _run_loop(self) -> None:
        while not self._stop.wait(self.reap_interval):
            try:
                self.reap()
            except Exception:
                logger.exception("lease reaper loop error")

    def __enter__(self) -> "LeaseMap":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
