"""Versioned leases that serialize moves sharing a controller."""

from podmover.lease.lease_map import Lease, LeaseMap

__all__ = ["Lease", "LeaseMap"]
