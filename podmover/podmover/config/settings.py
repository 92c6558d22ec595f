"""Runtime settings for a podmover run."""

import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List


# A scheduler that does not exist: pods created by the controller while it
# is set will not be scheduled by the default scheduler during the move
DEFAULT_NONE_EXIST_SCHEDULER = "turbo-none-exist-scheduler"

# First Kubernetes release with the typed spec.schedulerName field
MODERN_API_VERSION = "1.6"


@dataclass
class MoverSettings:
    """All tunables of the mover, with the defaults used by the CLI."""

    namespace: str = "default"
    node_name: str = ""
    pods: List[str] = field(default_factory=list)
    scheduler_name: str = DEFAULT_NONE_EXIST_SCHEDULER
    k8s_version: str = MODERN_API_VERSION

    # Lease map
    lease_ttl: float = 60.0
    reap_interval: float = 5.0
    lock_timeout: float = 120.0
    lock_retry_sleep: float = 2.0

    # Retry budgets for scheduler updates and checks
    retry_less: int = 2
    retry_more: int = 4
    update_timeout: float = 10.0
    update_sleep: float = 3.0
    check_sleep: float = 1.0

    health_check_delay: float = 10.0

    # Cluster access
    master_url: str = ""
    kubeconfig: str = ""

    log_level: str = "INFO"

    @property
    def modern_api(self) -> bool:
        """True if the cluster stores the scheduler name in a typed field."""
        return compare_version(self.k8s_version, MODERN_API_VERSION) >= 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a camelCase dictionary (the config file layout)."""
        return {snake_to_camel(k): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MoverSettings":
        """Deserialise from a camelCase dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = camel_to_snake(key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def compare_version(version1: str, version2: str) -> int:
    """Compare dotted version strings; non-numeric parts count as 0.

    Returns:
        Negative, zero or positive, like a classic ``cmp``.
    """
    a1 = str(version1).lstrip("v").split(".")
    a2 = str(version2).lstrip("v").split(".")

    for i in range(max(len(a1), len(a2))):
        b1 = _version_part(a1, i)
        b2 = _version_part(a2, i)
        if b1 != b2:
            return b1 - b2
    return 0


def _version_part(parts: List[str], index: int) -> int:
    if index >= len(parts):
        return 0
    try:
        return int(parts[index])
    except ValueError:
        return 0
