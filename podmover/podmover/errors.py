"""Error definitions and process exit codes for podmover."""

from typing import List, Optional


# Exit codes for the CLI. A run moving several pods exits with the highest.
EXIT_OK = 0
EXIT_NO_MUTATION = 1
EXIT_RESTORED = 2
EXIT_RESTORE_FAILED = 3
EXIT_UNHEALTHY = 4


class PodMoverError(Exception):
    """Base exception for all podmover errors."""

    exit_code = EXIT_RESTORED


# =============================================================================
# Configuration Errors
# =============================================================================
class ConfigurationError(PodMoverError):
    """Raised when settings or CLI input are missing or invalid."""

    exit_code = EXIT_NO_MUTATION

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


# =============================================================================
# Precondition Errors (nothing was mutated)
# =============================================================================
class PreconditionError(PodMoverError):
    """A request cannot start; no cluster object was touched."""

    exit_code = EXIT_NO_MUTATION


class AlreadyOnNodeError(PreconditionError):
    """Raised when the pod already runs on the destination node."""

    def __init__(self, pod_id: str, node_name: str):
        self.pod_id = pod_id
        self.node_name = node_name
        super().__init__(f"pod {pod_id} is already on node: {node_name}")


class UnsupportedKindError(PreconditionError):
    """Raised when the owning controller is not a ReplicationController/ReplicaSet."""

    def __init__(self, kind: str, name: str = ""):
        self.kind = kind
        self.name = name
        super().__init__(f"unsupported parent-[{name}] kind-[{kind}]")


class OwnerParseError(PreconditionError):
    """Raised when the legacy created-by annotation cannot be decoded."""


class LockTimeoutError(PreconditionError):
    """Raised when the controller lease could not be acquired in time."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"failed to acquire lock [{key}] within {timeout:.1f}s")


# =============================================================================
# Move Errors
# =============================================================================
class RetryError(PodMoverError):
    """Raised by retry_during once attempts or time are exhausted."""

    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        attempts: int = 0,
        elapsed: float = 0.0,
    ):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts
        self.elapsed = elapsed


class StaleLeaseError(PodMoverError):
    """Raised when the holder's lease expired or was handed to someone else."""

    def __init__(self, key: str, version: int):
        self.key = key
        self.version = version
        super().__init__(f"lease [{key}] version {version} is no longer held")


class InvalidationError(PodMoverError):
    """Raised when the controller's scheduler could not be invalidated."""


class MoveError(PodMoverError):
    """Raised when fetching, deleting or recreating the pod fails."""

    def __init__(self, message: str, mutated: bool = True):
        super().__init__(message)
        if not mutated:
            self.exit_code = EXIT_NO_MUTATION


class RestoreError(PodMoverError):
    """Raised when the controller's original scheduler could not be restored."""

    exit_code = EXIT_RESTORE_FAILED

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        if cause is not None:
            message = f"{message}; move error: {cause}"
        super().__init__(message)
        self.cause = cause


class HealthCheckError(PodMoverError):
    """Raised when a moved pod is not Running on its destination node."""

    exit_code = EXIT_UNHEALTHY


def exit_code_for(error: Optional[BaseException]) -> int:
    """Map an outcome to a process exit code."""
    if error is None:
        return EXIT_OK
    return getattr(error, "exit_code", EXIT_RESTORED)
