"""Controller scheduler-name access for both Kubernetes API generations."""

from podmover.scheduler.accessor import (
    EMPTY_SCHEDULER,
    KIND_REPLICA_SET,
    KIND_REPLICATION_CONTROLLER,
    SCHEDULER_ANNOTATION_KEY,
    AnnotationSchedulerAccessor,
    FieldSchedulerAccessor,
    SchedulerAccessor,
    new_scheduler_accessor,
)

__all__ = [
    "EMPTY_SCHEDULER",
    "KIND_REPLICA_SET",
    "KIND_REPLICATION_CONTROLLER",
    "SCHEDULER_ANNOTATION_KEY",
    "AnnotationSchedulerAccessor",
    "FieldSchedulerAccessor",
    "SchedulerAccessor",
    "new_scheduler_accessor",
]
