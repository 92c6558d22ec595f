"""podmover - move a running Kubernetes pod to a chosen node.

The pod's owning ReplicationController/ReplicaSet is pointed at a scheduler
that does not exist while the pod is deleted and recreated on the
destination node, then the original scheduler is restored.
"""

__version__ = "0.1.0"
