"""Pod relocation: pod helpers, the controller-owned move and the driver."""

from podmover.move.mover import MoveResult, PodMover
from podmover.move.orchestrator import MoveOrchestrator, MoveState

__all__ = ["MoveOrchestrator", "MoveResult", "MoveState", "PodMover"]
