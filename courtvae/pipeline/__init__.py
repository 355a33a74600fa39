"""Online learning control loop."""

from .orchestrator import GameResult, OnlineLearningOrchestrator, OrchestratorState

__all__ = ["GameResult", "OnlineLearningOrchestrator", "OrchestratorState"]
