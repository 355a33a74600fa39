"""Team posterior maintenance."""

from .season import InterYearUncertaintyManager, SeasonTransitionDetector
from .team_updater import TeamBeliefUpdater, performance_signal, prediction_error

__all__ = [
    "InterYearUncertaintyManager",
    "SeasonTransitionDetector",
    "TeamBeliefUpdater",
    "performance_signal",
    "prediction_error",
]
