"""Records shared across the learning loop."""

from .game import CONTEXT_DIM, GameContext, GameFeatures, GameInfo
from .posterior import LatentDistribution, TeamPosterior

__all__ = [
    "CONTEXT_DIM",
    "GameContext",
    "GameFeatures",
    "GameInfo",
    "LatentDistribution",
    "TeamPosterior",
]
