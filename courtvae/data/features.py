"""
Numeric conversion between box-score records and fixed-length model vectors.

Produces:
- the 88-dim normalized team feature vector consumed by the encoder
- the 8-dim event-probability vector derived from play-by-play counts
- the 10-dim game-context vector
"""

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..errors import DataError
from ..models.game import GameContext

logger = logging.getLogger(__name__)

FEATURE_DIM = 88
EVENT_DIM = 8

EVENT_LABELS = [
    "2pt_make",
    "2pt_miss",
    "3pt_make",
    "3pt_miss",
    "ft_make",
    "ft_miss",
    "oreb",
    "turnover",
]

# Play-by-play count keys, aligned with EVENT_LABELS.
TRANSITION_COUNT_KEYS = [
    "two_point_makes",
    "two_point_misses",
    "three_point_makes",
    "three_point_misses",
    "free_throw_makes",
    "free_throw_misses",
    "offensive_rebounds",
    "turnovers",
]

FEATURE_GROUPS: Dict[str, List[str]] = {
    "shooting": [
        "fgm", "fga", "fg_pct", "fg3m", "fg3a", "fg3_pct", "ftm", "fta", "ft_pct",
    ],
    "rebounding": ["rebounds", "offensive_rebounds", "defensive_rebounds"],
    "box": [
        "assists", "turnovers", "steals", "blocks", "personal_fouls", "technical_fouls", "points",
    ],
    "advanced": [
        "points_in_paint", "fast_break_points", "second_chance_points", "points_off_turnovers",
        "bench_points", "possession_count", "ties", "leads", "largest_lead", "biggest_run",
    ],
    "derived": ["effective_fg_pct", "true_shooting_pct", "turnover_rate"],
    "player": [
        "avg_player_minutes", "avg_player_plus_minus", "avg_player_efficiency",
        "top_player_minutes", "top_player_points", "top_player_rebounds", "top_player_assists",
        "players_used", "starter_minutes", "bench_minutes", "bench_contribution",
        "starter_efficiency", "bench_efficiency", "depth_score", "minute_distribution",
        "top_player_usage", "balance_score", "clutch_performance", "experience_level",
        "versatility_score",
    ],
    "lineup": [
        "starting_lineup_minutes", "starting_lineup_points", "starting_lineup_efficiency",
        "lineup_bench_contribution", "lineup_bench_minutes", "lineup_bench_points",
        "rotation_depth", "minutes_distribution", "lineup_balance", "substitution_rate",
        "depth_utilization", "starter_dominance", "lineup_versatility", "bench_impact",
        "rotation_efficiency",
    ],
    "context": [
        "is_neutral_site", "is_postseason", "game_length", "pace_of_play",
        "competitive_balance", "game_flow", "intensity_level", "game_context",
    ],
    "shooting_distribution": [
        "two_point_attempt_rate", "three_point_attempt_rate", "free_throw_rate",
        "two_point_accuracy", "three_point_accuracy", "free_throw_accuracy",
        "shot_selection", "shooting_efficiency",
    ],
    "defensive": [
        "opponent_fg_pct_allowed", "opponent_fg3_pct_allowed", "defensive_rebounding_pct",
        "points_in_paint_allowed", "defensive_efficiency",
    ],
}

FEATURE_NAMES: List[str] = [name for group in FEATURE_GROUPS.values() for name in group]

# (min, max) of raw per-game values; anything else is assumed to already be in [0, 1].
FEATURE_BOUNDS: Dict[str, tuple] = {
    "fgm": (0, 60), "fga": (0, 100), "fg_pct": (0, 100),
    "fg3m": (0, 30), "fg3a": (0, 50), "fg3_pct": (0, 100),
    "ftm": (0, 50), "fta": (0, 50), "ft_pct": (0, 100),
    "rebounds": (0, 60), "offensive_rebounds": (0, 30), "defensive_rebounds": (0, 50),
    "assists": (0, 40), "turnovers": (0, 30), "steals": (0, 20), "blocks": (0, 15),
    "personal_fouls": (0, 30), "technical_fouls": (0, 5), "points": (0, 150),
    "points_in_paint": (0, 80), "fast_break_points": (0, 40), "second_chance_points": (0, 30),
    "points_off_turnovers": (0, 40), "bench_points": (0, 80), "possession_count": (50, 120),
    "ties": (0, 20), "leads": (0, 30), "largest_lead": (0, 50), "biggest_run": (0, 30),
    "effective_fg_pct": (0, 100), "true_shooting_pct": (0, 100), "turnover_rate": (0, 50),
    "avg_player_minutes": (0, 40), "avg_player_plus_minus": (-30, 30),
    "avg_player_efficiency": (-10, 40), "top_player_minutes": (0, 40), "top_player_points": (0, 50),
    "top_player_rebounds": (0, 25), "top_player_assists": (0, 20), "players_used": (0, 15),
    "starter_minutes": (0, 200), "bench_minutes": (0, 200),
    "starting_lineup_minutes": (0, 200), "starting_lineup_points": (0, 120),
    "starting_lineup_efficiency": (-50, 50), "lineup_bench_minutes": (0, 200),
    "lineup_bench_points": (0, 80), "rotation_depth": (0, 15),
    "game_length": (40, 60), "pace_of_play": (50, 120),
    "opponent_fg_pct_allowed": (0, 100), "opponent_fg3_pct_allowed": (0, 100),
}


def normalize_value(name: str, value: float) -> float:
    bounds = FEATURE_BOUNDS.get(name)
    if bounds is None:
        return float(min(1.0, max(0.0, value)))
    low, high = bounds
    span = high - low
    if span <= 0:
        return 0.0
    return float(min(1.0, max(0.0, (value - low) / span)))


def features_to_vector(features: Mapping[str, float], normalize: bool = True) -> np.ndarray:
    """
    Convert a named feature record to the ordered 88-dim vector.

    Args:
        features: Mapping of feature name to raw per-game value; missing names are 0
        normalize: Min-max scale known bounds and clip everything to [0, 1]

    Returns:
        Array of shape (88,)

    Raises:
        DataError: If a value is not numeric or not finite
    """
    vector = np.zeros(FEATURE_DIM, dtype=np.float64)
    for idx, name in enumerate(FEATURE_NAMES):
        raw = features.get(name)
        if raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise DataError(f"feature {name!r} is not numeric: {raw!r}", component="features") from exc
        if not math.isfinite(value):
            raise DataError(f"feature {name!r} is not finite", component="features")
        vector[idx] = normalize_value(name, value) if normalize else value
    return vector


def validate_feature_vector(vector: Sequence[float], game_id: Optional[str] = None) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64)
    if arr.shape != (FEATURE_DIM,):
        raise DataError(f"feature vector must have {FEATURE_DIM} values, got shape {arr.shape}",
                        game_id=game_id, component="features")
    if not np.all(np.isfinite(arr)):
        raise DataError("feature vector contains non-finite values", game_id=game_id, component="features")
    return arr


def transition_probabilities(counts: Mapping[str, float]) -> np.ndarray:
    """
    Convert play-by-play event counts into the 8-dim event distribution.

    Possessions are the total of all eight counts. A team with no recorded
    possessions gets the all-zero vector.
    """
    values = np.array([max(0.0, float(counts.get(key, 0) or 0)) for key in TRANSITION_COUNT_KEYS])
    total = values.sum()
    if total <= 0:
        logger.debug("No possessions recorded; returning zero transition vector")
        return np.zeros(EVENT_DIM, dtype=np.float64)
    probs = values / total
    return probs / probs.sum()


def validate_event_probabilities(
    vector: Sequence[float],
    tolerance: float = 0.01,
    game_id: Optional[str] = None,
) -> np.ndarray:
    """
    Check an event-probability vector.

    The all-zero vector (no possessions) is accepted here; callers that need a
    proper distribution must check :func:`is_empty_distribution`.

    Raises:
        DataError: On wrong length, negative or non-finite entries, or a sum outside tolerance
    """
    arr = np.asarray(vector, dtype=np.float64)
    if arr.shape != (EVENT_DIM,):
        raise DataError(f"event probabilities must have {EVENT_DIM} values, got shape {arr.shape}",
                        game_id=game_id, component="features")
    if not np.all(np.isfinite(arr)) or np.any(arr < 0):
        raise DataError("event probabilities must be finite and non-negative",
                        game_id=game_id, component="features")
    total = float(arr.sum())
    if total != 0.0 and abs(total - 1.0) > tolerance:
        raise DataError(f"event probabilities sum to {total:.4f}", game_id=game_id, component="features")
    return arr


def is_empty_distribution(vector: Sequence[float]) -> bool:
    return float(np.sum(np.asarray(vector, dtype=np.float64))) == 0.0


def build_context_vector(neutral_site: bool = False, postseason: bool = False) -> np.ndarray:
    return GameContext(neutral_site=neutral_site, postseason=postseason).to_vector()
