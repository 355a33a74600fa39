"""
Season boundaries and between-season uncertainty inflation.

A college basketball season starts in November and is labelled by its two
calendar years, e.g. games on 2024-11-12 and 2025-03-01 both belong to
"2024-25". When a team's first game of a new season arrives, roster turnover
makes last season's belief less reliable, so variance is inflated while the
mean is kept.
"""

import logging
from datetime import date
from typing import Optional

import numpy as np

from ..config import BeliefConfig
from ..models.game import parse_game_date
from ..models.posterior import TeamPosterior

logger = logging.getLogger(__name__)


class SeasonTransitionDetector:
    """Maps dates to season labels and detects season changes."""

    def __init__(self, season_start_month: int = 11):
        self.season_start_month = season_start_month

    def get_season_for_date(self, value) -> str:
        day = parse_game_date(value)
        start_year = day.year if day.month >= self.season_start_month else day.year - 1
        return f"{start_year}-{str(start_year + 1)[-2:]}"

    @staticmethod
    def season_start_year(season: str) -> int:
        return int(season.split("-")[0])

    def seasons_between(self, earlier: str, later: str) -> int:
        return self.season_start_year(later) - self.season_start_year(earlier)

    def is_new_season(self, last_season: Optional[str], game_date) -> bool:
        if not last_season:
            return False
        return self.seasons_between(last_season, self.get_season_for_date(game_date)) > 0


class InterYearUncertaintyManager:
    """Applies variance inflation when a team moves into a new season."""

    def __init__(self, config: Optional[BeliefConfig] = None):
        self.config = config or BeliefConfig()
        self.detector = SeasonTransitionDetector(self.config.season_start_month)

    def apply_season_transition(self, posterior: TeamPosterior, game_date) -> TeamPosterior:
        """
        Return the posterior moved into the season of ``game_date``.

        sigma^2 grows by ``inter_year_variance`` for each season crossed and is
        clamped to [min_uncertainty, max_uncertainty]; mu is unchanged. A
        posterior with no recorded season just gets the label.
        """
        if not self.config.enable_season_transitions:
            return posterior
        new_season = self.detector.get_season_for_date(game_date)
        if posterior.last_season is None:
            return posterior.evolve(last_season=new_season)

        crossed = self.detector.seasons_between(posterior.last_season, new_season)
        if crossed <= 0:
            return posterior

        variance = posterior.sigma ** 2 + crossed * self.config.inter_year_variance
        sigma = np.clip(np.sqrt(variance), self.config.min_uncertainty, self.config.max_uncertainty)
        logger.info(
            "Season transition for %s: %s -> %s, mean sigma %.3f -> %.3f",
            posterior.team_id, posterior.last_season, new_season, posterior.mean_sigma, float(np.mean(sigma)),
        )
        return posterior.evolve(
            sigma=sigma,
            last_season=new_season,
            season_transitions=posterior.season_transitions + 1,
        )

    def season_weight(self, posterior: TeamPosterior, game_date: Optional[date]) -> float:
        """Down-weight evidence from seasons before the posterior's current one."""
        if not self.config.enable_season_transitions or game_date is None or not posterior.last_season:
            return 1.0
        game_season = self.detector.get_season_for_date(game_date)
        behind = self.detector.seasons_between(game_season, posterior.last_season)
        if behind <= 0:
            return 1.0
        return self.config.cross_season_decay ** behind
