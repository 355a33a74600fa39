"""
Bayesian updates of each team's running latent-style posterior.

Each game yields a per-game latent estimate from the encoder. It is fused with
the team's prior by precision weighting, so a confident prior moves less. The
move is then scaled by a rate that shrinks with the number of games seen and
grows with how wrong the predictor was, and it is clipped so one outlier game
cannot produce an unbounded jump.
"""

import logging
import math
from typing import Optional, Sequence

import numpy as np

from ..config import BeliefConfig
from ..data.features import EVENT_DIM
from ..errors import DataError, sanitize, sanitize_array
from ..models.game import GameContext
from ..models.posterior import LatentDistribution, TeamPosterior, utc_now
from .season import InterYearUncertaintyManager

logger = logging.getLogger(__name__)

# Scoring value of each event outcome, aligned with EVENT_LABELS.
PERFORMANCE_WEIGHTS = np.array([1.0, -1.0, 1.5, -1.5, 1.0, -1.0, 0.5, -2.0])

_EPS = 1e-8
MAX_CROSS_ENTROPY = -math.log(_EPS)


def prediction_error(predicted: Sequence[float], actual: Sequence[float]) -> float:
    """Cross-entropy normalized to [0, 1] by its largest attainable value."""
    p = np.clip(np.asarray(predicted, dtype=np.float64), _EPS, 1 - _EPS)
    a = np.clip(np.asarray(actual, dtype=np.float64), _EPS, 1 - _EPS)
    ce = float(-np.sum(a * np.log(p)))
    return min(1.0, max(0.0, ce / MAX_CROSS_ENTROPY))


def performance_signal(actual: Sequence[float], predicted: Sequence[float]) -> float:
    """tanh of the scoring-weighted difference between observed and predicted outcomes."""
    actual_score = float(np.dot(np.asarray(actual, dtype=np.float64), PERFORMANCE_WEIGHTS))
    predicted_score = float(np.dot(np.asarray(predicted, dtype=np.float64), PERFORMANCE_WEIGHTS))
    return math.tanh(actual_score - predicted_score)


def calculate_confidence(games_processed: int) -> float:
    return 0.8 * (1.0 - math.exp(-3.0 * games_processed / 20.0))


class TeamBeliefUpdater:
    """Creates, validates and updates TeamPosterior snapshots."""

    def __init__(self, config: Optional[BeliefConfig] = None):
        self.config = config or BeliefConfig()
        self.seasons = InterYearUncertaintyManager(self.config)

    def initialize(self, team_id: str, has_recent_games: bool = True, game_date=None) -> TeamPosterior:
        """
        Create the starting posterior for a team seen for the first time.

        Teams without recent games start with inflated uncertainty.
        """
        sigma = self.config.initial_uncertainty if has_recent_games else self.config.new_team_uncertainty
        season = self.seasons.detector.get_season_for_date(game_date) if game_date is not None else None
        logger.debug("Initializing posterior for %s (sigma=%.2f)", team_id, sigma)
        return TeamPosterior(
            team_id=team_id,
            mu=np.zeros(self.config.latent_dim),
            sigma=np.full(self.config.latent_dim, sigma),
            games_processed=0,
            confidence=0.0,
            last_season=season,
        )

    def context_multiplier(self, context: Optional[GameContext]) -> float:
        if context is None:
            return 1.0
        multiplier = 1.0
        if context.neutral_site:
            multiplier *= 1.2
        if context.conference_game is False:
            multiplier *= 1.1
        if context.rest_days is not None and context.rest_days < 2:
            multiplier *= 1.15
        if context.postseason:
            multiplier *= 0.9
        return multiplier

    def observation_sigma(self, latent: LatentDistribution, context: Optional[GameContext],
                          error: float, season_weight: float = 1.0) -> np.ndarray:
        base = np.maximum(latent.sigma, self.config.observation_base_uncertainty)
        scaled = base * self.context_multiplier(context) * (1.0 + self.config.error_uncertainty_gain * error)
        return scaled / season_weight

    def update(
        self,
        team_id: str,
        latent: LatentDistribution,
        game_context: Optional[GameContext],
        prediction_error: float,
        prior: Optional[TeamPosterior] = None,
    ) -> TeamPosterior:
        """
        Fuse one game's latent estimate into the team's posterior.

        Args:
            team_id: Team identifier
            latent: Encoder output for this team in this game
            game_context: Context of the game (date drives season handling)
            prediction_error: Normalized predictor error in [0, 1]
            prior: Current posterior; a fresh one is created when None

        Returns:
            New posterior with games_processed incremented by one
        """
        game_date = game_context.game_date if game_context is not None else None
        prior = self.validate_posterior(prior or self.initialize(team_id, game_date=game_date))
        if game_date is not None:
            prior = self.seasons.apply_season_transition(prior, game_date)

        error = min(1.0, max(0.0, sanitize(prediction_error, component="prediction_error")))
        obs_mu = sanitize_array(latent.mu, component="latent_mu")
        log_var_shape = latent.log_var.shape
        if obs_mu.shape != prior.mu.shape or log_var_shape != prior.mu.shape:
            raise DataError(f"latent has mu {obs_mu.shape} and log_var {log_var_shape}, posterior {prior.mu.shape}",
                            component="team_updater")
        weight = self.seasons.season_weight(prior, game_date)
        obs_sigma = sanitize_array(self.observation_sigma(latent, game_context, error, weight),
                                   component="observation_sigma")

        mu, sigma = prior.mu, prior.sigma
        prior_precision = 1.0 / sigma ** 2
        obs_precision = 1.0 / obs_sigma ** 2
        posterior_precision = prior_precision + obs_precision
        fused_mu = (mu * prior_precision + obs_mu * obs_precision) / posterior_precision
        fused_sigma = np.sqrt(1.0 / posterior_precision)

        rate = min(1.0, self.config.learning_rate / math.sqrt(prior.games_processed + 1) * (1.0 + error))

        delta_mu = np.clip(rate * (fused_mu - mu), -self.config.max_mu_step, self.config.max_mu_step)

        residual = np.abs(obs_mu - mu) / np.sqrt(sigma ** 2 + obs_sigma ** 2)
        contradicted = float(np.mean(residual)) > self.config.contradiction_z
        target_sigma = sigma * (1.0 + error) if contradicted else fused_sigma
        delta_sigma = np.clip(
            rate * (target_sigma - sigma), -self.config.max_sigma_step, self.config.max_sigma_step
        )

        new_sigma = np.clip(sigma + delta_sigma, self.config.min_uncertainty, self.config.max_uncertainty)
        games = prior.games_processed + 1
        updated = prior.evolve(
            mu=mu + delta_mu,
            sigma=new_sigma,
            games_processed=games,
            last_updated=utc_now(),
            confidence=calculate_confidence(games),
        )
        logger.debug(
            "Updated %s: games=%d rate=%.3f mean sigma %.3f -> %.3f%s",
            team_id, games, rate, prior.mean_sigma, updated.mean_sigma,
            " (contradicting evidence)" if contradicted else "",
        )
        return self.validate_posterior(updated)

    def validate_posterior(self, posterior: TeamPosterior) -> TeamPosterior:
        """
        Repair a posterior before it is used or written back.

        Non-finite means become 0 and invalid sigmas become the initial
        uncertainty; sigma is clamped to the configured range.

        Raises:
            DataError: If the arrays have the wrong length
        """
        dim = self.config.latent_dim
        if posterior.mu.shape != (dim,) or posterior.sigma.shape != (dim,):
            raise DataError(
                f"posterior for {posterior.team_id} must have {dim} dims, "
                f"got mu {posterior.mu.shape} sigma {posterior.sigma.shape}",
                component="team_updater",
            )
        mu = np.where(np.isfinite(posterior.mu), posterior.mu, 0.0)
        bad_sigma = ~np.isfinite(posterior.sigma) | (posterior.sigma <= 0)
        sigma = np.where(bad_sigma, self.config.initial_uncertainty, posterior.sigma)
        sigma = np.clip(sigma, self.config.min_uncertainty, self.config.max_uncertainty)
        repaired = int(np.sum(~np.isfinite(posterior.mu)) + np.sum(bad_sigma))
        if repaired:
            logger.warning("Repaired %d invalid posterior entries for %s", repaired, posterior.team_id)
        if repaired or not np.array_equal(sigma, posterior.sigma):
            return posterior.evolve(mu=mu, sigma=sigma)
        return posterior

    def reset_posterior(self, posterior: TeamPosterior, regression_factor: float = 0.5) -> TeamPosterior:
        """Regress a posterior toward the prior mean and widen it, e.g. for retraining."""
        mu = posterior.mu * (1.0 - regression_factor)
        sigma = np.clip(
            np.maximum(posterior.sigma * (1.0 + regression_factor), self.config.initial_uncertainty * 0.5),
            self.config.min_uncertainty,
            self.config.max_uncertainty,
        )
        return posterior.evolve(mu=mu, sigma=sigma, games_processed=0, confidence=0.0, last_updated=utc_now())

    @staticmethod
    def prediction_error(predicted, actual) -> float:
        if len(predicted) != EVENT_DIM or len(actual) != EVENT_DIM:
            raise DataError(f"distributions must have {EVENT_DIM} values", component="team_updater")
        return prediction_error(predicted, actual)
