"""Tests for team posterior updates and season transitions."""

from datetime import date

import numpy as np
import pytest

from courtvae.beliefs.season import InterYearUncertaintyManager, SeasonTransitionDetector
from courtvae.beliefs.team_updater import (
    MAX_CROSS_ENTROPY,
    TeamBeliefUpdater,
    calculate_confidence,
    performance_signal,
    prediction_error,
)
from courtvae.config import BeliefConfig
from courtvae.data.features import EVENT_DIM
from courtvae.errors import DataError, NumericInstabilityError
from courtvae.models.game import GameContext
from courtvae.models.posterior import LatentDistribution, TeamPosterior

UNIFORM = np.full(EVENT_DIM, 1.0 / EVENT_DIM)


def _latent(value=0.5, log_var=-1.0):
    return LatentDistribution(mu=np.full(16, value), log_var=np.full(16, log_var))


@pytest.fixture
def updater():
    return TeamBeliefUpdater()


def test_prediction_error_range():
    assert prediction_error(UNIFORM, UNIFORM) == pytest.approx(np.log(EVENT_DIM) / MAX_CROSS_ENTROPY)
    one_hot = np.zeros(EVENT_DIM)
    one_hot[0] = 1.0
    wrong = np.zeros(EVENT_DIM)
    wrong[1] = 1.0
    assert prediction_error(wrong, one_hot) == pytest.approx(1.0, abs=1e-6)
    assert 0.0 <= prediction_error(UNIFORM, one_hot) <= 1.0


def test_prediction_error_dimension_check(updater):
    with pytest.raises(DataError):
        updater.prediction_error(np.ones(3) / 3, UNIFORM)
    assert updater.prediction_error(UNIFORM, UNIFORM) == prediction_error(UNIFORM, UNIFORM)


def test_performance_signal():
    assert performance_signal(UNIFORM, UNIFORM) == pytest.approx(0.0)
    makes = np.zeros(EVENT_DIM)
    makes[2] = 1.0
    assert performance_signal(makes, UNIFORM) > 0
    assert -1.0 < performance_signal(UNIFORM, makes) < 0


def test_confidence_grows_and_saturates():
    assert calculate_confidence(0) == 0.0
    assert calculate_confidence(5) < calculate_confidence(20) < 0.8


def test_initialize(updater):
    posterior = updater.initialize("DUKE", game_date=date(2024, 11, 4))
    assert posterior.games_processed == 0
    assert np.all(posterior.mu == 0)
    assert np.allclose(posterior.sigma, 1.0)
    assert posterior.last_season == "2024-25"
    assert np.allclose(updater.initialize("NEW", has_recent_games=False).sigma, 1.5)


def test_two_teams_update_independently(updater):
    """Two teams meeting for the first time each move toward their own latent."""
    context = GameContext(game_date=date(2024, 11, 4))
    home_prior = updater.initialize("A")
    away_prior = updater.initialize("B")

    home = updater.update("A", _latent(0.6), context, 0.2, prior=home_prior)
    away = updater.update("B", _latent(-0.4), context, 0.2, prior=away_prior)

    for prior, posterior in ((home_prior, home), (away_prior, away)):
        assert posterior.games_processed == prior.games_processed + 1
        assert posterior.mean_sigma < prior.mean_sigma
        assert posterior.confidence > 0
    assert np.all(home.mu > 0)
    assert np.all(away.mu < 0)
    assert home.team_id == "A" and away.team_id == "B"
    # Priors are untouched snapshots.
    assert np.all(home_prior.mu == 0)


def test_sigma_never_drops_below_floor(updater):
    posterior = updater.initialize("A")
    context = GameContext(game_date=date(2025, 1, 10))
    for _ in range(200):
        posterior = updater.update("A", _latent(0.1, log_var=-8.0), context, 0.0, prior=posterior)
    assert posterior.games_processed == 200
    assert np.all(posterior.sigma >= 0.1)
    assert np.all(posterior.sigma <= 2.0)


def test_update_steps_are_bounded(updater):
    prior = updater.initialize("A")
    posterior = updater.update("A", _latent(50.0), None, 1.0, prior=prior)
    assert np.all(np.abs(posterior.mu - prior.mu) <= 0.5 + 1e-12)
    assert np.all(np.abs(posterior.sigma - prior.sigma) <= 0.25 + 1e-12)


def test_contradicting_evidence_does_not_shrink_sigma(updater):
    prior = updater.initialize("A").evolve(sigma=np.full(16, 0.2), games_processed=30)
    posterior = updater.update("A", _latent(5.0, log_var=-6.0), None, 0.9, prior=prior)
    assert posterior.mean_sigma >= prior.mean_sigma


def test_update_creates_prior_when_missing(updater):
    posterior = updater.update("A", _latent(), None, 0.3)
    assert posterior.games_processed == 1


def test_update_rejects_bad_inputs(updater):
    prior = updater.initialize("A")
    with pytest.raises(NumericInstabilityError):
        updater.update("A", _latent(), None, float("nan"), prior=prior)
    short = LatentDistribution(mu=np.zeros(8), log_var=np.zeros(8))
    with pytest.raises(DataError):
        updater.update("A", short, None, 0.1, prior=prior)
    mismatched = LatentDistribution(mu=np.zeros(16), log_var=np.zeros(8))
    with pytest.raises(DataError):
        updater.update("A", mismatched, None, 0.1, prior=prior)


def test_validate_posterior_repairs(updater):
    mu = np.zeros(16)
    mu[0] = np.nan
    sigma = np.ones(16)
    sigma[1] = -1.0
    sigma[2] = np.inf
    sigma[3] = 10.0
    repaired = updater.validate_posterior(TeamPosterior("A", mu, sigma))
    assert np.all(np.isfinite(repaired.mu))
    assert repaired.mu[0] == 0.0
    assert repaired.sigma[1] == pytest.approx(1.0)
    assert repaired.sigma[2] == pytest.approx(1.0)
    assert repaired.sigma[3] == pytest.approx(2.0)


def test_validate_posterior_wrong_length(updater):
    with pytest.raises(DataError):
        updater.validate_posterior(TeamPosterior("A", np.zeros(8), np.ones(8)))


def test_validate_posterior_passthrough(updater):
    posterior = updater.initialize("A")
    assert updater.validate_posterior(posterior) is posterior


def test_reset_posterior(updater):
    posterior = updater.initialize("A").evolve(mu=np.full(16, 1.0), sigma=np.full(16, 0.2), games_processed=12)
    reset = updater.reset_posterior(posterior)
    assert np.allclose(reset.mu, 0.5)
    assert np.allclose(reset.sigma, 0.5)
    assert reset.games_processed == 0


def test_posterior_arrays_are_read_only(updater):
    posterior = updater.initialize("A")
    with pytest.raises(ValueError):
        posterior.mu[0] = 1.0


class TestSeasons:
    def test_season_labels(self):
        detector = SeasonTransitionDetector()
        assert detector.get_season_for_date("2024-11-12") == "2024-25"
        assert detector.get_season_for_date("2025-03-01") == "2024-25"
        assert detector.get_season_for_date("2025-11-03") == "2025-26"
        assert detector.is_new_season("2024-25", "2025-11-03")
        assert not detector.is_new_season("2024-25", "2025-02-03")
        assert not detector.is_new_season(None, "2025-02-03")

    def test_transition_inflates_sigma_and_keeps_mu(self):
        manager = InterYearUncertaintyManager(BeliefConfig(inter_year_variance=0.25))
        posterior = TeamPosterior("A", np.full(16, 0.3), np.full(16, 0.5), last_season="2023-24")
        moved = manager.apply_season_transition(posterior, date(2024, 11, 6))
        assert moved.last_season == "2024-25"
        assert moved.season_transitions == 1
        assert np.allclose(moved.mu, 0.3)
        assert np.allclose(moved.sigma, np.sqrt(0.25 + 0.25))

    def test_multiple_seasons_clamped(self):
        manager = InterYearUncertaintyManager(BeliefConfig(inter_year_variance=1.0))
        posterior = TeamPosterior("A", np.zeros(16), np.full(16, 1.0), last_season="2019-20")
        moved = manager.apply_season_transition(posterior, date(2024, 12, 1))
        assert np.allclose(moved.sigma, 2.0)

    def test_same_season_and_unlabelled(self):
        manager = InterYearUncertaintyManager()
        posterior = TeamPosterior("A", np.zeros(16), np.ones(16), last_season="2024-25")
        assert manager.apply_season_transition(posterior, date(2025, 2, 1)) is posterior
        unlabelled = TeamPosterior("A", np.zeros(16), np.ones(16))
        labelled = manager.apply_season_transition(unlabelled, date(2025, 2, 1))
        assert labelled.last_season == "2024-25"
        assert labelled.season_transitions == 0

    def test_disabled(self):
        manager = InterYearUncertaintyManager(BeliefConfig(enable_season_transitions=False))
        posterior = TeamPosterior("A", np.zeros(16), np.ones(16), last_season="2020-21")
        assert manager.apply_season_transition(posterior, date(2024, 12, 1)) is posterior

    def test_older_season_is_down_weighted(self):
        manager = InterYearUncertaintyManager()
        posterior = TeamPosterior("A", np.zeros(16), np.ones(16), last_season="2024-25")
        assert manager.season_weight(posterior, date(2024, 2, 1)) == pytest.approx(0.7)
        assert manager.season_weight(posterior, date(2025, 2, 1)) == 1.0

    def test_update_applies_transition(self, updater):
        prior = updater.initialize("A", game_date=date(2024, 1, 5)).evolve(sigma=np.full(16, 0.5))
        assert prior.last_season == "2023-24"
        posterior = updater.update("A", _latent(), GameContext(game_date=date(2024, 11, 10)), 0.2, prior=prior)
        assert posterior.last_season == "2024-25"
        assert posterior.season_transitions == 1
