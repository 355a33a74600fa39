"""Tests for the in-memory and JSON-file collaborators."""

import json

import numpy as np
import pytest

from courtvae.data.features import EVENT_DIM, FEATURE_DIM
from courtvae.data.repository import InMemoryRepository, JsonFileRepository, game_features_from_dict
from courtvae.errors import DataError, PersistenceError
from courtvae.models.game import GameContext, GameFeatures, GameInfo
from courtvae.models.posterior import TeamPosterior


def _side(points=70, turnovers=12):
    return {
        "features": {"points": points, "fga": 60, "fgm": 26, "turnovers": turnovers},
        "transition_counts": {
            "two_point_makes": 18,
            "two_point_misses": 16,
            "three_point_makes": 8,
            "three_point_misses": 14,
            "free_throw_makes": 12,
            "free_throw_misses": 4,
            "offensive_rebounds": 9,
            "turnovers": turnovers,
        },
    }


def _game_entry(game_id, game_date, home, away, **context):
    return {
        "game_id": game_id,
        "game_date": game_date,
        "home_team_id": home,
        "away_team_id": away,
        "processed": False,
        "context": context,
        "home": _side(),
        "away": _side(points=64, turnovers=15),
    }


@pytest.fixture
def data_dir(tmp_path):
    games = [
        _game_entry("g2", "2024-11-08", "UNC", "DUKE"),
        _game_entry("g1", "2024-11-05", "DUKE", "UNC", neutral_site=True),
    ]
    (tmp_path / "games.json").write_text(json.dumps({"games": games}))
    return tmp_path


def test_game_features_from_dict():
    features = game_features_from_dict("g1", _game_entry("g1", "2024-11-05", "A", "B", postseason=True))
    assert features.home.shape == (FEATURE_DIM,)
    assert features.home_actual.shape == (EVENT_DIM,)
    assert features.home_actual.sum() == pytest.approx(1.0)
    assert features.context.postseason


def test_game_features_explicit_probabilities():
    entry = _game_entry("g1", "2024-11-05", "A", "B")
    entry["away"] = {"features": {}, "event_probabilities": [0.125] * EVENT_DIM}
    features = game_features_from_dict("g1", entry)
    assert np.allclose(features.away_actual, 0.125)


def test_game_features_missing_side():
    entry = _game_entry("g1", "2024-11-05", "A", "B")
    del entry["away"]
    with pytest.raises(DataError):
        game_features_from_dict("g1", entry)


class TestInMemoryRepository:
    def test_pending_games_are_chronological(self):
        repo = InMemoryRepository(
            [
                GameInfo("g3", "2024-11-10", "A", "B"),
                GameInfo("g1", "2024-11-01", "A", "C"),
                GameInfo("g2", "2024-11-05", "B", "C"),
            ]
        )
        assert [g.game_id for g in repo.next_unprocessed_games()] == ["g1", "g2", "g3"]
        assert [g.game_id for g in repo.next_unprocessed_games(limit=2)] == ["g1", "g2"]
        assert [g.game_id for g in repo.next_unprocessed_games(start_from_game_id="g2")] == ["g2", "g3"]

    def test_mark_processed(self):
        repo = InMemoryRepository([GameInfo("g1", "2024-11-01", "A", "B")])
        repo.mark_processed("g1")
        assert repo.next_unprocessed_games() == []
        with pytest.raises(PersistenceError):
            repo.mark_processed("missing")

    def test_mark_processed_twice_matches_once(self):
        once = InMemoryRepository([GameInfo("g1", "2024-11-01", "A", "B"), GameInfo("g2", "2024-11-02", "A", "C")])
        twice = InMemoryRepository([GameInfo("g1", "2024-11-01", "A", "B"), GameInfo("g2", "2024-11-02", "A", "C")])
        once.mark_processed("g1")
        twice.mark_processed("g1")
        twice.mark_processed("g1")
        assert [g.game_id for g in twice.next_unprocessed_games()] == ["g2"]
        assert [g.game_id for g in twice.next_unprocessed_games()] == [g.game_id for g in once.next_unprocessed_games()]

    def test_limit_zero_returns_nothing(self):
        repo = InMemoryRepository([GameInfo("g1", "2024-11-01", "A", "B"), GameInfo("g2", "2024-11-02", "A", "C")])
        assert repo.next_unprocessed_games(limit=0) == []
        assert len(repo.next_unprocessed_games(limit=None)) == 2
        with pytest.raises(DataError):
            repo.next_unprocessed_games(limit=-1)

    def test_has_recent_games(self):
        repo = InMemoryRepository([GameInfo("g1", "2024-01-15", "A", "B")])
        assert repo.has_recent_games("A", "2024-11-01")
        assert not repo.has_recent_games("A", "2026-11-01")
        assert not repo.has_recent_games("C", "2024-11-01")

    def test_missing_features(self):
        with pytest.raises(DataError):
            InMemoryRepository().extract_features("nope")

    def test_weights_are_copied(self):
        repo = InMemoryRepository()
        weights = {"state": {"w": [1.0, 2.0]}}
        repo.save_model_weights("m", weights)
        weights["state"]["w"][0] = 99.0
        assert repo.load_model_weights("m")["state"]["w"][0] == 1.0
        assert repo.load_model_weights("other") is None

    def test_posteriors(self):
        repo = InMemoryRepository()
        posterior = TeamPosterior("A", np.zeros(16), np.ones(16))
        repo.save_team_posterior("A", posterior)
        assert repo.get_team_posterior("A") is posterior
        assert repo.get_team_posterior("B") is None
        assert repo.list_team_ids() == ["A"]


class TestJsonFileRepository:
    def test_loads_games(self, data_dir):
        repo = JsonFileRepository(str(data_dir))
        assert [g.game_id for g in repo.next_unprocessed_games()] == ["g1", "g2"]
        features = repo.extract_features("g1")
        assert isinstance(features, GameFeatures)
        assert features.context == GameContext(neutral_site=True)

    def test_mark_processed_persists(self, data_dir):
        JsonFileRepository(str(data_dir)).mark_processed("g1")
        reloaded = JsonFileRepository(str(data_dir))
        assert [g.game_id for g in reloaded.next_unprocessed_games()] == ["g2"]

    def test_mark_processed_twice_matches_once(self, data_dir):
        JsonFileRepository(str(data_dir)).mark_processed("g1")
        once = json.loads((data_dir / "games.json").read_text())

        repo = JsonFileRepository(str(data_dir))
        repo.mark_processed("g1")
        repo.mark_processed("g1")
        assert json.loads((data_dir / "games.json").read_text()) == once
        assert [g.game_id for g in repo.next_unprocessed_games()] == ["g2"]
        assert [g.game_id for g in JsonFileRepository(str(data_dir)).next_unprocessed_games()] == ["g2"]

    def test_posteriors_persist(self, data_dir):
        repo = JsonFileRepository(str(data_dir))
        posterior = TeamPosterior("DUKE", np.full(16, 0.2), np.full(16, 0.8), games_processed=3,
                                  last_season="2024-25")
        repo.save_team_posterior("DUKE", posterior)

        reloaded = JsonFileRepository(str(data_dir)).get_team_posterior("DUKE")
        assert reloaded.games_processed == 3
        assert reloaded.last_season == "2024-25"
        assert np.allclose(reloaded.mu, 0.2)
        assert np.allclose(reloaded.sigma, 0.8)

    def test_model_weights(self, data_dir):
        repo = JsonFileRepository(str(data_dir))
        assert repo.load_model_weights("latent_encoder") is None
        repo.save_model_weights("latent_encoder", {"training_step": 4})
        assert (data_dir / "models" / "latent_encoder.json").exists()
        assert JsonFileRepository(str(data_dir)).load_model_weights("latent_encoder") == {"training_step": 4}

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "games.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            JsonFileRepository(str(tmp_path))

    def test_failed_write_leaves_state_unchanged(self, data_dir, monkeypatch):
        repo = JsonFileRepository(str(data_dir))

        def fail(path, payload):
            raise PersistenceError("disk full")

        monkeypatch.setattr(repo, "_write_json", fail)
        with pytest.raises(PersistenceError):
            repo.mark_processed("g1")
        with pytest.raises(PersistenceError):
            repo.save_team_posterior("DUKE", TeamPosterior("DUKE", np.zeros(16), np.ones(16)))
        assert [g.game_id for g in repo.next_unprocessed_games()] == ["g1", "g2"]
        assert repo.get_team_posterior("DUKE") is None

    def test_empty_directory(self, tmp_path):
        repo = JsonFileRepository(str(tmp_path / "fresh"))
        assert repo.next_unprocessed_games() == []
        assert repo.list_team_ids() == []
