"""
Collaborator interfaces consumed by the learning loop, with two implementations.

The orchestrator is the only writer of posteriors, model weights and
processed markers; everything else should treat these stores as read-only.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import DataError, PersistenceError
from ..models.game import GameContext, GameFeatures, GameInfo, parse_game_date
from ..models.posterior import TeamPosterior
from .features import features_to_vector, transition_probabilities, validate_event_probabilities

logger = logging.getLogger(__name__)


class GameSource(ABC):
    """Supplies unprocessed games and records which have been processed."""

    @abstractmethod
    def next_unprocessed_games(self, limit: Optional[int] = None,
                               start_from_game_id: Optional[str] = None) -> List[GameInfo]:
        """
        Return unprocessed games ordered by (game_date, game_id).

        Args:
            limit: Maximum number of games to return; None means no limit and 0 returns nothing
            start_from_game_id: Only return games on or after this game's date
        """

    @abstractmethod
    def mark_processed(self, game_id: str) -> None:
        """Mark a game processed. Marking twice is a no-op."""

    def has_recent_games(self, team_id: str, before, window_days: int = 365) -> bool:
        """Whether the team played within ``window_days`` before the given date."""
        return True


class FeatureExtractor(ABC):
    @abstractmethod
    def extract_features(self, game_id: str) -> GameFeatures:
        """Return feature and ground-truth vectors, raising DataError if unavailable."""


class PosteriorStore(ABC):
    @abstractmethod
    def get_team_posterior(self, team_id: str) -> Optional[TeamPosterior]:
        """Return the stored posterior or None when the team is unknown."""

    @abstractmethod
    def save_team_posterior(self, team_id: str, posterior: TeamPosterior) -> None:
        pass

    def list_team_ids(self) -> List[str]:
        return []


class ModelStore(ABC):
    @abstractmethod
    def load_model_weights(self, model_name: str) -> Optional[Dict]:
        """Return serialized weights or None when nothing was saved."""

    @abstractmethod
    def save_model_weights(self, model_name: str, weights: Dict) -> None:
        pass


def game_features_from_dict(game_id: str, payload: Dict) -> GameFeatures:
    """
    Build GameFeatures from a stored game payload.

    Each side is ``{"features": {...}, "transition_counts": {...}}``; an
    explicit ``"event_probabilities"`` list takes precedence over counts.
    """
    try:
        sides = {}
        for side in ("home", "away"):
            record = payload[side]
            vector = features_to_vector(record.get("features", {}))
            if record.get("event_probabilities") is not None:
                probs = validate_event_probabilities(record["event_probabilities"], game_id=game_id)
            else:
                probs = transition_probabilities(record.get("transition_counts", {}))
            sides[side] = (vector, probs)
        context = GameContext.from_dict(payload.get("context", {}))
    except KeyError as exc:
        raise DataError(f"missing field {exc}", game_id=game_id, component="extract_features") from exc

    return GameFeatures(
        game_id=game_id,
        home=sides["home"][0],
        away=sides["away"][0],
        home_actual=sides["home"][1],
        away_actual=sides["away"][1],
        context=context,
    )


class InMemoryRepository(GameSource, FeatureExtractor, PosteriorStore, ModelStore):
    """All collaborators backed by dictionaries. Useful for tests and notebooks."""

    def __init__(self, games: Iterable[GameInfo] = (), features: Optional[Dict[str, GameFeatures]] = None):
        self.games: Dict[str, GameInfo] = {g.game_id: g for g in games}
        self.features: Dict[str, GameFeatures] = dict(features or {})
        self.posteriors: Dict[str, TeamPosterior] = {}
        self.weights: Dict[str, Dict] = {}

    def add_game(self, game: GameInfo, features: Optional[GameFeatures] = None) -> None:
        self.games[game.game_id] = game
        if features is not None:
            self.features[game.game_id] = features

    def next_unprocessed_games(self, limit=None, start_from_game_id=None) -> List[GameInfo]:
        if limit is not None and limit < 0:
            raise DataError(f"limit must be non-negative, got {limit}", component="next_unprocessed_games")
        pending = [g for g in self.games.values() if not g.processed]
        if start_from_game_id is not None:
            anchor = self.games.get(str(start_from_game_id))
            if anchor is not None:
                pending = [g for g in pending if g.game_date >= anchor.game_date]
        pending.sort(key=lambda g: g.sort_key)
        return pending if limit is None else pending[:limit]

    def mark_processed(self, game_id: str) -> None:
        game = self.games.get(str(game_id))
        if game is None:
            raise PersistenceError(f"unknown game {game_id}", game_id=game_id, component="mark_processed")
        game.processed = True

    def has_recent_games(self, team_id: str, before, window_days: int = 365) -> bool:
        return _has_recent(self.games.values(), team_id, before, window_days)

    def extract_features(self, game_id: str) -> GameFeatures:
        if game_id not in self.features:
            raise DataError("features not found", game_id=game_id, component="extract_features")
        return self.features[game_id]

    def get_team_posterior(self, team_id: str) -> Optional[TeamPosterior]:
        return self.posteriors.get(team_id)

    def save_team_posterior(self, team_id: str, posterior: TeamPosterior) -> None:
        self.posteriors[team_id] = posterior

    def list_team_ids(self) -> List[str]:
        return sorted(self.posteriors)

    def load_model_weights(self, model_name: str) -> Optional[Dict]:
        weights = self.weights.get(model_name)
        return deepcopy(weights) if weights is not None else None

    def save_model_weights(self, model_name: str, weights: Dict) -> None:
        self.weights[model_name] = deepcopy(weights)


class JsonFileRepository(InMemoryRepository):
    """
    Collaborators backed by a directory of JSON files.

    Layout::

        games.json        {"games": [{game_id, game_date, home_team_id, away_team_id,
                                      processed, context, home, away}, ...]}
        posteriors.json   {"teams": {team_id: TeamPosterior.to_dict()}}
        models/<name>.json
    """

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = Path(data_dir)
        self.models_dir = self.data_dir / "models"
        self._payloads: Dict[str, Dict] = {}
        self._load()

    @property
    def games_path(self) -> Path:
        return self.data_dir / "games.json"

    @property
    def posteriors_path(self) -> Path:
        return self.data_dir / "posteriors.json"

    def _load(self) -> None:
        if self.games_path.exists():
            data = self._read_json(self.games_path)
            for entry in data.get("games", []):
                game = GameInfo.from_dict(entry)
                self.games[game.game_id] = game
                self._payloads[game.game_id] = entry
        if self.posteriors_path.exists():
            data = self._read_json(self.posteriors_path)
            for team_id, entry in data.get("teams", {}).items():
                self.posteriors[team_id] = TeamPosterior.from_dict(entry)
        logger.info("Loaded %d games and %d team posteriors from %s",
                    len(self.games), len(self.posteriors), self.data_dir)

    def extract_features(self, game_id: str) -> GameFeatures:
        if game_id not in self.features:
            payload = self._payloads.get(game_id)
            if payload is None:
                raise DataError("game not found", game_id=game_id, component="extract_features")
            self.features[game_id] = game_features_from_dict(game_id, payload)
        return self.features[game_id]

    def mark_processed(self, game_id: str) -> None:
        if game_id not in self._payloads:
            raise PersistenceError(f"unknown game {game_id}", game_id=game_id, component="mark_processed")
        entries = [dict(entry, processed=True) if gid == game_id else entry
                   for gid, entry in self._payloads.items()]
        self._write_json(self.games_path, {"games": entries})
        self._payloads[game_id]["processed"] = True
        super().mark_processed(game_id)

    def save_team_posterior(self, team_id: str, posterior: TeamPosterior) -> None:
        teams = {tid: p.to_dict() for tid, p in self.posteriors.items()}
        teams[team_id] = posterior.to_dict()
        self._write_json(self.posteriors_path, {"teams": teams})
        super().save_team_posterior(team_id, posterior)

    def load_model_weights(self, model_name: str) -> Optional[Dict]:
        path = self.models_dir / f"{model_name}.json"
        if not path.exists():
            return None
        return self._read_json(path)

    def save_model_weights(self, model_name: str, weights: Dict) -> None:
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self._write_json(self.models_dir / f"{model_name}.json", weights)

    @staticmethod
    def _read_json(path: Path) -> Dict:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"could not read {path}: {exc}", component="json_repository") from exc

    @staticmethod
    def _write_json(path: Path, payload: Dict) -> None:
        # Atomic replace; readers never see a partial file.
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError) as exc:
            raise PersistenceError(f"could not write {path}: {exc}", component="json_repository") from exc


def _has_recent(games: Iterable[GameInfo], team_id: str, before, window_days: int) -> bool:
    cutoff_end = parse_game_date(before)
    cutoff_start = cutoff_end - timedelta(days=window_days)
    return any(
        team_id in (g.home_team_id, g.away_team_id) and cutoff_start <= g.game_date < cutoff_end
        for g in games
    )
