"""Game records exchanged between the data collaborators and the learning loop."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

import numpy as np

CONTEXT_DIM = 10

# Slot order of the game-context vector. Only the first two are populated today.
CONTEXT_SLOTS = [
    "neutral_site",
    "postseason",
    "rest_days",
    "travel_distance",
    "conference_game",
    "rivalry_game",
    "tv_game",
    "time_of_day",
    "day_of_week",
    "season_progress",
]


def parse_game_date(value) -> date:
    """Parse an ISO date string, date or datetime into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)[:10]).date()


@dataclass
class GameInfo:
    """Identifies one game awaiting processing."""

    game_id: str
    game_date: date
    home_team_id: str
    away_team_id: str
    processed: bool = False

    def __post_init__(self):
        self.game_id = str(self.game_id)
        self.game_date = parse_game_date(self.game_date)

    @property
    def sort_key(self):
        return (self.game_date, self.game_id)

    def to_dict(self) -> dict:
        return {
            "game_id": self.game_id,
            "game_date": self.game_date.isoformat(),
            "home_team_id": self.home_team_id,
            "away_team_id": self.away_team_id,
            "processed": self.processed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GameInfo":
        return cls(
            game_id=data["game_id"],
            game_date=data["game_date"],
            home_team_id=data["home_team_id"],
            away_team_id=data["away_team_id"],
            processed=bool(data.get("processed", False)),
        )


@dataclass
class GameContext:
    """Context shared by both teams in a game."""

    neutral_site: bool = False
    postseason: bool = False
    game_date: Optional[date] = None
    conference_game: Optional[bool] = None
    rest_days: Optional[int] = None

    def __post_init__(self):
        if self.game_date is not None:
            self.game_date = parse_game_date(self.game_date)

    def to_vector(self) -> np.ndarray:
        """Convert to the 10-dim context vector (reserved slots are 0)."""
        vector = np.zeros(CONTEXT_DIM, dtype=np.float64)
        vector[0] = 1.0 if self.neutral_site else 0.0
        vector[1] = 1.0 if self.postseason else 0.0
        return vector

    def to_dict(self) -> dict:
        return {
            "neutral_site": self.neutral_site,
            "postseason": self.postseason,
            "game_date": self.game_date.isoformat() if self.game_date else None,
            "conference_game": self.conference_game,
            "rest_days": self.rest_days,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GameContext":
        return cls(
            neutral_site=bool(data.get("neutral_site", False)),
            postseason=bool(data.get("postseason", False)),
            game_date=data.get("game_date"),
            conference_game=data.get("conference_game"),
            rest_days=data.get("rest_days"),
        )


@dataclass
class GameFeatures:
    """Feature and ground-truth vectors for both teams of one game."""

    game_id: str
    home: np.ndarray  # 88 normalized features
    away: np.ndarray
    home_actual: np.ndarray  # 8 event probabilities
    away_actual: np.ndarray
    context: GameContext

    def __post_init__(self):
        self.home = np.asarray(self.home, dtype=np.float64)
        self.away = np.asarray(self.away, dtype=np.float64)
        self.home_actual = np.asarray(self.home_actual, dtype=np.float64)
        self.away_actual = np.asarray(self.away_actual, dtype=np.float64)

    @property
    def context_vector(self) -> np.ndarray:
        return self.context.to_vector()

    def for_team(self, side: str) -> List[np.ndarray]:
        """Return [features, actual, opponent features, opponent actual] from one side's view."""
        if side == "home":
            return [self.home, self.home_actual, self.away, self.away_actual]
        if side == "away":
            return [self.away, self.away_actual, self.home, self.home_actual]
        raise ValueError(f"Unknown side: {side}")
