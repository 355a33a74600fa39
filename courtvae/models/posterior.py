"""Latent distribution records for single games and for teams."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

import numpy as np


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LatentDistribution:
    """Per-game Gaussian latent for one team, produced by the encoder."""

    mu: np.ndarray
    log_var: np.ndarray

    def __post_init__(self):
        self.mu = np.asarray(self.mu, dtype=np.float64)
        self.log_var = np.asarray(self.log_var, dtype=np.float64)

    @property
    def sigma(self) -> np.ndarray:
        return np.exp(0.5 * self.log_var)


@dataclass(frozen=True)
class TeamPosterior:
    """
    Running Gaussian belief about a team's underlying style.

    Instances are immutable snapshots; updates produce a new instance via
    :meth:`evolve`.
    """

    team_id: str
    mu: np.ndarray
    sigma: np.ndarray
    games_processed: int = 0
    last_updated: str = field(default_factory=utc_now)
    confidence: float = 0.0
    last_season: Optional[str] = None
    season_transitions: int = 0

    def __post_init__(self):
        mu = np.array(self.mu, dtype=np.float64)
        sigma = np.array(self.sigma, dtype=np.float64)
        mu.setflags(write=False)
        sigma.setflags(write=False)
        object.__setattr__(self, "mu", mu)
        object.__setattr__(self, "sigma", sigma)

    @property
    def mean_sigma(self) -> float:
        return float(np.mean(self.sigma))

    def evolve(self, **changes) -> "TeamPosterior":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "team_id": self.team_id,
            "mu": [float(v) for v in self.mu],
            "sigma": [float(v) for v in self.sigma],
            "games_processed": int(self.games_processed),
            "last_updated": self.last_updated,
            "confidence": float(self.confidence),
            "last_season": self.last_season,
            "season_transitions": int(self.season_transitions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TeamPosterior":
        return cls(
            team_id=data["team_id"],
            mu=data["mu"],
            sigma=data["sigma"],
            games_processed=int(data.get("games_processed", 0)),
            last_updated=data.get("last_updated") or utc_now(),
            confidence=float(data.get("confidence", 0.0)),
            last_season=data.get("last_season"),
            season_transitions=int(data.get("season_transitions", 0)),
        )
