"""
Rolling performance monitoring for the online learning loop.

Tracks per-game predictor/encoder losses and per-team posterior uncertainty
over a trailing window, classifies trends by comparing the oldest third of
the window with the newest third, and raises severity-tagged alerts to
registered callbacks.
"""

import logging
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional

import numpy as np
import pandas as pd

from ..config import MonitorConfig
from ..models.posterior import TeamPosterior

logger = logging.getLogger(__name__)

MIN_TREND_RECORDS = 6
TEAM_HISTORY = 10


@dataclass
class PerformanceAlert:
    """A condition worth a human look."""

    alert_type: str
    severity: str
    message: str
    game_index: int
    game_id: Optional[str] = None
    details: Dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict:
        return asdict(self)

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.alert_type}: {self.message}"


def categorize_trend(change: float, threshold: float = 0.05) -> str:
    """
    Label a relative change where positive means better.

    Returns:
        One of strongly_improving, improving, stable, declining, strongly_declining
    """
    if change > 2 * threshold:
        return "strongly_improving"
    if change > threshold:
        return "improving"
    if change < -2 * threshold:
        return "strongly_declining"
    if change < -threshold:
        return "declining"
    return "stable"


def quality_bucket(accuracy: float) -> str:
    if accuracy > 0.9:
        return "excellent"
    if accuracy > 0.8:
        return "good"
    if accuracy > 0.7:
        return "fair"
    if accuracy > 0.6:
        return "poor"
    return "very_poor"


def uncertainty_level(mean_sigma: float) -> str:
    if mean_sigma < 0.1:
        return "very_low"
    if mean_sigma < 0.2:
        return "low"
    if mean_sigma < 0.4:
        return "moderate"
    if mean_sigma < 0.7:
        return "high"
    return "very_high"


def loss_to_accuracy(nn_loss: float) -> float:
    return float(np.clip(1.0 - nn_loss / 2.0, 0.0, 1.0))


class PerformanceMonitor:
    """Observer of the learning loop; never raises into it."""

    def __init__(self, config: Optional[MonitorConfig] = None):
        self.config = config or MonitorConfig()
        self._callbacks: List[Callable[[PerformanceAlert], None]] = []
        self.reset()

    def reset(self) -> None:
        self.records: Deque[Dict] = deque(maxlen=self.config.window_size)
        self.team_history: Dict[str, Deque[Dict]] = defaultdict(lambda: deque(maxlen=TEAM_HISTORY))
        self.team_latest: Dict[str, Dict] = {}
        self.alerts: Deque[PerformanceAlert] = deque(maxlen=self.config.max_alerts)
        self.alerts_raised = 0
        self.games_recorded = 0
        self._last_alert: Dict[str, int] = {}

    def on_alert(self, callback: Callable[[PerformanceAlert], None]) -> None:
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_prediction_performance(
        self,
        nn_loss: float,
        vae_loss: Optional[float],
        feedback_triggered: bool,
        current_alpha: float,
        game_id: Optional[str] = None,
    ) -> None:
        self.games_recorded += 1
        self.records.append(
            {
                "game_id": game_id,
                "nn_loss": float(nn_loss),
                "vae_loss": float(vae_loss) if vae_loss is not None else np.nan,
                "accuracy": loss_to_accuracy(nn_loss),
                "feedback_triggered": bool(feedback_triggered),
                "alpha": float(current_alpha),
            }
        )
        self._check_accuracy_degradation(game_id)
        self._check_feedback_rate(game_id)

    def record_team_convergence(self, team_id: str, posterior: TeamPosterior, sigma_reduction: float) -> None:
        entry = {
            "games_processed": posterior.games_processed,
            "mean_sigma": posterior.mean_sigma,
            "sigma_reduction": float(sigma_reduction),
            "confidence": posterior.confidence,
        }
        self.team_history[team_id].append(entry)
        self.team_latest[team_id] = entry
        self._check_sigma_stagnation(team_id)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _frame(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.records))

    def calculate_trends(self) -> Dict[str, Dict]:
        """Relative change between the oldest and newest thirds of the window."""
        frame = self._frame()
        if len(frame) < MIN_TREND_RECORDS:
            return {}
        trends = {}
        for column, higher_is_better in (("nn_loss", False), ("vae_loss", False), ("accuracy", True)):
            series = frame[column].dropna()
            if len(series) < MIN_TREND_RECORDS:
                continue
            third = len(series) // 3
            old = float(series.iloc[:third].mean())
            new = float(series.iloc[-third:].mean())
            if abs(old) < 1e-12:
                change = 0.0
            else:
                change = (new - old) / abs(old)
            if not higher_is_better:
                change = -change
            trends[column] = {
                "oldest_mean": old,
                "newest_mean": new,
                "change": change,
                "trend": categorize_trend(change),
            }
        return trends

    def is_converged(self) -> bool:
        frame = self._frame()
        if len(frame) < MIN_TREND_RECORDS:
            return False
        return float(frame["nn_loss"].std(ddof=0)) < self.config.convergence_threshold

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _check_accuracy_degradation(self, game_id: Optional[str]) -> None:
        if len(self.records) < MIN_TREND_RECORDS:
            return
        losses = pd.Series([r["nn_loss"] for r in self.records])
        third = len(losses) // 3
        old = float(losses.iloc[:third].mean())
        new = float(losses.iloc[-third:].mean())
        if old <= 0:
            return
        increase = (new - old) / old
        if increase <= self.config.degradation_threshold:
            return
        if increase > 0.4:
            severity = "critical"
        elif increase > 0.3:
            severity = "high"
        else:
            severity = "medium"
        self._raise_alert(
            "accuracy_degradation",
            severity,
            f"predictor loss rose {increase:.1%} across the window ({old:.4f} -> {new:.4f})",
            game_id,
            {"increase": increase, "oldest_mean": old, "newest_mean": new},
        )

    def _check_feedback_rate(self, game_id: Optional[str]) -> None:
        if len(self.records) < 10:
            return
        rate = float(np.mean([r["feedback_triggered"] for r in self.records]))
        if rate <= self.config.excessive_feedback_rate:
            return
        severity = "high" if rate > 0.9 else "medium"
        self._raise_alert(
            "excessive_feedback",
            severity,
            f"feedback fired on {rate:.0%} of recent games",
            game_id,
            {"feedback_rate": rate},
        )

    def _check_sigma_stagnation(self, team_id: str) -> None:
        history = self.team_history[team_id]
        if len(history) < TEAM_HISTORY:
            return
        first, last = history[0], history[-1]
        if last["games_processed"] <= first["games_processed"]:
            return
        if last["mean_sigma"] <= self.config.sigma_floor:
            return
        reduction = first["mean_sigma"] - last["mean_sigma"]
        if reduction >= self.config.min_sigma_reduction:
            return
        self._raise_alert(
            "uncertainty_stagnation",
            "medium",
            f"{team_id} sigma moved {reduction:+.4f} over {last['games_processed'] - first['games_processed']} games",
            None,
            {"team_id": team_id, "mean_sigma": last["mean_sigma"], "reduction": reduction},
            key=f"uncertainty_stagnation:{team_id}",
        )

    def _raise_alert(self, alert_type: str, severity: str, message: str, game_id: Optional[str],
                     details: Dict, key: Optional[str] = None) -> None:
        key = key or alert_type
        last = self._last_alert.get(key)
        if last is not None and self.games_recorded - last < self.config.alert_cooldown_games:
            return
        self._last_alert[key] = self.games_recorded

        alert = PerformanceAlert(
            alert_type=alert_type,
            severity=severity,
            message=message,
            game_index=self.games_recorded,
            game_id=game_id,
            details=details,
        )
        self.alerts.append(alert)
        self.alerts_raised += 1
        logger.warning("Performance alert: %s", alert)
        for callback in self._callbacks:
            try:
                callback(alert)
            except Exception:
                logger.exception("Alert callback %r failed", callback)

    def get_alerts(self, severity: Optional[str] = None) -> List[PerformanceAlert]:
        if severity is None:
            return list(self.alerts)
        return [a for a in self.alerts if a.severity == severity]

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def generate_performance_report(self, include_team_details: bool = False, recent_alerts: int = 10) -> Dict:
        """
        Summarize the current window.

        Args:
            include_team_details: Add per-team uncertainty entries
            recent_alerts: Number of most recent alerts to include

        Returns:
            Dict with summary, performance, trends and alerts (and teams)
        """
        frame = self._frame()
        team_sigmas = [entry["mean_sigma"] for entry in self.team_latest.values()]
        average_sigma = float(np.mean(team_sigmas)) if team_sigmas else None

        if len(frame):
            average_accuracy = float(frame["accuracy"].mean())
            summary = {
                "total_games": self.games_recorded,
                "games_in_window": int(len(frame)),
                "average_nn_loss": float(frame["nn_loss"].mean()),
                "average_vae_loss": float(frame["vae_loss"].mean()) if frame["vae_loss"].notna().any() else None,
                "average_accuracy": average_accuracy,
                "quality": quality_bucket(average_accuracy),
                "feedback_rate": float(frame["feedback_triggered"].mean()),
                "current_alpha": float(frame["alpha"].iloc[-1]),
            }
            performance = {}
            for column in ("nn_loss", "vae_loss", "accuracy"):
                series = frame[column].dropna()
                if series.empty:
                    continue
                performance[column] = {
                    "mean": float(series.mean()),
                    "std": float(series.std(ddof=0)),
                    "min": float(series.min()),
                    "max": float(series.max()),
                    "latest": float(series.iloc[-1]),
                }
        else:
            summary = {"total_games": 0, "games_in_window": 0}
            performance = {}

        summary.update(
            {
                "converged": self.is_converged(),
                "teams_tracked": len(self.team_latest),
                "average_team_sigma": average_sigma,
                "uncertainty_level": uncertainty_level(average_sigma) if average_sigma is not None else None,
                "alert_count": self.alerts_raised,
            }
        )

        report = {
            "summary": summary,
            "performance": performance,
            "trends": self.calculate_trends(),
            "alerts": [a.to_dict() for a in list(self.alerts)[-recent_alerts:]] if recent_alerts > 0 else [],
        }
        if include_team_details:
            report["teams"] = {
                team_id: {**entry, "uncertainty_level": uncertainty_level(entry["mean_sigma"])}
                for team_id, entry in sorted(self.team_latest.items())
            }
        return report
