"""Tests for rolling performance monitoring and alerts."""

import numpy as np
import pytest

from courtvae.config import MonitorConfig
from courtvae.models.posterior import TeamPosterior
from courtvae.monitoring.performance import (
    PerformanceMonitor,
    categorize_trend,
    loss_to_accuracy,
    quality_bucket,
    uncertainty_level,
)


def _record(monitor, losses, feedback=False, vae_loss=0.3):
    for i, loss in enumerate(losses):
        monitor.record_prediction_performance(loss, vae_loss, feedback, 0.1, game_id=f"g{i}")


def _posterior(team_id, games, sigma):
    return TeamPosterior(team_id, np.zeros(16), np.full(16, sigma), games_processed=games)


def test_categorize_trend():
    assert categorize_trend(0.2) == "strongly_improving"
    assert categorize_trend(0.07) == "improving"
    assert categorize_trend(0.0) == "stable"
    assert categorize_trend(-0.07) == "declining"
    assert categorize_trend(-0.5) == "strongly_declining"


def test_buckets():
    assert quality_bucket(0.95) == "excellent"
    assert quality_bucket(0.5) == "very_poor"
    assert uncertainty_level(0.05) == "very_low"
    assert uncertainty_level(1.0) == "very_high"
    assert loss_to_accuracy(0.0) == 1.0
    assert loss_to_accuracy(5.0) == 0.0


def test_window_is_bounded():
    monitor = PerformanceMonitor(MonitorConfig(window_size=5))
    _record(monitor, [1.0] * 8)
    assert len(monitor.records) == 5
    assert monitor.games_recorded == 8


def test_trends_follow_loss_direction():
    monitor = PerformanceMonitor()
    _record(monitor, [2.0, 2.0, 1.8, 1.5, 1.2, 1.0, 0.8, 0.8, 0.8])
    trends = monitor.calculate_trends()
    assert trends["nn_loss"]["trend"] == "strongly_improving"
    assert trends["nn_loss"]["change"] > 0
    assert trends["accuracy"]["change"] > 0
    assert trends["vae_loss"]["trend"] == "stable"


def test_trends_need_enough_records():
    monitor = PerformanceMonitor()
    _record(monitor, [1.0, 1.0])
    assert monitor.calculate_trends() == {}


def test_degradation_alert_and_callback():
    received = []
    monitor = PerformanceMonitor()
    monitor.on_alert(received.append)
    _record(monitor, [1.0, 1.0, 1.0, 1.0, 2.0, 2.0])

    alerts = monitor.get_alerts()
    assert len(alerts) == 1
    assert alerts[0].alert_type == "accuracy_degradation"
    assert alerts[0].severity == "critical"
    assert received == alerts
    assert monitor.get_alerts("critical") == alerts
    assert monitor.get_alerts("low") == []


def test_alert_cooldown():
    monitor = PerformanceMonitor(MonitorConfig(alert_cooldown_games=100))
    _record(monitor, [1.0, 1.0, 1.0, 1.0, 2.0, 2.0, 2.5, 3.0])
    assert len(monitor.get_alerts()) == 1


def test_failing_callback_does_not_propagate():
    def broken(alert):
        raise RuntimeError("listener down")

    monitor = PerformanceMonitor()
    monitor.on_alert(broken)
    _record(monitor, [1.0, 1.0, 1.0, 1.0, 2.0, 2.0])
    assert len(monitor.get_alerts()) == 1


def test_excessive_feedback_alert():
    monitor = PerformanceMonitor()
    _record(monitor, [1.0] * 10, feedback=True)
    alerts = [a for a in monitor.get_alerts() if a.alert_type == "excessive_feedback"]
    assert len(alerts) == 1
    assert alerts[0].severity == "high"
    assert alerts[0].details["feedback_rate"] == pytest.approx(1.0)


def test_sigma_stagnation_alert():
    monitor = PerformanceMonitor()
    for games in range(1, 11):
        monitor.record_team_convergence("A", _posterior("A", games, 0.8), 0.0)
    alerts = monitor.get_alerts()
    assert len(alerts) == 1
    assert alerts[0].alert_type == "uncertainty_stagnation"
    assert alerts[0].details["team_id"] == "A"


def test_no_stagnation_when_sigma_shrinks_or_at_floor():
    monitor = PerformanceMonitor()
    for games in range(1, 11):
        monitor.record_team_convergence("A", _posterior("A", games, 1.0 - 0.05 * games), 0.05)
        monitor.record_team_convergence("B", _posterior("B", games, 0.1), 0.0)
    assert monitor.get_alerts() == []


def test_convergence():
    monitor = PerformanceMonitor(MonitorConfig(convergence_threshold=0.01))
    _record(monitor, [0.7] * 6)
    assert monitor.is_converged()
    _record(monitor, [0.2, 1.5])
    assert not monitor.is_converged()


def test_report():
    monitor = PerformanceMonitor()
    _record(monitor, [1.2, 1.1, 1.0, 0.9, 0.9, 0.8], feedback=True)
    monitor.record_team_convergence("A", _posterior("A", 3, 0.5), 0.1)

    report = monitor.generate_performance_report(include_team_details=True)

    summary = report["summary"]
    assert summary["total_games"] == 6
    assert summary["average_nn_loss"] == pytest.approx(np.mean([1.2, 1.1, 1.0, 0.9, 0.9, 0.8]))
    assert summary["feedback_rate"] == pytest.approx(1.0)
    assert summary["teams_tracked"] == 1
    assert summary["uncertainty_level"] == "high"
    assert report["performance"]["nn_loss"]["latest"] == pytest.approx(0.8)
    assert "nn_loss" in report["trends"]
    assert report["teams"]["A"]["games_processed"] == 3


def test_empty_report():
    report = PerformanceMonitor().generate_performance_report()
    assert report["summary"]["total_games"] == 0
    assert report["performance"] == {}
    assert report["alerts"] == []
    assert "teams" not in report


def test_reset():
    monitor = PerformanceMonitor()
    _record(monitor, [1.0, 1.0, 1.0, 1.0, 2.0, 2.0])
    monitor.reset()
    assert monitor.get_alerts() == []
    assert monitor.games_recorded == 0


def test_alert_history_is_bounded():
    monitor = PerformanceMonitor(MonitorConfig(max_alerts=3))
    for team_id in ["A", "B", "C", "D", "E"]:
        for games in range(1, 11):
            monitor.record_team_convergence(team_id, _posterior(team_id, games, 0.8), 0.0)

    alerts = monitor.get_alerts()
    assert len(alerts) == 3
    assert [a.details["team_id"] for a in alerts] == ["C", "D", "E"]
    report = monitor.generate_performance_report(recent_alerts=2)
    assert report["summary"]["alert_count"] == 5
    assert [a["details"]["team_id"] for a in report["alerts"]] == ["D", "E"]
