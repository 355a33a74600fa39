"""Performance monitoring for the learning loop."""

from .performance import PerformanceAlert, PerformanceMonitor, categorize_trend

__all__ = ["PerformanceAlert", "PerformanceMonitor", "categorize_trend"]
