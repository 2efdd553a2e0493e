"""
Driving Behavior Analysis Module

Turns persisted telemetry into violation counts and smoothness metrics.

Usage:
    from drivesim.analysis import BehaviorAnalyzer

    analyzer = BehaviorAnalyzer(store)
    metrics = analyzer.analyze_session(session_id=1)
    live = analyzer.check_sample('city', {'speed': 72.0})
"""

from .behavior_analytics import BehaviorAnalyzer, BehaviorMetrics, LiveCheckResult

__all__ = [
    'BehaviorAnalyzer',
    'BehaviorMetrics',
    'LiveCheckResult'
]
