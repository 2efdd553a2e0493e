"""
Driving Score Module

Usage:
    from drivesim.scoring import ScoringEngine

    card = ScoringEngine().evaluate(session, metrics)
"""

from .scoring_engine import ScoringEngine, ScoreCard

__all__ = [
    'ScoringEngine',
    'ScoreCard'
]
