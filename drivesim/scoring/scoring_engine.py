"""
Scoring Engine

Turns behavior metrics into a bounded composite score, a letter grade
and a display report with rule-based recommendations.

Score (starting from 100):
- minus weighted violation counts (overspeed 2, sudden brake 1,
  sudden acceleration 1, lane 3, collision 5, signal 4)
- plus 10% of the smooth-driving percentage
- minus half a point per km/h of peak speed above the limit (max 10)
- rounded, then clamped to [0, 100]

Usage:
    from drivesim.scoring import ScoringEngine

    engine = ScoringEngine()
    card = engine.evaluate(session, metrics)
    print(card.score, card.grade, card.report['recommendations'])
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..analysis.behavior_analytics import BehaviorMetrics
from ..config import EvaluationConfig, FAILING_GRADE

# Recommendation thresholds, checked in this order
OVERSPEED_TIP_THRESHOLD = 5
SUDDEN_BRAKE_TIP_THRESHOLD = 3
LANE_TIP_THRESHOLD = 2
COLLISION_TIP_THRESHOLD = 0
STEERING_TIP_THRESHOLD = 70

RECOMMENDATION_SPEED = "Keep your speed within the posted limit."
RECOMMENDATION_BRAKING = "Brake gradually and anticipate stops earlier."
RECOMMENDATION_LANE = "Stay centered in your lane."
RECOMMENDATION_CAUTION = "Drive with more caution to avoid collisions."
RECOMMENDATION_STEERING = "Turn the wheel smoothly and steadily."
RECOMMENDATION_POSITIVE = "Excellent driving! Keep it up."


@dataclass
class ScoreCard:
    """Score, grade and report for one session"""
    score: int
    grade: str
    recommendations: List[str]
    report: Dict[str, Any]


class ScoringEngine:
    """
    Deterministic metrics -> (score, grade, report) mapping
    """

    def __init__(self, config: Optional[EvaluationConfig] = None):
        self.config = config or EvaluationConfig()

    def score(self, metrics: BehaviorMetrics) -> int:
        """Composite score in [0, 100]"""
        cfg = self.config
        score = 100.0

        score -= metrics.overspeed_count * cfg.overspeed_penalty
        score -= metrics.sudden_brake_count * cfg.sudden_brake_penalty
        score -= metrics.sudden_acceleration_count * cfg.sudden_acceleration_penalty
        score -= metrics.lane_violation_count * cfg.lane_violation_penalty
        score -= metrics.collision_count * cfg.collision_penalty
        score -= metrics.signal_violation_count * cfg.signal_violation_penalty

        # Smooth-driving bonus, at most +10 at 100%
        score += metrics.smooth_driving_percentage * cfg.smooth_bonus_factor

        score -= min(cfg.max_speed_penalty_cap, metrics.max_speed_violation * cfg.max_speed_penalty_factor)

        # Round half up
        return int(max(0, min(100, math.floor(score + 0.5))))

    def grade(self, score: int) -> str:
        """Letter grade for a score; boundaries are inclusive lower bounds"""
        for min_score, grade in self.config.grade_boundaries:
            if score >= min_score:
                return grade
        return FAILING_GRADE

    def recommendations(self, metrics: BehaviorMetrics) -> List[str]:
        """Every applicable tip in fixed order, or one positive message"""
        tips = []
        if metrics.overspeed_count > OVERSPEED_TIP_THRESHOLD:
            tips.append(RECOMMENDATION_SPEED)
        if metrics.sudden_brake_count > SUDDEN_BRAKE_TIP_THRESHOLD:
            tips.append(RECOMMENDATION_BRAKING)
        if metrics.lane_violation_count > LANE_TIP_THRESHOLD:
            tips.append(RECOMMENDATION_LANE)
        if metrics.collision_count > COLLISION_TIP_THRESHOLD:
            tips.append(RECOMMENDATION_CAUTION)
        if metrics.steering_smoothness < STEERING_TIP_THRESHOLD:
            tips.append(RECOMMENDATION_STEERING)

        if not tips:
            tips.append(RECOMMENDATION_POSITIVE)
        return tips

    def build_report(self,
                     session: Mapping[str, Any],
                     metrics: BehaviorMetrics,
                     recommendations: List[str]) -> Dict[str, Any]:
        """Nested, JSON-serializable breakdown for downstream display"""
        return {
            'session_info': {
                'environment': session.get('environment_type'),
                'vehicle_type': session.get('vehicle_type'),
                'input_device': session.get('input_device'),
                'duration': metrics.duration_seconds,
            },
            'speed_analysis': {
                'max_speed': round(metrics.max_speed, 2),
                'avg_speed': round(metrics.avg_speed, 2),
                'speed_limit': metrics.speed_limit,
                'overspeed_incidents': metrics.overspeed_count,
                'speed_efficiency': round(metrics.avg_speed_efficiency, 2),
            },
            'behavior_analysis': {
                'sudden_braking': metrics.sudden_brake_count,
                'harsh_braking': metrics.harsh_braking_events,
                'sudden_acceleration': metrics.sudden_acceleration_count,
                'lane_violations': metrics.lane_violation_count,
                'collisions': metrics.collision_count,
                'steering_smoothness': round(metrics.steering_smoothness, 2),
                'smooth_driving_percentage': round(metrics.smooth_driving_percentage, 2),
            },
            'recommendations': list(recommendations),
            'generated_at': datetime.utcnow().isoformat(),
        }

    def evaluate(self, session: Mapping[str, Any], metrics: BehaviorMetrics) -> ScoreCard:
        score = self.score(metrics)
        tips = self.recommendations(metrics)
        return ScoreCard(
            score=score,
            grade=self.grade(score),
            recommendations=tips,
            report=self.build_report(session, metrics, tips),
        )

    @staticmethod
    def evaluation_fields(card: ScoreCard, metrics: BehaviorMetrics) -> Dict[str, Any]:
        """Column values for PersistenceStore.insert_or_update_evaluation"""
        return {
            'overspeed_count': metrics.overspeed_count,
            'sudden_brake_count': metrics.sudden_brake_count,
            'sudden_acceleration_count': metrics.sudden_acceleration_count,
            'lane_violation_count': metrics.lane_violation_count,
            'collision_count': metrics.collision_count,
            'signal_violation_count': metrics.signal_violation_count,
            'total_score': card.score,
            'grade': card.grade,
            'max_speed': round(metrics.max_speed, 2),
            'avg_speed': round(metrics.avg_speed, 2),
            'harsh_braking_events': metrics.harsh_braking_events,
            'smooth_driving_percentage': round(metrics.smooth_driving_percentage, 2),
            'evaluation_data': card.report,
        }
