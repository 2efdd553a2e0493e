"""
Behavior Analytics Module

Scans a session's persisted telemetry and derives violation counts and
smoothness metrics for scoring.

Detectors:
- Overspeed (speed above the environment limit plus tolerance)
- Sudden braking and harsh braking
- Sudden acceleration (throttle jumps between consecutive samples)
- Lane violations and collisions
- Steering smoothness, smooth-driving percentage, speed efficiency

All detectors run over the whole session, ordered by timestamp; this is
a final evaluation, not a sliding window. A stateless single-sample
check (check_sample) shares the same thresholds for live feedback.

Usage:
    from drivesim.analysis import BehaviorAnalyzer

    analyzer = BehaviorAnalyzer(store)
    metrics = analyzer.analyze_session(session_id=1)
    print(metrics.overspeed_count, metrics.steering_smoothness)
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import numpy as np
import pandas as pd

from ..config import EvaluationConfig
from ..database.store import PersistenceStore, TELEMETRY_COLUMNS
from ..errors import SessionNotFound
from ..ingestion.normalize import normalize_sample

logger = logging.getLogger(__name__)


@dataclass
class BehaviorMetrics:
    """Results of a whole-session behavior scan"""
    overspeed_count: int
    sudden_brake_count: int
    sudden_acceleration_count: int
    lane_violation_count: int
    collision_count: int
    signal_violation_count: int  # no signal detector yet, always 0
    harsh_braking_events: int
    speed_limit: float
    max_speed: float
    avg_speed: float
    max_speed_violation: float
    avg_speed_efficiency: float  # 0-100, 100 = inside the optimal band
    steering_smoothness: float  # 0-100, higher is smoother
    smooth_driving_percentage: float  # 0-100
    total_samples: int
    duration_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LiveCheckResult:
    """Instant verdict on a single live sample"""
    overspeed: bool
    sudden_brake: bool
    lane_violation: bool
    collision: bool
    instant_penalty: int
    speed_violation: Optional[float] = None
    lane_deviation: Optional[float] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if self.timestamp is not None:
            result['timestamp'] = self.timestamp.isoformat()
        return result


class BehaviorAnalyzer:
    """
    Threshold-based driving behavior detectors

    analyze() is a pure function of (session, telemetry); analyze_session()
    loads both from the store first.
    """

    def __init__(self, store: Optional[PersistenceStore] = None, config: Optional[EvaluationConfig] = None):
        """
        Initialize behavior analyzer

        Args:
            store: Store to load sessions and telemetry from (needed by *_session helpers)
            config: Thresholds; production defaults when omitted
        """
        self.store = store
        self.config = config or EvaluationConfig()

    # === Loading ===

    def _load(self, session_id: int):
        if self.store is None:
            raise RuntimeError("BehaviorAnalyzer needs a store to load sessions")
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session, self.store.telemetry_frame(session_id)

    def analyze_session(self, session_id: int) -> BehaviorMetrics:
        """Load a session's telemetry and analyze it"""
        session, telemetry = self._load(session_id)
        return self.analyze(session, telemetry)

    # === Whole-session analysis ===

    @staticmethod
    def _ordered(telemetry: pd.DataFrame) -> pd.DataFrame:
        if telemetry is None or telemetry.empty:
            return pd.DataFrame(columns=TELEMETRY_COLUMNS)
        sort_keys = [c for c in ('timestamp', 'id') if c in telemetry.columns]
        df = telemetry.sort_values(sort_keys, kind='mergesort') if sort_keys else telemetry
        return df.reset_index(drop=True)

    def analyze(self, session: Mapping[str, Any], telemetry: pd.DataFrame) -> BehaviorMetrics:
        """
        Compute all behavior metrics for one session

        Args:
            session: Session record (needs 'environment_type')
            telemetry: Samples of that session (any order)

        Returns:
            BehaviorMetrics
        """
        df = self._ordered(telemetry)
        speed_limit = self.config.speed_limit(session.get('environment_type'))

        total = len(df)
        if total:
            max_speed = float(df['speed'].max())
            avg_speed = float(df['speed'].mean())
            duration = int((df['timestamp'].iloc[-1] - df['timestamp'].iloc[0]).total_seconds())
        else:
            max_speed = avg_speed = 0.0
            duration = 0

        metrics = BehaviorMetrics(
            overspeed_count=self.count_overspeed(df, speed_limit),
            sudden_brake_count=self.count_sudden_brakes(df),
            sudden_acceleration_count=self.count_sudden_accelerations(df),
            lane_violation_count=self.count_lane_violations(df),
            collision_count=self.count_collisions(df),
            signal_violation_count=0,
            harsh_braking_events=self.count_harsh_brakes(df),
            speed_limit=speed_limit,
            max_speed=max_speed,
            avg_speed=avg_speed,
            max_speed_violation=max(0.0, max_speed - speed_limit),
            avg_speed_efficiency=self.speed_efficiency(avg_speed, speed_limit),
            steering_smoothness=self.steering_smoothness(df),
            smooth_driving_percentage=self.smooth_driving_percentage(df),
            total_samples=total,
            duration_seconds=duration,
        )

        logger.debug("[Behavior] Session %s: %d samples analyzed", session.get('session_id'), total)
        return metrics

    def behavior_patterns(self, session_id: int) -> Dict[str, Any]:
        """Violation counts of a session without scoring it"""
        session, telemetry = self._load(session_id)
        df = self._ordered(telemetry)
        speed_limit = self.config.speed_limit(session['environment_type'])
        return {
            'sudden_braking': self.count_sudden_brakes(df),
            'overspeed': self.count_overspeed(df, speed_limit),
            'lane_violations': self.count_lane_violations(df),
            'collisions': self.count_collisions(df),
            'analysis_timestamp': datetime.utcnow().isoformat(),
        }

    # === Detectors ===

    def count_overspeed(self, df: pd.DataFrame, speed_limit: float) -> int:
        if df.empty:
            return 0
        return int((df['speed'] > speed_limit + self.config.overspeed_threshold).sum())

    def count_sudden_brakes(self, df: pd.DataFrame) -> int:
        if df.empty:
            return 0
        return int((df['brake_force'] > self.config.sudden_brake_threshold).sum())

    def count_harsh_brakes(self, df: pd.DataFrame) -> int:
        if df.empty:
            return 0
        mask = (df['brake_force'] > self.config.harsh_brake_threshold) & \
               (df['speed'] > self.config.harsh_brake_min_speed)
        return int(mask.sum())

    def count_sudden_accelerations(self, df: pd.DataFrame) -> int:
        """Throttle jumps between consecutive samples; the first sample compares against 0"""
        if df.empty:
            return 0
        throttle = df['throttle_force'].astype(float)
        previous = throttle.shift(1, fill_value=0.0)
        return int(((throttle - previous) > self.config.sudden_acceleration_threshold).sum())

    def count_lane_violations(self, df: pd.DataFrame) -> int:
        if df.empty:
            return 0
        return int((df['lane_position'].abs() > self.config.lane_violation_threshold).sum())

    @staticmethod
    def count_collisions(df: pd.DataFrame) -> int:
        if df.empty:
            return 0
        return int(df['collision'].astype(bool).sum())

    def steering_smoothness(self, df: pd.DataFrame) -> float:
        """
        Steering smoothness on a 0-100 scale

        Mean absolute steering change between consecutive moving samples
        (speed above steering_min_speed), mapped as (1 - mean) * 100.
        100 when fewer than two moving samples exist.
        """
        if df.empty:
            return 100.0
        moving = df.loc[df['speed'] > self.config.steering_min_speed, 'steering_angle'].astype(float)
        deltas = moving.diff().abs().dropna()
        if deltas.empty:
            return 100.0
        return float(np.clip((1.0 - deltas.mean()) * 100.0, 0.0, 100.0))

    def smooth_driving_percentage(self, df: pd.DataFrame) -> float:
        """Share of samples with gentle inputs and no collision, in percent"""
        if df.empty:
            return 0.0
        cfg = self.config
        smooth = (df['brake_force'] < cfg.smooth_max_brake) & \
                 (df['throttle_force'] < cfg.smooth_max_throttle) & \
                 (df['steering_angle'].abs() < cfg.smooth_max_steering) & \
                 (~df['collision'].astype(bool))
        return float(smooth.sum()) / len(df) * 100.0

    def speed_efficiency(self, avg_speed: float, speed_limit: float) -> float:
        """
        Average speed relative to the limit, scored 0-100

        Inside the optimal band (80-95% of the limit) scores 100; slower
        scales down linearly, faster loses 2 points per percent above 95.
        """
        if speed_limit == 0:
            return 100.0

        efficiency = avg_speed / speed_limit * 100.0
        if self.config.efficiency_band_low <= efficiency <= self.config.efficiency_band_high:
            return 100.0
        if efficiency < self.config.efficiency_band_low:
            return efficiency * 1.25
        return max(0.0, 100.0 - (efficiency - self.config.efficiency_band_high) * 2)

    # === Live single-sample check ===

    def check_sample(self, environment: str, raw_sample: Optional[Mapping[str, Any]]) -> LiveCheckResult:
        """
        Instant violation check of one live sample (no persistence)

        Sudden braking only counts above live_brake_min_speed so that
        stopping at walking pace is not flagged.

        Args:
            environment: Session environment type
            raw_sample: Producer key/value map, normalized like ingested samples

        Returns:
            LiveCheckResult with flags and the instant score penalty
        """
        cfg = self.config
        sample = normalize_sample(None, raw_sample)
        speed_limit = cfg.speed_limit(environment)

        overspeed = sample['speed'] > speed_limit + cfg.overspeed_threshold
        sudden_brake = sample['brake_force'] > cfg.sudden_brake_threshold and \
            sample['speed'] > cfg.live_brake_min_speed
        lane_deviation = abs(sample['lane_position'])
        lane_violation = lane_deviation > cfg.lane_violation_threshold
        collision = sample['collision']

        penalty = 0.0
        if overspeed:
            penalty += cfg.overspeed_penalty
        if sudden_brake:
            penalty += cfg.sudden_brake_penalty
        if lane_violation:
            penalty += cfg.lane_violation_penalty
        if collision:
            penalty += cfg.collision_penalty

        return LiveCheckResult(
            overspeed=overspeed,
            sudden_brake=sudden_brake,
            lane_violation=lane_violation,
            collision=collision,
            instant_penalty=int(round(penalty)),
            speed_violation=sample['speed'] - speed_limit if overspeed else None,
            lane_deviation=lane_deviation if lane_violation else None,
            timestamp=datetime.utcnow(),
        )
