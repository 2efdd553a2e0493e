"""Tests for the behavior detectors and the live single-sample check."""

import pandas as pd
import pytest

from conftest import make_sample
from drivesim.analysis import BehaviorAnalyzer
from drivesim.config import EvaluationConfig

CITY = {"session_id": 1, "environment_type": "city"}
HIGHWAY = {"session_id": 2, "environment_type": "highway"}


@pytest.fixture
def analyzer() -> BehaviorAnalyzer:
    return BehaviorAnalyzer()


def frame(*samples: dict) -> pd.DataFrame:
    return pd.DataFrame(list(samples))


def series(field: str, values, **fields) -> pd.DataFrame:
    """One sample per value, a second apart, with `field` set to each value."""
    return frame(*[make_sample(i, **{field: v}, **fields) for i, v in enumerate(values)])


# ---------------------------------------------------------------------------
# Counting detectors
# ---------------------------------------------------------------------------


def test_overspeed_is_strictly_above_tolerance(analyzer) -> None:
    metrics = analyzer.analyze(CITY, series("speed", [59.0, 60.0, 60.5, 75.0]))
    assert metrics.overspeed_count == 2
    assert metrics.max_speed_violation == pytest.approx(25.0)


def test_sudden_and_harsh_braking(analyzer) -> None:
    df = frame(
        make_sample(0, brake_force=0.7, speed=40.0),
        make_sample(1, brake_force=0.75, speed=40.0),
        make_sample(2, brake_force=0.9, speed=40.0),
        make_sample(3, brake_force=0.9, speed=15.0),
    )
    metrics = analyzer.analyze(CITY, df)
    assert metrics.sudden_brake_count == 3
    assert metrics.harsh_braking_events == 1


def test_sudden_acceleration_compares_consecutive_samples(analyzer) -> None:
    """The first sample is compared against a released throttle."""
    metrics = analyzer.analyze(CITY, series("throttle_force", [0.7, 0.1, 0.8, 0.9]))
    assert metrics.sudden_acceleration_count == 2


def test_lane_violations_use_absolute_position(analyzer) -> None:
    metrics = analyzer.analyze(CITY, series("lane_position", [0.8, -0.81, 1.0, 0.2]))
    assert metrics.lane_violation_count == 2


def test_collisions_are_counted_per_sample(analyzer) -> None:
    metrics = analyzer.analyze(CITY, series("collision", [True, True, False]))
    assert metrics.collision_count == 2
    assert metrics.signal_violation_count == 0


# ---------------------------------------------------------------------------
# Smoothness and efficiency
# ---------------------------------------------------------------------------


def test_steering_smoothness_ignores_stationary_samples(analyzer) -> None:
    df = frame(
        make_sample(0, steering_angle=0.0),
        make_sample(1, steering_angle=1.0, speed=0.0),
        make_sample(2, steering_angle=0.5),
        make_sample(3, steering_angle=0.0),
    )
    assert analyzer.analyze(CITY, df).steering_smoothness == pytest.approx(50.0)


def test_steering_smoothness_without_motion_is_perfect(analyzer) -> None:
    df = series("steering_angle", [-1.0, 1.0], speed=3.0)
    assert analyzer.analyze(CITY, df).steering_smoothness == 100.0


def test_smooth_driving_percentage(analyzer) -> None:
    df = frame(
        make_sample(0),
        make_sample(1),
        make_sample(2),
        make_sample(3, brake_force=0.3),
    )
    assert analyzer.analyze(CITY, df).smooth_driving_percentage == pytest.approx(75.0)


@pytest.mark.parametrize("avg_speed, expected", [
    (45.0, 100.0),  # 90% of the limit
    (40.0, 100.0),  # 80%, band edge
    (20.0, 50.0),   # 40% -> x1.25
    (50.0, 90.0),   # 100% -> 2 points per percent above 95
    (150.0, 0.0),
])
def test_speed_efficiency_bands(analyzer, avg_speed, expected) -> None:
    assert analyzer.speed_efficiency(avg_speed, 50.0) == pytest.approx(expected)


def test_speed_efficiency_with_zero_limit() -> None:
    analyzer = BehaviorAnalyzer(config=EvaluationConfig(speed_limit_city=0.0))
    assert analyzer.speed_efficiency(30.0, 0.0) == 100.0


# ---------------------------------------------------------------------------
# Whole-session properties
# ---------------------------------------------------------------------------


def test_sample_order_does_not_matter(analyzer) -> None:
    df = frame(*[make_sample(i, throttle_force=t, steering_angle=s)
                 for i, (t, s) in enumerate([(0.1, 0.0), (0.9, 0.3), (0.2, -0.2), (0.95, 0.4)])])
    shuffled = df.sample(frac=1.0, random_state=7)

    assert analyzer.analyze(CITY, shuffled) == analyzer.analyze(CITY, df)


def test_empty_telemetry(analyzer) -> None:
    metrics = analyzer.analyze(HIGHWAY, pd.DataFrame())
    assert metrics.total_samples == 0
    assert metrics.speed_limit == 120.0
    assert metrics.steering_smoothness == 100.0
    assert metrics.smooth_driving_percentage == 0.0
    assert metrics.max_speed == 0.0
    assert metrics.duration_seconds == 0


def test_analyze_session_loads_from_store(manager, ingestor) -> None:
    session_id = manager.create_session(user_id=1)
    ingestor.ingest_batch(session_id, [make_sample(i, speed=70.0) for i in range(3)])

    metrics = manager.analyzer.analyze_session(session_id)
    patterns = manager.analyzer.behavior_patterns(session_id)

    assert metrics.overspeed_count == 3
    assert metrics.duration_seconds == 2
    assert patterns["overspeed"] == 3
    assert patterns["collisions"] == 0


# ---------------------------------------------------------------------------
# Live check
# ---------------------------------------------------------------------------


def test_live_check_clean_sample(analyzer) -> None:
    result = analyzer.check_sample("city", make_sample())
    assert not (result.overspeed or result.sudden_brake or result.lane_violation or result.collision)
    assert result.instant_penalty == 0
    assert result.speed_violation is None


def test_live_check_penalties(analyzer) -> None:
    result = analyzer.check_sample("city", make_sample(speed=65.0, lane_position=-0.9, collision=True))
    assert result.overspeed is True
    assert result.speed_violation == pytest.approx(15.0)
    assert result.lane_deviation == pytest.approx(0.9)
    assert result.instant_penalty == 2 + 3 + 5


def test_live_check_ignores_braking_at_walking_pace(analyzer) -> None:
    assert analyzer.check_sample("city", make_sample(speed=8.0, brake_force=0.9)).sudden_brake is False
    assert analyzer.check_sample("city", make_sample(speed=30.0, brake_force=0.9)).sudden_brake is True
