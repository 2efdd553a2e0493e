"""
Configuration for the Driving Simulation Telemetry Core

Groups every tunable value the core consumes:
- EvaluationConfig: speed limits, detector thresholds, penalty weights, grade boundaries
- IngestConfig: buffer flush size and lock timeout
- DatabaseConfig: storage backend selection

The runtime settings are pydantic models, validated when built;
load_settings() fills them from environment variables. EvaluationConfig
stays a frozen dataclass that checks its grade boundaries itself.

Usage:
    from drivesim.config import EvaluationConfig, load_settings

    config = EvaluationConfig(overspeed_threshold=5)
    settings = load_settings()
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidParameter


# === Closed enumerations ===
ENVIRONMENTS = ('city', 'highway', 'night', 'rain')
INPUT_DEVICES = ('keyboard', 'gamepad', 'wheel')

STATUS_ACTIVE = 'active'
STATUS_COMPLETED = 'completed'
STATUS_ABORTED = 'aborted'
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_ABORTED)

DEFAULT_GRADE_BOUNDARIES: Tuple[Tuple[int, str], ...] = (
    (95, 'A+'),
    (90, 'A'),
    (85, 'B+'),
    (80, 'B'),
    (75, 'C+'),
    (70, 'C'),
    (65, 'D+'),
    (60, 'D'),
)
FAILING_GRADE = 'F'


@dataclass(frozen=True)
class EvaluationConfig:
    """
    Thresholds and weights shared by the batch analyzer, the live check
    and the scoring engine.
    """
    # Speed limits (km/h)
    speed_limit_city: float = 50.0
    speed_limit_highway: float = 120.0
    overspeed_threshold: float = 10.0

    # Braking
    sudden_brake_threshold: float = 0.7
    harsh_brake_threshold: float = 0.8
    harsh_brake_min_speed: float = 20.0
    live_brake_min_speed: float = 10.0

    # Acceleration / lane / steering
    sudden_acceleration_threshold: float = 0.6
    lane_violation_threshold: float = 0.8
    steering_min_speed: float = 5.0

    # Smooth driving sample criteria
    smooth_max_brake: float = 0.3
    smooth_max_throttle: float = 0.8
    smooth_max_steering: float = 0.5

    # Speed efficiency band (percent of speed limit)
    efficiency_band_low: float = 80.0
    efficiency_band_high: float = 95.0

    # Score penalties (points per event)
    overspeed_penalty: float = 2.0
    sudden_brake_penalty: float = 1.0
    sudden_acceleration_penalty: float = 1.0
    lane_violation_penalty: float = 3.0
    collision_penalty: float = 5.0
    signal_violation_penalty: float = 4.0

    smooth_bonus_factor: float = 0.1
    max_speed_penalty_factor: float = 0.5
    max_speed_penalty_cap: float = 10.0

    grade_boundaries: Tuple[Tuple[int, str], ...] = DEFAULT_GRADE_BOUNDARIES

    def __post_init__(self):
        previous = None
        for min_score, grade in self.grade_boundaries:
            if previous is not None and min_score >= previous:
                raise InvalidParameter(
                    f"Grade boundaries must be strictly descending, got {min_score} after {previous}"
                )
            if not 0 <= min_score <= 100:
                raise InvalidParameter(f"Grade boundary {grade}={min_score} outside [0, 100]")
            previous = min_score

    def speed_limit(self, environment: str) -> float:
        """Speed limit for an environment: highway has its own, everything else is urban"""
        if environment == 'highway':
            return self.speed_limit_highway
        return self.speed_limit_city


class IngestConfig(BaseModel):
    """Telemetry buffering settings"""
    model_config = ConfigDict(frozen=True)

    buffer_size: int = Field(10, ge=1, description="Samples per automatic flush")
    lock_timeout: Optional[float] = Field(None, gt=0, description="Seconds to wait for a session lock, None = forever")


class DatabaseConfig(BaseModel):
    """Storage backend selection"""
    model_config = ConfigDict(frozen=True)

    db_type: Literal['sqlite', 'postgresql'] = 'sqlite'
    db_path: Optional[str] = Field(None, description="File path (SQLite) or connection string (PostgreSQL)")
    echo: bool = Field(False, description="Log every SQL statement")


class Settings(BaseModel):
    """Everything build_core() needs to wire the core"""
    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    log_level: Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'] = 'INFO'


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables

    Recognized variables:
        DRIVESIM_DB_TYPE      sqlite | postgresql (default sqlite)
        DRIVESIM_DB_PATH      database file or connection string
        DRIVESIM_DB_ECHO      log SQL statements when truthy
        DRIVESIM_BUFFER_SIZE  samples per automatic flush (default 10)
        DRIVESIM_LOG_LEVEL    logging level name (default INFO)

    Unset or empty variables keep the model defaults.

    Args:
        environ: Mapping to read instead of os.environ (used by tests)

    Raises:
        InvalidParameter: A variable failed validation
    """
    env = os.environ if environ is None else environ

    database: Dict[str, Any] = {}
    if env.get('DRIVESIM_DB_TYPE'):
        database['db_type'] = env['DRIVESIM_DB_TYPE'].strip().lower()
    if env.get('DRIVESIM_DB_PATH'):
        database['db_path'] = env['DRIVESIM_DB_PATH']
    if env.get('DRIVESIM_DB_ECHO'):
        database['echo'] = env['DRIVESIM_DB_ECHO'].strip()

    ingest: Dict[str, Any] = {}
    if env.get('DRIVESIM_BUFFER_SIZE'):
        ingest['buffer_size'] = env['DRIVESIM_BUFFER_SIZE'].strip()

    values: Dict[str, Any] = {'database': database, 'ingest': ingest}
    if env.get('DRIVESIM_LOG_LEVEL'):
        values['log_level'] = env['DRIVESIM_LOG_LEVEL'].strip().upper()

    try:
        return Settings.model_validate(values)
    except ValidationError as e:
        raise InvalidParameter(f"Invalid settings: {e}") from e
