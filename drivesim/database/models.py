"""
SQLAlchemy ORM Models for the Driving Simulation Database

Defines 3 core tables:
1. sessions - One simulated drive per row
2. telemetry_samples - High-frequency vehicle readings (several per second)
3. evaluations - Derived behavioral verdict, at most one per session

Schema Version: 1.0
"""

from sqlalchemy import (
    Column, Integer, Float, String, DateTime, ForeignKey, Boolean, JSON, Index
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


class SessionModel(Base):
    """
    Session metadata - one bounded driving attempt by a user

    Tracks:
    - Ownership (user_id)
    - Driving conditions (environment, vehicle, input device)
    - Lifecycle (status, start/end time)
    - Aggregate stats written on end (distance, time)

    Relationships:
    - One-to-many with telemetry samples
    - One-to-one with evaluation
    """
    __tablename__ = 'sessions'
    __table_args__ = (
        # Active-session lookup per user
        Index('idx_sessions_user_status', 'user_id', 'status'),
    )

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Ownership
    user_id = Column(Integer, nullable=False, index=True)

    # Timing
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    start_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    end_time = Column(DateTime)

    # Driving Conditions
    environment_type = Column(String(20), nullable=False)  # city/highway/night/rain
    vehicle_type = Column(String(50), default='sedan')
    input_device = Column(String(20), nullable=False)  # keyboard/gamepad/wheel

    # Lifecycle
    status = Column(String(20), nullable=False, default='active', index=True)  # active/completed/aborted

    # Aggregate stats (populated on end)
    total_distance = Column(Float, default=0.0)  # km
    total_time = Column(Integer, default=0)  # seconds

    # Relationships
    telemetry = relationship("TelemetrySampleModel", back_populates="session", cascade="all, delete-orphan")
    evaluation = relationship("EvaluationModel", back_populates="session", uselist=False, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            'session_id': self.id,
            'user_id': self.user_id,
            'created_at': self.created_at,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'environment_type': self.environment_type,
            'vehicle_type': self.vehicle_type,
            'input_device': self.input_device,
            'status': self.status,
            'total_distance': self.total_distance,
            'total_time': self.total_time,
        }

    def __repr__(self):
        return f"<Session(id={self.id}, user={self.user_id}, env='{self.environment_type}', status='{self.status}')>"


class TelemetrySampleModel(Base):
    """
    One instantaneous vehicle reading

    Tracks:
    - Vehicle dynamics (speed, gear, rpm, world position)
    - Driver inputs (steering, brake, throttle)
    - Lane keeping and collision state

    Granularity: ~2 records per second per session
    Immutable once written; ordered by (timestamp, id)
    """
    __tablename__ = 'telemetry_samples'
    __table_args__ = (
        # Ordered scans of one session's telemetry
        Index('idx_telemetry_session_timestamp', 'session_id', 'timestamp'),
    )

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign Keys
    session_id = Column(Integer, ForeignKey('sessions.id'), nullable=False, index=True)

    # Timing
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Speed & Engine
    speed = Column(Float, nullable=False, default=0.0)  # km/h, >= 0
    gear = Column(Integer, default=1)
    rpm = Column(Float, default=0.0)

    # Driver Inputs
    steering_angle = Column(Float, nullable=False, default=0.0)  # -1.0 to 1.0
    brake_force = Column(Float, nullable=False, default=0.0)  # 0.0-1.0
    throttle_force = Column(Float, nullable=False, default=0.0)  # 0.0-1.0

    # Lane & Position
    lane_position = Column(Float, default=0.0)  # -1.0 to 1.0, |1| = lane edge
    position_x = Column(Float, default=0.0)
    position_y = Column(Float, default=0.0)
    position_z = Column(Float, default=0.0)

    collision = Column(Boolean, default=False, nullable=False)

    # Relationship
    session = relationship("SessionModel", back_populates="telemetry")

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'timestamp': self.timestamp,
            'speed': self.speed,
            'steering_angle': self.steering_angle,
            'brake_force': self.brake_force,
            'throttle_force': self.throttle_force,
            'gear': self.gear,
            'rpm': self.rpm,
            'lane_position': self.lane_position,
            'position_x': self.position_x,
            'position_y': self.position_y,
            'position_z': self.position_z,
            'collision': bool(self.collision),
        }

    def __repr__(self):
        return f"<TelemetrySample(session={self.session_id}, t={self.timestamp}, speed={self.speed}kph)>"


class EvaluationModel(Base):
    """
    Behavioral verdict for a session

    Tracks:
    - Violation counters
    - Composite score and letter grade
    - Speed snapshot and smoothness metrics
    - Structured report for display

    Granularity: One record per session (re-evaluation updates in place)
    """
    __tablename__ = 'evaluations'

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign Keys
    session_id = Column(Integer, ForeignKey('sessions.id'), nullable=False, unique=True, index=True)

    # Violation Counters
    overspeed_count = Column(Integer, default=0)
    sudden_brake_count = Column(Integer, default=0)
    sudden_acceleration_count = Column(Integer, default=0)
    lane_violation_count = Column(Integer, default=0)
    collision_count = Column(Integer, default=0)
    signal_violation_count = Column(Integer, default=0)  # reserved, always 0

    # Verdict
    total_score = Column(Integer, nullable=False)  # 0-100
    grade = Column(String(2), nullable=False)  # A+/A/B+/B/C+/C/D+/D/F

    # Speed snapshot & smoothness
    max_speed = Column(Float, default=0.0)
    avg_speed = Column(Float, default=0.0)
    harsh_braking_events = Column(Integer, default=0)
    smooth_driving_percentage = Column(Float, default=0.0)

    # Report blob (session_info, speed_analysis, behavior_analysis, recommendations)
    evaluation_data = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    session = relationship("SessionModel", back_populates="evaluation")

    def to_dict(self) -> dict:
        return {
            'eval_id': self.id,
            'session_id': self.session_id,
            'overspeed_count': self.overspeed_count,
            'sudden_brake_count': self.sudden_brake_count,
            'sudden_acceleration_count': self.sudden_acceleration_count,
            'lane_violation_count': self.lane_violation_count,
            'collision_count': self.collision_count,
            'signal_violation_count': self.signal_violation_count,
            'total_score': self.total_score,
            'grade': self.grade,
            'max_speed': self.max_speed,
            'avg_speed': self.avg_speed,
            'harsh_braking_events': self.harsh_braking_events,
            'smooth_driving_percentage': self.smooth_driving_percentage,
            'evaluation_data': self.evaluation_data,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    def __repr__(self):
        return f"<Evaluation(session={self.session_id}, score={self.total_score}, grade='{self.grade}')>"


# === Database Schema Version ===
SCHEMA_VERSION = "1.0"
