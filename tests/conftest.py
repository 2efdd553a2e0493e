"""Shared fixtures: a throwaway SQLite database per test."""

from datetime import datetime, timedelta

import pytest

from drivesim.database import DatabaseManager, PersistenceStore
from drivesim.ingestion import TelemetryIngestor
from drivesim.sessions import SessionManager

BASE_TIME = datetime(2025, 10, 30, 9, 0, 0)


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager()
    manager.initialize(db_path=str(tmp_path / "drivesim_test.db"))
    yield manager
    manager.close()


@pytest.fixture
def store(db) -> PersistenceStore:
    return PersistenceStore(db)


@pytest.fixture
def ingestor(store) -> TelemetryIngestor:
    return TelemetryIngestor(store, buffer_size=10)


@pytest.fixture
def manager(store, ingestor) -> SessionManager:
    return SessionManager(store, ingestor)


def make_sample(i: int = 0, **fields) -> dict:
    """Neutral, smooth sample stamped BASE_TIME + i seconds."""
    sample = {
        "timestamp": BASE_TIME + timedelta(seconds=i),
        "speed": 30.0,
        "steering_angle": 0.0,
        "brake_force": 0.0,
        "throttle_force": 0.3,
        "lane_position": 0.0,
        "collision": False,
    }
    sample.update(fields)
    return sample
