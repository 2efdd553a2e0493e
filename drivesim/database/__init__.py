"""
Driving Simulation Database Layer
Provides persistent storage for sessions, telemetry samples and evaluations.
"""

from .db_manager import DatabaseManager, db_manager
from .models import (
    Base,
    SessionModel,
    TelemetrySampleModel,
    EvaluationModel
)
from .store import PersistenceStore, TELEMETRY_COLUMNS

__all__ = [
    'DatabaseManager',
    'db_manager',
    'Base',
    'SessionModel',
    'TelemetrySampleModel',
    'EvaluationModel',
    'PersistenceStore',
    'TELEMETRY_COLUMNS'
]

__version__ = '1.0.0'
