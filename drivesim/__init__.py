"""
drivesim - Driving Simulation Telemetry Core

Ingests telemetry from a browser driving simulator, manages driving
sessions and scores driving behavior.

Modules:
- database: SQLAlchemy models, DatabaseManager and PersistenceStore
- ingestion: Sample normalization and buffered TelemetryIngestor
- sessions: SessionManager (lifecycle, stats, evaluation trigger)
- analysis: BehaviorAnalyzer (violation detectors, live check)
- scoring: ScoringEngine (score, grade, report)
- api: FastAPI glue

Usage:
    from drivesim import build_core

    core = build_core(db_path='drivesim.db')
    session_id = core.manager.create_session(user_id=1, environment='city')
    core.ingestor.ingest(session_id, {'speed': 42.0})
    result = core.manager.end_session(session_id)
"""

from dataclasses import dataclass
from typing import Optional

from .config import EvaluationConfig, IngestConfig, Settings, load_settings
from .database import DatabaseManager, PersistenceStore
from .ingestion import TelemetryIngestor
from .sessions import SessionManager
from .analysis import BehaviorAnalyzer
from .scoring import ScoringEngine
from .errors import (
    DriveSimError,
    InvalidParameter,
    InvalidSession,
    SessionNotFound,
    InvalidState,
    StorageFailure
)

__version__ = '1.0.0'


@dataclass
class Core:
    """Wired set of core components sharing one database"""
    db: DatabaseManager
    store: PersistenceStore
    ingestor: TelemetryIngestor
    manager: SessionManager

    def shutdown(self):
        """Flush every pending buffer, then close the database"""
        self.ingestor.flush_all()
        self.db.close()


def build_core(db_path: Optional[str] = None,
               settings: Optional[Settings] = None,
               db: Optional[DatabaseManager] = None) -> Core:
    """
    Create and wire DatabaseManager, PersistenceStore, TelemetryIngestor
    and SessionManager

    Args:
        db_path: Overrides settings.database.db_path
        settings: Defaults to load_settings() (environment variables)
        db: Existing (possibly initialized) DatabaseManager to reuse
    """
    settings = settings or load_settings()
    db = db or DatabaseManager()
    if not db.initialized:
        db.initialize(
            db_path=db_path or settings.database.db_path,
            db_type=settings.database.db_type,
            echo=settings.database.echo,
        )

    store = PersistenceStore(db)
    ingestor = TelemetryIngestor(store, config=settings.ingest)
    manager = SessionManager(store, ingestor, config=settings.evaluation)
    return Core(db=db, store=store, ingestor=ingestor, manager=manager)


__all__ = [
    'Core',
    'build_core',
    'EvaluationConfig',
    'IngestConfig',
    'Settings',
    'load_settings',
    'DatabaseManager',
    'PersistenceStore',
    'TelemetryIngestor',
    'SessionManager',
    'BehaviorAnalyzer',
    'ScoringEngine',
    'DriveSimError',
    'InvalidParameter',
    'InvalidSession',
    'SessionNotFound',
    'InvalidState',
    'StorageFailure'
]
