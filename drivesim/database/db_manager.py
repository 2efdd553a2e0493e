"""
Database Manager for the Driving Simulation Telemetry Core

Handles:
- Database connection management (SQLite/PostgreSQL)
- Schema creation (tables and their composite indices)
- Transaction management (commit on success, rollback on error)
- Connection pooling for concurrent request threads

A module-level default instance is provided for application-wide use;
tests and embedders can build their own DatabaseManager.
"""

import logging
import threading
from pathlib import Path
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from .models import (
    Base,
    SessionModel,
    TelemetrySampleModel,
    EvaluationModel,
    SCHEMA_VERSION
)

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Thread-safe database manager

    Usage:
        db_manager = DatabaseManager()
        db_manager.initialize(db_path='drivesim.db')

        with db_manager.get_session() as session:
            session.add(sample_model)
    """

    def __init__(self):
        self.engine = None
        self.session_factory = None
        self._db_path = None
        self._db_type = None
        self._initialized = False
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self,
                   db_path: Optional[str] = None,
                   db_type: str = 'sqlite',
                   echo: bool = False):
        """
        Initialize database connection and create schema

        Args:
            db_path: Database file path (SQLite) or connection string (PostgreSQL)
            db_type: 'sqlite' or 'postgresql'
            echo: If True, log all SQL statements (useful for debugging)
        """
        if self._initialized:
            logger.info("[Database] Already initialized")
            return

        with self._lock:
            if db_type == 'sqlite':
                self._initialize_sqlite(db_path, echo)
            elif db_type == 'postgresql':
                self._initialize_postgresql(db_path, echo)
            else:
                raise ValueError(f"Unsupported database type: {db_type}")

            self._db_type = db_type

            self._create_schema()

            self._initialized = True
            logger.info("[Database] Initialized successfully: %s (schema %s)", self._db_path, SCHEMA_VERSION)

    def _initialize_sqlite(self, db_path: Optional[str], echo: bool):
        """Initialize SQLite database"""
        # Default path: project_root/drivesim.db
        if db_path is None:
            project_root = Path(__file__).parent.parent.parent
            db_path = project_root / 'drivesim.db'
        else:
            db_path = Path(db_path)

        db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db_path = str(db_path)

        self.engine = create_engine(
            f'sqlite:///{self._db_path}',
            echo=echo,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            connect_args={
                'check_same_thread': False,  # request threads share the pool
                'timeout': 30  # seconds to wait on a locked database
            }
        )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA cache_size=-16000")  # 16MB cache
            cursor.close()

        self._create_session_factory()

    def _initialize_postgresql(self, connection_string: str, echo: bool):
        """Initialize PostgreSQL database"""
        if not connection_string:
            raise ValueError("PostgreSQL connection string required")

        self._db_path = connection_string

        self.engine = create_engine(
            connection_string,
            echo=echo,
            poolclass=QueuePool,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=3600  # Recycle connections after 1 hour
        )

        self._create_session_factory()

    def _create_session_factory(self):
        """Create session factory; every get_session() call gets its own session"""
        self.session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False
        )

    def _create_schema(self):
        """Create all tables and indices (idempotent per database)"""
        Base.metadata.create_all(self.engine)
        logger.debug("[Database] Created %d tables", len(Base.metadata.tables))

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Get a database session (context manager)

        Usage:
            with db_manager.get_session() as session:
                session.add(model)

        Automatically handles:
        - Session creation
        - Commit when the block exits cleanly
        - Rollback on error
        - Session cleanup
        """
        if not self._initialized:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug("[Database] Session rolled back: %s", e)
            raise
        finally:
            session.close()

    def get_statistics(self) -> dict:
        """
        Get database statistics

        Returns:
            dict with counts for each table
        """
        if not self._initialized:
            return {}

        stats = {}
        with self.get_session() as session:
            stats['sessions'] = session.query(SessionModel).count()
            stats['telemetry_samples'] = session.query(TelemetrySampleModel).count()
            stats['evaluations'] = session.query(EvaluationModel).count()

        return stats

    def close(self):
        """Close database connection"""
        if self.engine:
            self.engine.dispose()
        self._initialized = False
        logger.info("[Database] Closed connection")

    def __repr__(self):
        status = "initialized" if self._initialized else "not initialized"
        return f"<DatabaseManager({status}, path='{self._db_path}')>"


# === Global Instance ===
db_manager = DatabaseManager()

