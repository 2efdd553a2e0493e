"""
Persistence Store

Boundary between the telemetry core and the relational database:
- Session insert/update/lookup
- Transactional telemetry batch insert (all-or-nothing)
- Telemetry queries (filters, order, pagination) and DataFrame loading
- Evaluation upsert/lookup
- Aggregate queries (speed stats, counts, timing)
- History queries for users (sessions with grades, evaluations, stats)

Every SQLAlchemy or driver error is re-raised as StorageFailure so callers never
depend on driver-specific exceptions.

Usage:
    from drivesim.database import PersistenceStore, db_manager

    store = PersistenceStore(db_manager)
    session_id = store.insert_session(user_id=1, environment_type='city', input_device='keyboard')
    store.insert_telemetry_batch([{'session_id': session_id, 'speed': 42.0, ...}])
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import InvalidParameter, StorageFailure
from .db_manager import DatabaseManager, db_manager as default_db_manager
from .models import SessionModel, TelemetrySampleModel, EvaluationModel

logger = logging.getLogger(__name__)

TELEMETRY_COLUMNS = [
    'id', 'session_id', 'timestamp', 'speed', 'steering_angle', 'brake_force',
    'throttle_force', 'gear', 'rpm', 'lane_position', 'position_x',
    'position_y', 'position_z', 'collision',
]

_SESSION_FIELDS = {
    'user_id', 'start_time', 'end_time', 'environment_type', 'vehicle_type',
    'input_device', 'status', 'total_distance', 'total_time',
}

# sqlite3 raises OverflowError for out-of-range integers without wrapping it
STORAGE_ERRORS = (SQLAlchemyError, OverflowError)

_EVALUATION_FIELDS = {
    'overspeed_count', 'sudden_brake_count', 'sudden_acceleration_count',
    'lane_violation_count', 'collision_count', 'signal_violation_count',
    'total_score', 'grade', 'max_speed', 'avg_speed', 'harsh_braking_events',
    'smooth_driving_percentage', 'evaluation_data',
}


def _check_fields(fields: Dict[str, Any], allowed: set, entity: str):
    unknown = set(fields) - allowed
    if unknown:
        raise InvalidParameter(f"Unknown {entity} field(s): {', '.join(sorted(unknown))}")


class PersistenceStore:
    """
    Durable storage for sessions, telemetry samples and evaluations

    Stateless apart from the DatabaseManager it wraps; safe to share
    between request threads.
    """

    def __init__(self, manager: Optional[DatabaseManager] = None):
        self.db = manager or default_db_manager

    @contextmanager
    def _transaction(self, action: str):
        """One unit of work; database and driver errors become StorageFailure"""
        try:
            with self.db.get_session() as session:
                yield session
        except STORAGE_ERRORS as e:
            logger.error("[Store] %s failed: %s", action, e)
            raise StorageFailure(f"{action} failed: {e}") from e

    # === Sessions ===

    def insert_session(self, **fields) -> int:
        """Insert a session row and return its generated id"""
        _check_fields(fields, _SESSION_FIELDS, 'session')
        with self._transaction('insert_session') as session:
            model = SessionModel(**fields)
            session.add(model)
            session.flush()
            return model.id

    def update_session(self, session_id: int, **fields) -> bool:
        """
        Update a session row

        Returns:
            True if the row existed and was updated
        """
        _check_fields(fields, _SESSION_FIELDS, 'session')
        with self._transaction('update_session') as session:
            model = session.get(SessionModel, session_id)
            if model is None:
                return False
            for key, value in fields.items():
                setattr(model, key, value)
            return True

    def get_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        with self._transaction('get_session') as session:
            model = session.get(SessionModel, session_id)
            return model.to_dict() if model else None

    def get_active_session(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Most recently started active session of a user, if any"""
        with self._transaction('get_active_session') as session:
            model = session.query(SessionModel)\
                           .filter_by(user_id=user_id, status='active')\
                           .order_by(SessionModel.start_time.desc(), SessionModel.id.desc())\
                           .first()
            return model.to_dict() if model else None

    def list_active_sessions(self, user_id: int) -> List[Dict[str, Any]]:
        with self._transaction('list_active_sessions') as session:
            models = session.query(SessionModel)\
                            .filter_by(user_id=user_id, status='active')\
                            .order_by(SessionModel.id)\
                            .all()
            return [m.to_dict() for m in models]

    # === Telemetry ===

    def insert_telemetry_batch(self, rows: Iterable[Dict[str, Any]]) -> int:
        """
        Insert telemetry rows in a single transaction

        Either every row is committed or none is; rows keep their
        submission order through autoincrement ids.

        Returns:
            Number of rows inserted
        """
        rows = list(rows)
        if not rows:
            return 0

        with self._transaction('insert_telemetry_batch') as session:
            session.add_all([TelemetrySampleModel(**row) for row in rows])
            session.flush()

        logger.debug("[Store] Inserted %d telemetry rows", len(rows))
        return len(rows)

    def _telemetry_query(self, session, session_id: int,
                         filters: Optional[Dict[str, Any]] = None,
                         since: Optional[datetime] = None):
        query = session.query(TelemetrySampleModel).filter(TelemetrySampleModel.session_id == session_id)
        for column, value in (filters or {}).items():
            if column not in TELEMETRY_COLUMNS:
                raise InvalidParameter(f"Unknown telemetry column: {column}")
            query = query.filter(getattr(TelemetrySampleModel, column) == value)
        if since is not None:
            query = query.filter(TelemetrySampleModel.timestamp >= since)
        return query

    def query_telemetry(self,
                        session_id: int,
                        filters: Optional[Dict[str, Any]] = None,
                        order: str = 'asc',
                        limit: Optional[int] = None,
                        offset: int = 0,
                        since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Read persisted telemetry for a session

        Args:
            session_id: Owning session
            filters: Column equality filters, e.g. {'collision': True}
            order: 'asc' or 'desc' by (timestamp, id)
            limit: Maximum rows, None for all
            offset: Rows to skip
            since: Only samples at or after this timestamp

        Returns:
            List of sample dicts
        """
        if order not in ('asc', 'desc'):
            raise InvalidParameter(f"order must be 'asc' or 'desc', got {order!r}")

        with self._transaction('query_telemetry') as session:
            query = self._telemetry_query(session, session_id, filters, since)
            if order == 'asc':
                query = query.order_by(TelemetrySampleModel.timestamp.asc(), TelemetrySampleModel.id.asc())
            else:
                query = query.order_by(TelemetrySampleModel.timestamp.desc(), TelemetrySampleModel.id.desc())
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [row.to_dict() for row in query.all()]

    def telemetry_frame(self, session_id: int) -> pd.DataFrame:
        """All telemetry of a session as a DataFrame ordered by (timestamp, id)"""
        rows = self.query_telemetry(session_id)
        if not rows:
            return pd.DataFrame(columns=TELEMETRY_COLUMNS)
        return pd.DataFrame(rows, columns=TELEMETRY_COLUMNS)

    def count_telemetry(self, session_id: int) -> int:
        with self._transaction('count_telemetry') as session:
            return session.query(TelemetrySampleModel).filter_by(session_id=session_id).count()

    # === Aggregates ===

    def aggregate(self, session_id: int) -> Dict[str, Any]:
        """
        Scalar aggregate row over a session's telemetry

        Returns:
            dict with total_logs, max/avg/min speed, first/last timestamp,
            average inputs, collision count and average lane deviation.
            Averages and extremes are 0 when the session has no telemetry.
        """
        t = TelemetrySampleModel
        with self._transaction('aggregate') as session:
            row = session.query(
                func.count(t.id),
                func.max(t.speed),
                func.avg(t.speed),
                func.min(t.speed),
                func.min(t.timestamp),
                func.max(t.timestamp),
                func.avg(func.abs(t.steering_angle)),
                func.avg(t.brake_force),
                func.avg(t.throttle_force),
                func.sum(case((t.collision.is_(True), 1), else_=0)),
                func.avg(func.abs(t.lane_position)),
            ).filter(t.session_id == session_id).one()

        (total, max_speed, avg_speed, min_speed, first_log, last_log,
         avg_steering, avg_brake, avg_throttle, collisions, avg_lane) = row

        return {
            'total_logs': int(total or 0),
            'max_speed': float(max_speed or 0.0),
            'avg_speed': float(avg_speed or 0.0),
            'min_speed': float(min_speed or 0.0),
            'first_log': first_log,
            'last_log': last_log,
            'avg_steering': float(avg_steering or 0.0),
            'avg_brake': float(avg_brake or 0.0),
            'avg_throttle': float(avg_throttle or 0.0),
            'collision_count': int(collisions or 0),
            'avg_lane_deviation': float(avg_lane or 0.0),
        }

    def log_statistics(self, session_id: int) -> Dict[str, Any]:
        """Aggregate row plus session duration and sampling rate"""
        stats = self.aggregate(session_id)
        if stats['first_log'] is not None and stats['last_log'] is not None:
            duration = int((stats['last_log'] - stats['first_log']).total_seconds())
        else:
            duration = 0
        stats['session_duration'] = duration
        stats['data_points_per_second'] = stats['total_logs'] / duration if duration > 0 else 0.0
        return stats

    # === Evaluations ===

    def insert_or_update_evaluation(self, session_id: int, **fields) -> int:
        """
        Store the evaluation of a session, replacing any previous one

        Returns:
            Evaluation id (unchanged when an existing row is updated)
        """
        _check_fields(fields, _EVALUATION_FIELDS, 'evaluation')
        with self._transaction('insert_or_update_evaluation') as session:
            model = session.query(EvaluationModel).filter_by(session_id=session_id).first()
            if model is None:
                model = EvaluationModel(session_id=session_id, **fields)
                session.add(model)
            else:
                for key, value in fields.items():
                    setattr(model, key, value)
            session.flush()
            return model.id

    def get_evaluation(self, session_id: int) -> Optional[Dict[str, Any]]:
        with self._transaction('get_evaluation') as session:
            model = session.query(EvaluationModel).filter_by(session_id=session_id).first()
            return model.to_dict() if model else None

    # === History ===

    def user_sessions(self, user_id: int, page: int = 1, limit: int = 10) -> List[Dict[str, Any]]:
        """A user's sessions, newest first, with score and grade when evaluated"""
        if page < 1 or limit < 1:
            raise InvalidParameter("page and limit must be >= 1")

        with self._transaction('user_sessions') as session:
            rows = session.query(SessionModel, EvaluationModel.total_score, EvaluationModel.grade)\
                          .outerjoin(EvaluationModel, EvaluationModel.session_id == SessionModel.id)\
                          .filter(SessionModel.user_id == user_id)\
                          .order_by(SessionModel.start_time.desc(), SessionModel.id.desc())\
                          .offset((page - 1) * limit)\
                          .limit(limit)\
                          .all()

            results = []
            for model, total_score, grade in rows:
                record = model.to_dict()
                record['total_score'] = total_score
                record['grade'] = grade
                results.append(record)
            return results

    def user_evaluations(self, user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        """A user's evaluations joined with session context, newest session first"""
        with self._transaction('user_evaluations') as session:
            rows = session.query(EvaluationModel, SessionModel)\
                          .join(SessionModel, EvaluationModel.session_id == SessionModel.id)\
                          .filter(SessionModel.user_id == user_id)\
                          .order_by(SessionModel.start_time.desc(), SessionModel.id.desc())\
                          .limit(limit)\
                          .all()

            results = []
            for evaluation, sess in rows:
                record = evaluation.to_dict()
                record.update({
                    'start_time': sess.start_time,
                    'environment_type': sess.environment_type,
                    'total_time': sess.total_time,
                    'total_distance': sess.total_distance,
                })
                results.append(record)
            return results

    def evaluation_stats(self, user_id: Optional[int] = None, days: int = 30) -> Dict[str, Any]:
        """
        Score summary over evaluated sessions started in the last `days` days

        Args:
            user_id: Restrict to one user, None for everybody
            days: Look-back window

        Returns:
            dict with total_evaluations, avg/min/max score, excellent (A+/A) and fail counts
        """
        e = EvaluationModel
        cutoff = datetime.utcnow() - timedelta(days=days)

        with self._transaction('evaluation_stats') as session:
            query = session.query(
                func.count(e.id),
                func.avg(e.total_score),
                func.min(e.total_score),
                func.max(e.total_score),
                func.avg(e.overspeed_count),
                func.avg(e.collision_count),
                func.sum(case((e.grade.in_(('A+', 'A')), 1), else_=0)),
                func.sum(case((e.grade == 'F', 1), else_=0)),
            ).join(SessionModel, e.session_id == SessionModel.id)\
             .filter(SessionModel.start_time >= cutoff)
            if user_id is not None:
                query = query.filter(SessionModel.user_id == user_id)
            row = query.one()

        total, avg_score, min_score, max_score, avg_overspeed, avg_collisions, excellent, failed = row
        return {
            'total_evaluations': int(total or 0),
            'avg_score': float(avg_score) if avg_score is not None else None,
            'min_score': min_score,
            'max_score': max_score,
            'avg_overspeed': float(avg_overspeed or 0.0),
            'avg_collisions': float(avg_collisions or 0.0),
            'excellent_count': int(excellent or 0),
            'fail_count': int(failed or 0),
        }

    def session_statistics(self, user_id: Optional[int] = None, days: int = 30) -> List[Dict[str, Any]]:
        """
        Driving totals per environment for sessions created in the last `days` days

        Args:
            user_id: Restrict to one user, None for everybody
            days: Look-back window

        Returns:
            One dict per environment, most driven first: total_sessions,
            total_driving_time (s), total_distance (km), avg_score (None
            when nothing was evaluated), completed and aborted counts
        """
        s = SessionModel
        cutoff = datetime.utcnow() - timedelta(days=days)
        session_count = func.count(s.id)

        with self._transaction('session_statistics') as session:
            query = session.query(
                s.environment_type,
                session_count,
                func.sum(s.total_time),
                func.sum(s.total_distance),
                func.avg(EvaluationModel.total_score),
                func.sum(case((s.status == 'completed', 1), else_=0)),
                func.sum(case((s.status == 'aborted', 1), else_=0)),
            ).outerjoin(EvaluationModel, EvaluationModel.session_id == s.id)\
             .filter(s.created_at >= cutoff)
            if user_id is not None:
                query = query.filter(s.user_id == user_id)
            rows = query.group_by(s.environment_type)\
                        .order_by(session_count.desc(), s.environment_type)\
                        .all()

        return [
            {
                'environment_type': environment,
                'total_sessions': int(total),
                'total_driving_time': int(driving_time or 0),
                'total_distance': round(float(distance or 0.0), 2),
                'avg_score': float(avg_score) if avg_score is not None else None,
                'completed_sessions': int(completed or 0),
                'aborted_sessions': int(aborted or 0),
            }
            for environment, total, driving_time, distance, avg_score, completed, aborted in rows
        ]
