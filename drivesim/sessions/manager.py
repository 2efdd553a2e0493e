"""
Session Manager

Owns the driving-session lifecycle:

    NoActiveSession -> active -> {completed, aborted}

- create_session validates conditions and takes over (aborts) a user's
  previous active session instead of rejecting the new one; this is how a
  client that reconnects without a clean shutdown recovers
- end_session flushes pending telemetry, computes aggregate stats from
  what reached storage, persists the terminal status, then evaluates
- Evaluation runs after the status change and is not atomic with it: a
  failed evaluation leaves the session ended and is reported in the result

Usage:
    manager = SessionManager(store, ingestor)

    session_id = manager.create_session(user_id=7, environment='highway')
    ...
    result = manager.end_session(session_id)
    print(result.evaluation.grade)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..analysis.behavior_analytics import BehaviorAnalyzer, BehaviorMetrics, LiveCheckResult
from ..config import (
    ENVIRONMENTS, INPUT_DEVICES, EvaluationConfig,
    STATUS_ACTIVE, STATUS_ABORTED, TERMINAL_STATUSES
)
from ..database.store import PersistenceStore
from ..errors import DriveSimError, InvalidParameter, InvalidState, SessionNotFound
from ..ingestion.ingestor import TelemetryIngestor
from ..scoring.scoring_engine import ScoringEngine

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Stored evaluation of a session"""
    session_id: int
    evaluation_id: int
    score: int
    grade: str
    metrics: BehaviorMetrics
    report: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'evaluation_id': self.evaluation_id,
            'score': self.score,
            'grade': self.grade,
            'metrics': self.metrics.to_dict(),
            'report': self.report,
        }


@dataclass
class SessionEndResult:
    """Outcome of ending a session"""
    session_id: int
    status: str
    stats: Dict[str, Any] = field(default_factory=dict)
    evaluation: Optional[EvaluationResult] = None
    evaluation_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'status': self.status,
            'stats': self.stats,
            'evaluation': self.evaluation.to_dict() if self.evaluation else None,
            'evaluation_error': self.evaluation_error,
        }


class SessionManager:
    """
    Session lifecycle and evaluation trigger
    """

    def __init__(self,
                 store: PersistenceStore,
                 ingestor: TelemetryIngestor,
                 analyzer: Optional[BehaviorAnalyzer] = None,
                 scoring: Optional[ScoringEngine] = None,
                 config: Optional[EvaluationConfig] = None):
        config = config or EvaluationConfig()
        self.store = store
        self.ingestor = ingestor
        self.analyzer = analyzer or BehaviorAnalyzer(store, config)
        self.scoring = scoring or ScoringEngine(config)

        self._user_locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    # === Lifecycle ===

    def create_session(self,
                       user_id: int,
                       environment: str = 'city',
                       vehicle: str = 'sedan',
                       input_device: str = 'keyboard') -> int:
        """
        Start a new session for a user

        Any session the user still has active is ended first with status
        'aborted' (and evaluated), so a user never has two active sessions.

        Args:
            user_id: Owning user
            environment: city, highway, night or rain
            vehicle: Free-form vehicle tag
            input_device: keyboard, gamepad or wheel

        Returns:
            New session id

        Raises:
            InvalidParameter: Unknown environment or input device
        """
        if environment not in ENVIRONMENTS:
            raise InvalidParameter(f"Invalid environment type: {environment!r}")
        if input_device not in INPUT_DEVICES:
            raise InvalidParameter(f"Invalid input device: {input_device!r}")

        with self._user_lock(user_id):
            for previous in self.store.list_active_sessions(user_id):
                logger.info("[Sessions] User %s already has active session %s, aborting it",
                            user_id, previous['session_id'])
                try:
                    self.end_session(previous['session_id'], status=STATUS_ABORTED)
                except (InvalidState, SessionNotFound):
                    # Already ended by a concurrent request
                    logger.info("[Sessions] Session %s was ended concurrently", previous['session_id'])

            session_id = self.store.insert_session(
                user_id=user_id,
                start_time=datetime.utcnow(),
                environment_type=environment,
                vehicle_type=vehicle or 'sedan',
                input_device=input_device,
                status=STATUS_ACTIVE,
            )

        logger.info("[Sessions] Created session %s for user %s (%s, %s, %s)",
                    session_id, user_id, environment, vehicle, input_device)
        return session_id

    def end_session(self,
                    session_id: int,
                    status: str = 'completed',
                    timeout: Optional[float] = None) -> SessionEndResult:
        """
        End a session: flush, compute stats, persist status, evaluate

        Args:
            session_id: Session to end
            status: 'completed' or 'aborted'
            timeout: Max seconds to wait for in-flight ingestion of this session

        Returns:
            SessionEndResult; evaluation is None and evaluation_error is set
            if evaluation failed after the status was persisted

        Raises:
            InvalidParameter: Unknown terminal status
            SessionNotFound: No such session
            InvalidState: Session already completed or aborted
            StorageFailure: Flush or status write failed (session stays active)
        """
        if status not in TERMINAL_STATUSES:
            raise InvalidParameter(f"Invalid end status: {status!r}")
        if self.store.get_session(session_id) is None:
            raise SessionNotFound(session_id)

        with self.ingestor.locked(session_id, timeout):
            # Re-read under the lock; a concurrent end may have won
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session['status'] in TERMINAL_STATUSES:
                self.ingestor.forget_idle(session_id)
                raise InvalidState(session_id, session['status'])

            # Stats must see every buffered sample
            self.ingestor.flush(session_id)

            stats = self.calculate_session_stats(session_id)
            self.store.update_session(
                session_id,
                end_time=datetime.utcnow(),
                status=status,
                total_distance=stats['total_distance'],
                total_time=stats['total_time'],
            )

        self.ingestor.discard(session_id)
        logger.info("[Sessions] Session %s %s (%d samples, %.2f km, %ds)",
                    session_id, status, stats['total_logs'], stats['total_distance'], stats['total_time'])

        result = SessionEndResult(session_id=session_id, status=status, stats=stats)
        try:
            result.evaluation = self.evaluate_session(session_id)
        except DriveSimError as e:
            logger.error("[Sessions] Evaluation of session %s failed: %s", session_id, e)
            result.evaluation_error = str(e)
        return result

    def calculate_session_stats(self, session_id: int) -> Dict[str, Any]:
        """
        Aggregate stats from persisted telemetry

        Distance is estimated as avg_speed * elapsed / 3600 (km); elapsed
        time runs from the first to the last sample. All zero without
        telemetry.
        """
        agg = self.store.aggregate(session_id)
        if agg['total_logs'] == 0:
            return {'total_distance': 0.0, 'total_time': 0, 'max_speed': 0.0, 'avg_speed': 0.0, 'total_logs': 0}

        total_time = int((agg['last_log'] - agg['first_log']).total_seconds())
        total_distance = agg['avg_speed'] * total_time / 3600

        return {
            'total_distance': round(total_distance, 2),
            'total_time': total_time,
            'max_speed': round(agg['max_speed'], 2),
            'avg_speed': round(agg['avg_speed'], 2),
            'total_logs': agg['total_logs'],
        }

    # === Evaluation ===

    def evaluate_session(self, session_id: int) -> EvaluationResult:
        """
        Analyze, score and store the evaluation of a session

        Replaces an existing evaluation instead of adding a second one.

        Raises:
            SessionNotFound: No such session
            StorageFailure: Reading telemetry or writing the evaluation failed
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)

        metrics = self.analyzer.analyze(session, self.store.telemetry_frame(session_id))
        card = self.scoring.evaluate(session, metrics)
        evaluation_id = self.store.insert_or_update_evaluation(
            session_id, **self.scoring.evaluation_fields(card, metrics)
        )

        logger.info("[Sessions] Evaluated session %s: score %d (%s)", session_id, card.score, card.grade)
        return EvaluationResult(
            session_id=session_id,
            evaluation_id=evaluation_id,
            score=card.score,
            grade=card.grade,
            metrics=metrics,
            report=card.report,
        )

    def live_check(self, session_id: int, raw_sample: Optional[Mapping[str, Any]]) -> LiveCheckResult:
        """Instant single-sample check against the session's environment"""
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return self.analyzer.check_sample(session['environment_type'], raw_sample)

    # === Lookups ===

    def get_active_session(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.store.get_active_session(user_id)

    def get_session_by_id(self, session_id: int) -> Optional[Dict[str, Any]]:
        return self.store.get_session(session_id)
