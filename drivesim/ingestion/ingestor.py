"""
Buffered Telemetry Ingestor

Accepts telemetry samples at request rate without one database
round-trip per sample:
- Per-session in-memory buffers, flushed in batches
- One lock per session key; append-then-maybe-flush is atomic
- Transactional batch writes (all-or-nothing)
- Failed flushes keep the buffer for the next attempt

Sessions never share a lock, so ingest calls for different sessions
run fully in parallel.

Usage:
    ingestor = TelemetryIngestor(store, buffer_size=10)

    result = ingestor.ingest(session_id, {'speed': 42.0, 'brake_force': 0.1})
    ingestor.flush(session_id)
    ingestor.flush_all()  # shutdown
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from ..config import IngestConfig, STATUS_ACTIVE
from ..database.store import PersistenceStore
from ..errors import InvalidParameter, InvalidSession, SessionNotFound, StorageFailure
from .normalize import normalize_sample

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of an ingest, batch or flush call"""
    session_id: int
    status: str  # 'buffered', 'flushed', 'inserted' or 'empty'
    buffered: int = 0  # samples left in the session buffer
    inserted: int = 0  # rows written by this call

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'session_id': self.session_id,
            'status': self.status,
            'buffered': self.buffered,
            'inserted': self.inserted,
        }


class TelemetryIngestor:
    """
    Per-session buffering writer in front of the PersistenceStore
    """

    def __init__(self,
                 store: PersistenceStore,
                 buffer_size: Optional[int] = None,
                 lock_timeout: Optional[float] = None,
                 config: Optional[IngestConfig] = None):
        """
        Initialize ingestor

        Args:
            store: Persistence store receiving the batches
            buffer_size: Flush automatically after N buffered samples (default 10)
            lock_timeout: Max seconds to wait for a session lock, None = no limit
            config: IngestConfig supplying defaults for the two values above
        """
        config = config or IngestConfig()
        self.store = store
        self.buffer_size = buffer_size if buffer_size is not None else config.buffer_size
        self.lock_timeout = lock_timeout if lock_timeout is not None else config.lock_timeout

        if self.buffer_size < 1:
            raise InvalidParameter(f"buffer_size must be >= 1, got {self.buffer_size}")

        self._buffers: Dict[int, List[Dict[str, Any]]] = {}
        self._locks: Dict[int, threading.RLock] = {}
        self._registry_lock = threading.Lock()

        logger.debug("[Ingestor] Initialized (buffer=%d)", self.buffer_size)

    # === Locking ===

    def _lock_for(self, session_id: int) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    def _buffer_for(self, session_id: int) -> List[Dict[str, Any]]:
        with self._registry_lock:
            return self._buffers.setdefault(session_id, [])

    @contextmanager
    def locked(self, session_id: int, timeout: Optional[float] = None):
        """
        Hold the session's lock (reentrant)

        Anything done inside the block is serialized with ingest and
        flush calls for the same session.

        Raises:
            StorageFailure: If the lock was not acquired within timeout
        """
        timeout = self.lock_timeout if timeout is None else timeout
        lock = self._lock_for(session_id)
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
        if not acquired:
            raise StorageFailure(f"Timed out after {timeout}s waiting for session {session_id}")
        try:
            yield
        finally:
            lock.release()

    # === Validation ===

    def _require_active(self, session_id: int) -> Dict[str, Any]:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session['status'] != STATUS_ACTIVE:
            raise InvalidSession(session_id, f"Session {session_id} is not active ({session['status']})")
        return session

    def _recheck_active(self, session_id: int) -> Dict[str, Any]:
        """Re-validate under the session lock, releasing the lock entry on rejection"""
        try:
            return self._require_active(session_id)
        except InvalidSession:
            self.forget_idle(session_id)
            raise

    # === Ingestion ===

    def ingest(self, session_id: int, raw_sample: Optional[Mapping[str, Any]]) -> IngestResult:
        """
        Buffer one sample, flushing when the buffer reaches buffer_size

        Args:
            session_id: Owning session (must exist and be active)
            raw_sample: Producer key/value map

        Returns:
            IngestResult with status 'buffered' or 'flushed'

        Raises:
            InvalidSession: Session missing or not active
            StorageFailure: Automatic flush failed (sample stays buffered)
        """
        # Unknown or ended sessions are rejected before a lock is registered
        self._require_active(session_id)
        with self.locked(session_id):
            self._recheck_active(session_id)

            row = normalize_sample(session_id, raw_sample)
            buffer = self._buffer_for(session_id)
            buffer.append(row)

            if len(buffer) >= self.buffer_size:
                return self._flush_locked(session_id)

            return IngestResult(session_id=session_id, status='buffered', buffered=len(buffer))

    def ingest_batch(self, session_id: int, raw_samples: Sequence[Mapping[str, Any]]) -> IngestResult:
        """
        Write samples directly in one transaction, bypassing the buffer

        Raises:
            InvalidParameter: Empty or non-list input
            InvalidSession: Session missing or not active
            StorageFailure: Write failed; nothing from the batch was persisted
        """
        if isinstance(raw_samples, (str, bytes, Mapping)) or not isinstance(raw_samples, Sequence):
            raise InvalidParameter("Batch must be a list of samples")
        if not raw_samples:
            raise InvalidParameter("Batch must contain at least one sample")

        self._require_active(session_id)
        with self.locked(session_id):
            self._recheck_active(session_id)
            rows = [normalize_sample(session_id, raw) for raw in raw_samples]
            inserted = self.store.insert_telemetry_batch(rows)

        logger.info("[Ingestor] Batch of %d samples written for session %s", inserted, session_id)
        return IngestResult(
            session_id=session_id,
            status='inserted',
            buffered=self.buffered_count(session_id),
            inserted=inserted,
        )

    # === Flushing ===

    def _flush_locked(self, session_id: int) -> IngestResult:
        """Write the session buffer; caller holds the session lock"""
        buffer = self._buffers.get(session_id)
        if not buffer:
            return IngestResult(session_id=session_id, status='empty')

        pending = list(buffer)
        try:
            inserted = self.store.insert_telemetry_batch(pending)
        except StorageFailure:
            logger.warning("[Ingestor] Flush failed for session %s, keeping %d buffered samples",
                           session_id, len(buffer))
            raise

        # Only what was written is removed
        del buffer[:len(pending)]
        logger.debug("[Ingestor] Flushed %d samples for session %s", inserted, session_id)
        return IngestResult(session_id=session_id, status='flushed', buffered=len(buffer), inserted=inserted)

    def flush(self, session_id: int, timeout: Optional[float] = None) -> IngestResult:
        """
        Drain a session buffer into storage

        The buffer is cleared only when the write commits; on
        StorageFailure every sample is kept for the next attempt.
        """
        with self._registry_lock:
            if not self._buffers.get(session_id):
                return IngestResult(session_id=session_id, status='empty')

        with self.locked(session_id, timeout):
            return self._flush_locked(session_id)

    def flush_all(self) -> Dict[int, Union[IngestResult, StorageFailure]]:
        """
        Flush every buffered session (shutdown hook)

        Returns:
            Map of session id to its IngestResult, or the StorageFailure
            that kept its buffer in place
        """
        results: Dict[int, Union[IngestResult, StorageFailure]] = {}
        for session_id in self.pending_sessions():
            try:
                results[session_id] = self.flush(session_id)
            except StorageFailure as e:
                results[session_id] = e

        failed = sum(1 for r in results.values() if isinstance(r, StorageFailure))
        if failed:
            logger.error("[Ingestor] flush_all: %d of %d sessions kept their buffers", failed, len(results))
        elif results:
            logger.info("[Ingestor] flush_all: flushed %d sessions", len(results))
        return results

    def discard(self, session_id: int) -> int:
        """
        Forget a session's buffer and lock

        Returns:
            Number of buffered samples dropped
        """
        with self.locked(session_id):
            with self._registry_lock:
                dropped = len(self._buffers.pop(session_id, []))
        with self._registry_lock:
            self._locks.pop(session_id, None)
        if dropped:
            logger.warning("[Ingestor] Discarded %d unflushed samples for session %s", dropped, session_id)
        return dropped

    def forget_idle(self, session_id: int) -> bool:
        """
        Drop the lock entry of a session with nothing buffered

        Returns:
            True if an entry was removed
        """
        with self._registry_lock:
            if self._buffers.get(session_id):
                return False
            self._buffers.pop(session_id, None)
            return self._locks.pop(session_id, None) is not None

    # === Introspection ===

    def buffered_count(self, session_id: int) -> int:
        with self._registry_lock:
            return len(self._buffers.get(session_id, ()))

    def pending_sessions(self) -> List[int]:
        with self._registry_lock:
            return [sid for sid, buf in self._buffers.items() if buf]

    # === Reads ===

    def session_logs(self, session_id: int, limit: int = 1000, offset: int = 0) -> List[Dict[str, Any]]:
        """Persisted samples of a session in timestamp order"""
        return self.store.query_telemetry(session_id, limit=limit, offset=offset)

    def latest_samples(self, session_id: int, seconds: int = 30,
                       now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Persisted samples from the last `seconds` seconds, newest first"""
        since = (now or datetime.utcnow()) - timedelta(seconds=seconds)
        return self.store.query_telemetry(session_id, order='desc', since=since)
