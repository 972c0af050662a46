"""Durable, crash-recoverable buffer of raw session samples."""

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.settings import RecorderConfig
from models.sample import Sample
from storage.database import create_buffer_engine, create_session_factory
from storage.models import BufferedSample, BufferedSession, STATUS_RECORDING, STATUS_SEALED

logger = logging.getLogger(__name__)


class SampleBufferError(Exception):
    """Base class for sample buffer errors."""


class BufferWriteFailed(SampleBufferError):
    """A write kept failing after all retry attempts."""


class BufferSealed(SampleBufferError):
    """The session was finalized and accepts no more samples."""


class UnknownBufferSession(SampleBufferError, KeyError):
    """No buffered data exists for the session id."""


@dataclass(frozen=True)
class SealedBuffer:
    """Handle for a finalized session, ready for upload or export."""

    session_id: str
    samples: Tuple[Sample, ...]
    opened_at: Optional[datetime] = None
    sealed_at: Optional[datetime] = None
    degraded: bool = False

    @property
    def sample_count(self) -> int:
        return len(self.samples)


class SampleBuffer:
    """Append-only sample store keyed by session id.

    Every append is committed in its own transaction before returning, so a
    sample is either fully visible to readers or absent.
    """

    def __init__(self, database_url: Optional[str] = None,
                 retries: int = RecorderConfig.BUFFER_WRITE_RETRIES,
                 retry_delay: float = RecorderConfig.BUFFER_RETRY_DELAY_S):
        self.engine = create_buffer_engine(database_url)
        self.SessionLocal = create_session_factory(self.engine)
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._lock = threading.Lock()
        self._opened: Set[str] = set()
        self._sealed: Set[str] = set()
        self._next_seq: Dict[str, int] = {}

    def close(self):
        self.engine.dispose()

    def _run_with_retries(self, operation: Callable[[Session], object], description: str):
        last_error = None
        for attempt in range(1, self.retries + 1):
            db = self.SessionLocal()
            try:
                result = operation(db)
                db.commit()
                return result
            except (SQLAlchemyError, OSError) as e:
                db.rollback()
                last_error = e
                logger.warning(f"{description} failed (attempt {attempt}/{self.retries}): {e}")
                if attempt < self.retries:
                    time.sleep(self.retry_delay)
            finally:
                db.close()

        logger.error(f"{description} failed after {self.retries} attempts")
        raise BufferWriteFailed(f"{description} failed after {self.retries} attempts") from last_error

    def open_session(self, session_id: str):
        """Register a session for recording.

        Re-opening a session left over by this process continues its
        sequence numbering. Opening a sealed session raises BufferSealed.
        """
        with self._lock:
            self._open_locked(session_id)

    def _open_locked(self, session_id: str):
        def operation(db: Session):
            record = db.get(BufferedSession, session_id)
            if record is None:
                db.add(BufferedSession(id=session_id, status=STATUS_RECORDING, opened_at=datetime.utcnow()))
                return 0, False
            if record.status == STATUS_SEALED:
                return 0, True
            last_seq = db.query(func.max(BufferedSample.seq)).filter_by(session_id=session_id).scalar()
            return (last_seq + 1 if last_seq is not None else 0), False

        next_seq, sealed = self._run_with_retries(operation, f"Opening buffer session {session_id}")
        if sealed:
            self._sealed.add(session_id)
            raise BufferSealed(f"Session {session_id} is already finalized")

        self._opened.add(session_id)
        self._next_seq[session_id] = next_seq
        logger.info(f"Opened buffer session {session_id}")

    def _write_sample(self, db: Session, session_id: str, seq: int, payload: str):
        db.add(BufferedSample(session_id=session_id, seq=seq, payload=payload, written_at=datetime.utcnow()))

    def append(self, session_id: str, sample: Sample) -> int:
        """Durably append one sample and return its sequence number.

        Raises:
            BufferSealed: If the session was finalized
            BufferWriteFailed: If every write attempt failed
        """
        with self._lock:
            if session_id in self._sealed:
                raise BufferSealed(f"Session {session_id} is already finalized")
            if session_id not in self._opened:
                self._open_locked(session_id)

            seq = self._next_seq[session_id]
            payload = json.dumps(sample.to_dict())
            self._run_with_retries(
                lambda db: self._write_sample(db, session_id, seq, payload),
                f"Appending sample {seq} to session {session_id}",
            )
            self._next_seq[session_id] = seq + 1
            return seq

    def read_all(self, session_id: str) -> List[Sample]:
        """Return the session's samples in insertion order."""
        db = self.SessionLocal()
        try:
            rows = (
                db.query(BufferedSample.payload)
                .filter_by(session_id=session_id)
                .order_by(BufferedSample.seq)
                .all()
            )
            return [Sample.from_dict(json.loads(row.payload)) for row in rows]
        finally:
            db.close()

    def list_orphaned(self) -> List[str]:
        """Session ids still marked as recording that this buffer did not open."""
        db = self.SessionLocal()
        try:
            rows = (
                db.query(BufferedSession.id)
                .filter(BufferedSession.status == STATUS_RECORDING)
                .order_by(BufferedSession.opened_at)
                .all()
            )
        finally:
            db.close()
        with self._lock:
            return [row.id for row in rows if row.id not in self._opened]

    def finalize(self, session_id: str, degraded: bool = False) -> SealedBuffer:
        """Seal the session and return a handle to its samples.

        Finalizing an already sealed session returns the same handle.
        """
        with self._lock:
            def operation(db: Session):
                record = db.get(BufferedSession, session_id)
                if record is None:
                    return None
                if record.status != STATUS_SEALED:
                    count = db.query(func.count(BufferedSample.id)).filter_by(session_id=session_id).scalar()
                    record.status = STATUS_SEALED
                    record.sealed_at = datetime.utcnow()
                    record.sample_count = count
                    record.degraded = bool(record.degraded or degraded)
                return record.opened_at, record.sealed_at, record.degraded

            result = self._run_with_retries(operation, f"Finalizing buffer session {session_id}")
            if result is None:
                raise UnknownBufferSession(session_id)

            self._sealed.add(session_id)
            self._opened.discard(session_id)
            self._next_seq.pop(session_id, None)

        opened_at, sealed_at, was_degraded = result
        samples = tuple(self.read_all(session_id))
        logger.info(f"Finalized buffer session {session_id} with {len(samples)} samples")
        return SealedBuffer(
            session_id=session_id,
            samples=samples,
            opened_at=opened_at,
            sealed_at=sealed_at,
            degraded=was_degraded,
        )

    def release(self, session_id: str):
        """Stop tracking an open session without sealing it.

        Its rows stay marked as recording, so it is listed as orphaned.
        """
        with self._lock:
            self._opened.discard(session_id)
            self._next_seq.pop(session_id, None)
        logger.warning(f"Released unsealed buffer session {session_id}")

    def recover(self, session_id: str) -> SealedBuffer:
        """Re-finalize an orphaned session left behind by a crash."""
        logger.info(f"Recovering orphaned session {session_id}")
        return self.finalize(session_id)

    def discard(self, session_id: str):
        """Delete every buffered row for the session."""
        with self._lock:
            def operation(db: Session):
                db.query(BufferedSample).filter_by(session_id=session_id).delete()
                db.query(BufferedSession).filter_by(id=session_id).delete()

            self._run_with_retries(operation, f"Discarding buffer session {session_id}")
            self._opened.discard(session_id)
            self._sealed.discard(session_id)
            self._next_seq.pop(session_id, None)
        logger.info(f"Discarded buffer session {session_id}")
