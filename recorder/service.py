"""Recording session orchestration."""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from analyzers import training_metrics
from analyzers.metrics_aggregator import MetricsAggregator, MetricsSnapshot
from config import settings
from config.settings import RecorderConfig
from models.plan import Plan, parse_plan
from models.sample import Sample
from models.session import RecorderStatus, SessionConfig, SessionState
from plans.adherence import AdherenceState, PlanAdherenceTracker, Reading
from plans.structure import flatten
from recorder.uploader import Uploader, UploadResult
from storage.sample_buffer import BufferSealed, BufferWriteFailed, SampleBuffer, SampleBufferError, SealedBuffer

logger = logging.getLogger(__name__)


class SessionStateConflict(RuntimeError):
    """A lifecycle operation is not valid in the recorder's current state."""


@dataclass(frozen=True)
class DerivedMetrics:
    normalized_power: Optional[float] = None
    intensity_factor: Optional[float] = None
    training_stress_score: Optional[float] = None
    heart_rate_tss: Optional[float] = None
    running_tss: Optional[float] = None
    variability_index: Optional[float] = None
    efficiency_factor: Optional[float] = None
    decoupling: Optional[float] = None
    vam: Optional[float] = None


@dataclass(frozen=True)
class RecorderSnapshot:
    """Combined read-only view handed to UI consumers."""

    session: SessionState
    metrics: Optional[MetricsSnapshot]
    derived: DerivedMetrics
    adherence: Optional[AdherenceState]

    @property
    def status(self) -> RecorderStatus:
        return self.session.status

    @property
    def buffer_degraded(self) -> bool:
        return self.session.buffer_degraded


def derive_metrics(metrics: MetricsSnapshot, ftp: Optional[float], threshold_hr: Optional[float],
                   threshold_pace: Optional[float] = None) -> DerivedMetrics:
    """Training scores from the aggregator totals, charged by the time samples cover."""
    np_value = metrics.normalized_power
    moving = metrics.moving_seconds
    return DerivedMetrics(
        normalized_power=np_value,
        intensity_factor=training_metrics.intensity_factor(np_value, ftp),
        training_stress_score=training_metrics.training_stress_score(moving, np_value, ftp),
        heart_rate_tss=training_metrics.heart_rate_tss(metrics.heart_rate.average, threshold_hr, moving),
        running_tss=training_metrics.running_tss(
            training_metrics.pace_from_speed(metrics.speed.average), threshold_pace, moving),
        variability_index=training_metrics.variability_index(np_value, metrics.power.average),
        efficiency_factor=training_metrics.efficiency_factor(
            metrics.heart_rate.average, np_value, metrics.power.average),
        decoupling=metrics.decoupling,
        vam=training_metrics.vam(metrics.ascent_m, moving) if metrics.ascent_m > 0 else None,
    )


class ActivityRecorderService:
    """Owns one recording session at a time.

    ``on_sensor_sample`` is the single ingestion entry point: each sample is
    persisted to the buffer, folded into the aggregator and, with a plan
    attached, drives the adherence tracker. Readers get immutable snapshots.
    """

    def __init__(self, buffer: SampleBuffer, clock: Callable[[], float] = time.monotonic,
                 min_notify_interval: float = RecorderConfig.SNAPSHOT_MIN_INTERVAL_S):
        self._buffer = buffer
        self._clock = clock
        self._min_notify_interval = min_notify_interval
        self._lock = threading.RLock()

        self._status = RecorderStatus.IDLE
        self._session_id: Optional[str] = None
        self._ftp = None
        self._threshold_hr = None
        self._max_hr = None
        self._threshold_pace = None
        self._aggregator: Optional[MetricsAggregator] = None
        self._started_clock = None
        self._started_wall = None
        self._stopped_clock = None
        self._paused_clock = None
        self._paused_total = 0.0
        self._last_position = None
        self._reading = Reading()

        self._plan_name: Optional[str] = None
        self._plan_steps = None
        self._tracker: Optional[PlanAdherenceTracker] = None

        self._degraded = False
        self._fallback: List[Sample] = []

        self._subscribers: List[Callable[[RecorderSnapshot], Any]] = []
        self._last_notify = None
        self.last_upload_result: Optional[UploadResult] = None

    @property
    def status(self) -> RecorderStatus:
        return self._status

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def start(self, config: Optional[SessionConfig] = None) -> str:
        """Begin a new session and return its id.

        Raises:
            SessionStateConflict: If a session is active, orphaned buffers
                from an earlier run have not been recovered or discarded, or
                the requested session id belongs to a sealed recording
        """
        config = config or SessionConfig()
        with self._lock:
            if self._status in (RecorderStatus.RECORDING, RecorderStatus.PAUSED):
                raise SessionStateConflict(f"Cannot start: session {self._session_id} is {self._status.value}")

            orphans = self._buffer.list_orphaned()
            if orphans:
                raise SessionStateConflict(
                    f"Cannot start: {len(orphans)} orphaned session(s) must be recovered or discarded first"
                )

            session_id = config.session_id or uuid.uuid4().hex
            degraded = False
            try:
                self._buffer.open_session(session_id)
            except BufferSealed as e:
                raise SessionStateConflict(f"Cannot start: session {session_id} is already sealed") from e
            except BufferWriteFailed as e:
                logger.error(f"Sample buffer unavailable, recording {session_id} in memory only: {e}")
                degraded = True

            self._session_id = session_id
            self._ftp = config.ftp if config.ftp is not None else settings.FTP
            self._threshold_hr = config.threshold_hr if config.threshold_hr is not None else settings.THRESHOLD_HR
            self._max_hr = config.max_hr if config.max_hr is not None else settings.MAX_HEART_RATE
            self._threshold_pace = (config.threshold_pace if config.threshold_pace is not None
                                    else settings.THRESHOLD_PACE)
            self._aggregator = MetricsAggregator(ftp=self._ftp, threshold_hr=self._threshold_hr)
            self._started_clock = self._clock()
            self._started_wall = datetime.now()
            self._stopped_clock = None
            self._paused_clock = None
            self._paused_total = 0.0
            self._last_position = None
            self._reading = Reading()
            self._degraded = degraded
            self._fallback = []
            self._last_notify = None
            self._tracker = self._new_tracker() if self._plan_steps is not None else None
            self._status = RecorderStatus.RECORDING

        logger.info(f"Started recording session {session_id}")
        self._notify(force=True)
        return session_id

    def pause(self):
        with self._lock:
            if self._status != RecorderStatus.RECORDING:
                raise SessionStateConflict(f"Cannot pause while {self._status.value}")
            self._aggregator.pause()
            self._paused_clock = self._clock()
            self._status = RecorderStatus.PAUSED
        logger.info(f"Paused session {self._session_id}")
        self._notify(force=True)

    def resume(self):
        with self._lock:
            if self._status != RecorderStatus.PAUSED:
                raise SessionStateConflict(f"Cannot resume while {self._status.value}")
            self._paused_total += self._clock() - self._paused_clock
            self._paused_clock = None
            self._status = RecorderStatus.RECORDING
        logger.info(f"Resumed session {self._session_id}")
        self._notify(force=True)

    def stop(self, uploader: Optional[Uploader] = None) -> SealedBuffer:
        """End the session, seal its buffer and optionally hand it to an uploader.

        Returns only after every sample of the session is durable or, in
        degraded mode, held by the returned in-memory handle.
        """
        with self._lock:
            if self._status not in (RecorderStatus.RECORDING, RecorderStatus.PAUSED):
                raise SessionStateConflict(f"Cannot stop while {self._status.value}")

            now = self._clock()
            if self._paused_clock is not None:
                self._paused_total += now - self._paused_clock
                self._paused_clock = None
            self._stopped_clock = now
            self._aggregator.pause()

            sealed = self._seal()
            self._status = RecorderStatus.STOPPED

        logger.info(f"Stopped session {sealed.session_id} with {sealed.sample_count} samples")
        self._notify(force=True)

        if uploader is not None:
            self.last_upload_result = self._upload(uploader, sealed)
        return sealed

    def _seal(self) -> SealedBuffer:
        session_id = self._session_id
        if self._fallback:
            logger.info(f"Flushing {len(self._fallback)} in-memory samples to the buffer")
            try:
                for sample in list(self._fallback):
                    self._buffer.append(session_id, sample)
                    self._fallback.pop(0)
            except SampleBufferError as e:
                logger.error(f"Could not flush in-memory samples for {session_id}: {e}")

        if not self._fallback:
            try:
                return self._buffer.finalize(session_id, degraded=self._degraded)
            except (SampleBufferError, SQLAlchemyError) as e:
                logger.error(f"Could not finalize buffer for {session_id}: {e}")

        # Whatever reached the buffer stays unsealed and must show up as an orphan
        self._buffer.release(session_id)
        try:
            persisted = self._buffer.read_all(session_id)
        except SQLAlchemyError as e:
            logger.error(f"Could not read buffered samples for {session_id}: {e}")
            persisted = []
        return SealedBuffer(
            session_id=session_id,
            samples=tuple(persisted) + tuple(self._fallback),
            sealed_at=datetime.utcnow(),
            degraded=True,
        )

    def _upload(self, uploader: Uploader, sealed: SealedBuffer) -> UploadResult:
        try:
            result = uploader.upload(sealed)
        except Exception as e:
            logger.error(f"Uploader raised for session {sealed.session_id}: {e}")
            return UploadResult(success=False, error=str(e))
        if result.success:
            logger.info(f"Uploaded session {sealed.session_id}: {result.remote_id}")
        else:
            logger.warning(f"Upload of session {sealed.session_id} failed: {result.error}")
        return result

    def _new_tracker(self) -> PlanAdherenceTracker:
        tracker = PlanAdherenceTracker(self._plan_steps, ftp=self._ftp,
                                       threshold_hr=self._threshold_hr, max_hr=self._max_hr)
        distance = self._aggregator.totals()[1] if self._aggregator is not None else 0.0
        tracker.begin(self._moving_seconds(), distance)
        return tracker

    def select_plan(self, plan: Any, name: Optional[str] = None):
        """Attach a plan: a Plan, a raw structure, or plan nodes.

        Raises:
            InvalidPlanStructure: If a raw structure fails validation
        """
        if isinstance(plan, dict) or (isinstance(plan, list) and any(isinstance(n, dict) for n in plan)):
            plan = parse_plan(plan)
        steps = flatten(plan)
        with self._lock:
            self._plan_name = name or (plan.name if isinstance(plan, Plan) else 'Plan')
            self._plan_steps = steps
            if self._status in (RecorderStatus.RECORDING, RecorderStatus.PAUSED):
                self._tracker = self._new_tracker()
            else:
                self._tracker = None
        logger.info(f"Selected plan '{self._plan_name}' with {len(steps)} steps")

    def clear_plan(self):
        with self._lock:
            self._plan_name = None
            self._plan_steps = None
            self._tracker = None
        logger.info("Cleared plan")

    def advance_step(self) -> Optional[AdherenceState]:
        """Manually finish the current plan step."""
        with self._lock:
            if self._tracker is None or self._aggregator is None:
                return None
            return self._tracker.advance_manually(self._moving_seconds())

    def tick(self) -> Optional[AdherenceState]:
        """Advance the plan on the session clock when no samples arrive.

        Meant for a host timer; time-based steps finish on schedule even
        while every sensor is silent.
        """
        with self._lock:
            if self._tracker is None or self._status != RecorderStatus.RECORDING:
                return None
            state = self._tracker.sync(self._moving_seconds(), self._aggregator.totals()[1])

        self._notify()
        return state

    def on_sensor_sample(self, sample: Sample) -> bool:
        """Ingest one sensor sample; returns False when it was not recorded.

        Buffer failures switch the session to an in-memory fallback instead
        of raising.
        """
        with self._lock:
            if self._status == RecorderStatus.PAUSED:
                if sample.position is not None:
                    self._last_position = sample.position
                return False
            if self._status != RecorderStatus.RECORDING:
                logger.debug(f"Ignoring sample while {self._status.value}")
                return False

            self._persist(sample)
            self._aggregator.ingest(sample)
            if sample.position is not None:
                self._last_position = sample.position
            self._update_reading(sample)

            if self._tracker is not None:
                _, distance = self._aggregator.totals()
                self._tracker.on_session_tick(self._moving_seconds(), self._reading, distance)

        self._notify()
        return True

    def _persist(self, sample: Sample):
        if self._degraded:
            self._fallback.append(sample)
            return
        try:
            self._buffer.append(self._session_id, sample)
        except BufferWriteFailed as e:
            logger.error(f"Buffer write failed for session {self._session_id}, continuing in memory: {e}")
            self._degraded = True
            self._fallback.append(sample)

    def _update_reading(self, sample: Sample):
        changes = {}
        for channel in ('power', 'heart_rate', 'speed', 'cadence'):
            value = getattr(sample, channel)
            if value is not None:
                changes[channel] = value
        if changes:
            self._reading = replace(self._reading, **changes)

    def _clock_times(self):
        """Elapsed and paused seconds on the session clock."""
        if self._started_clock is None:
            return 0.0, 0.0
        now = self._stopped_clock if self._stopped_clock is not None else self._clock()
        paused = self._paused_total
        if self._paused_clock is not None:
            paused += now - self._paused_clock
        return now - self._started_clock, paused

    def _moving_seconds(self) -> float:
        elapsed, paused = self._clock_times()
        return max(0.0, elapsed - paused)

    def _session_state(self) -> SessionState:
        elapsed, paused = self._clock_times()

        distance = 0.0
        if self._aggregator is not None:
            _, distance = self._aggregator.totals()

        return SessionState(
            session_id=self._session_id or '',
            status=self._status,
            started_at=self._started_wall,
            elapsed_seconds=elapsed,
            moving_seconds=max(0.0, elapsed - paused),
            paused_seconds=paused,
            distance_m=distance,
            last_position=self._last_position,
            plan_name=self._plan_name,
            buffer_degraded=self._degraded,
        )

    def get_snapshot(self) -> RecorderSnapshot:
        with self._lock:
            session = self._session_state()
            metrics = self._aggregator.snapshot() if self._aggregator is not None else None
            adherence = None
            if self._tracker is not None:
                if self._status == RecorderStatus.RECORDING:
                    adherence = self._tracker.sync(session.moving_seconds, session.distance_m)
                else:
                    adherence = self._tracker.state()
            ftp, threshold_hr, threshold_pace = self._ftp, self._threshold_hr, self._threshold_pace

        derived = DerivedMetrics()
        if metrics is not None:
            session = replace(session, distance_m=metrics.distance_m,
                              ascent_m=metrics.ascent_m, descent_m=metrics.descent_m)
            derived = derive_metrics(metrics, ftp, threshold_hr, threshold_pace)
        return RecorderSnapshot(session=session, metrics=metrics, derived=derived, adherence=adherence)

    def subscribe(self, callback: Callable[[RecorderSnapshot], Any]) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that unsubscribes it.

        Listeners fire at most once per ``min_notify_interval`` seconds of
        ingestion, plus once on every lifecycle change.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, force: bool = False):
        with self._lock:
            if not self._subscribers:
                return
            now = self._clock()
            if not force and self._last_notify is not None and now - self._last_notify < self._min_notify_interval:
                return
            self._last_notify = now
            subscribers = list(self._subscribers)

        snapshot = self.get_snapshot()
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Snapshot subscriber failed: {e}")

    def list_orphaned(self) -> List[str]:
        return self._buffer.list_orphaned()

    def recover_or_discard(self, session_id: str, recover: bool = True) -> Optional[SealedBuffer]:
        """Resolve an orphaned session left behind by a crash.

        Raises:
            SessionStateConflict: If the id is not an orphaned session
        """
        with self._lock:
            if session_id == self._session_id and self._status in (RecorderStatus.RECORDING,
                                                                  RecorderStatus.PAUSED):
                raise SessionStateConflict(f"Session {session_id} is the active recording")
            if session_id not in self._buffer.list_orphaned():
                raise SessionStateConflict(f"Session {session_id} is not an orphaned session")

            if recover:
                return self._buffer.recover(session_id)
            self._buffer.discard(session_id)
            return None
