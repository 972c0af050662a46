"""Live plan tracking: current step, step completion and adherence scoring."""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

from config.settings import RecorderConfig
from models.plan import DistanceDuration, IntensityTarget, PlanStep, TimeDuration

logger = logging.getLogger(__name__)


class TrackerState(str, Enum):
    AWAITING_START = 'awaiting-start'
    IN_STEP = 'in-step'
    STEP_COMPLETE = 'step-complete'
    PLAN_COMPLETE = 'plan-complete'


@dataclass(frozen=True)
class Reading:
    """Latest live values compared against step targets."""

    power: Optional[float] = None
    heart_rate: Optional[float] = None
    speed: Optional[float] = None
    cadence: Optional[float] = None
    rpe: Optional[float] = None


@dataclass(frozen=True)
class AdherenceState:
    state: TrackerState
    step_index: int
    step_count: int
    current_step: Optional[PlanStep]
    elapsed_in_step: float = 0.0
    distance_in_step: float = 0.0
    in_band_ticks: int = 0
    total_ticks: int = 0
    steps_completed: int = 0

    @property
    def score(self) -> Optional[float]:
        """Fraction of ticks spent inside the target band."""
        if not self.total_ticks:
            return None
        return self.in_band_ticks / self.total_ticks


def target_in_band(target: Optional[IntensityTarget], reading: Reading, ftp: Optional[float] = None,
                   threshold_hr: Optional[float] = None, max_hr: Optional[float] = None) -> bool:
    """Whether a live reading lies inside the tolerance band of a target.

    Steps without a target, and targets that cannot be evaluated because
    the athlete threshold is not configured, count as in band. A missing
    sensor reading counts as out of band.
    """
    if target is None:
        return True

    kind, goal = target.type, target.intensity

    if kind == '%FTP':
        if not ftp:
            return True
        if reading.power is None:
            return False
        return abs(reading.power / ftp * 100 - goal) <= RecorderConfig.ADHERENCE_TOLERANCE_PCT_POINTS
    if kind in ('%ThresholdHR', '%MaxHR'):
        reference = threshold_hr if kind == '%ThresholdHR' else max_hr
        if not reference:
            return True
        if reading.heart_rate is None:
            return False
        return abs(reading.heart_rate / reference * 100 - goal) <= RecorderConfig.ADHERENCE_TOLERANCE_PCT_POINTS
    if kind == 'watts':
        if reading.power is None:
            return False
        return abs(reading.power - goal) <= goal * RecorderConfig.ADHERENCE_TOLERANCE_RELATIVE
    if kind == 'speed':
        if reading.speed is None:
            return False
        return abs(reading.speed - goal) <= goal * RecorderConfig.ADHERENCE_TOLERANCE_RELATIVE
    if kind == 'bpm':
        if reading.heart_rate is None:
            return False
        return abs(reading.heart_rate - goal) <= RecorderConfig.ADHERENCE_TOLERANCE_BPM
    if kind == 'cadence':
        if reading.cadence is None:
            return False
        return abs(reading.cadence - goal) <= RecorderConfig.ADHERENCE_TOLERANCE_CADENCE
    if kind == 'RPE':
        if reading.rpe is None:
            return True
        return abs(reading.rpe - goal) <= RecorderConfig.ADHERENCE_TOLERANCE_RPE

    logger.debug(f"Unknown target type {kind}; counting tick as in band")
    return True


class PlanAdherenceTracker:
    """Walks a flattened plan in step with the session clock.

    The step index only moves forward, driven by ``on_session_tick`` and
    ``sync`` or, for steps that end manually, ``advance_manually``.
    """

    def __init__(self, steps: Sequence[PlanStep], ftp: Optional[float] = None,
                 threshold_hr: Optional[float] = None, max_hr: Optional[float] = None):
        self._steps: Tuple[PlanStep, ...] = tuple(steps)
        self.ftp = ftp
        self.threshold_hr = threshold_hr
        self.max_hr = max_hr
        self._lock = threading.Lock()

        self._state = TrackerState.AWAITING_START
        self._index = -1
        self._step_started_at = 0.0
        self._step_start_distance = 0.0
        self._last_elapsed = 0.0
        self._last_distance = 0.0
        self._in_band_ticks = 0
        self._ticks = 0
        self._completed_last_tick = 0

    @property
    def steps(self) -> Tuple[PlanStep, ...]:
        return self._steps

    @property
    def index(self) -> int:
        return self._index

    @property
    def tracker_state(self) -> TrackerState:
        return self._state

    def _enter_step(self, index: int, started_at: float, start_distance: float):
        self._index = index
        self._step_started_at = started_at
        self._step_start_distance = start_distance
        if index >= len(self._steps):
            self._state = TrackerState.PLAN_COMPLETE
            logger.info("Plan complete")
        else:
            self._state = TrackerState.IN_STEP
            logger.debug(f"Entered step {index}: {self._steps[index].name}")

    def _complete_current(self, end_time: float, end_distance: float):
        self._state = TrackerState.STEP_COMPLETE
        self._completed_last_tick += 1
        self._enter_step(self._index + 1, end_time, end_distance)

    def _advance(self, elapsed: float, distance: Optional[float]):
        while self._state == TrackerState.IN_STEP:
            step = self._steps[self._index]
            duration = step.duration

            if duration is None:
                logger.warning(f"Skipping step {self._index} ('{step.name}'): no time or distance criterion")
                self._complete_current(self._step_started_at, self._step_start_distance)
            elif isinstance(duration, TimeDuration):
                end_time = self._step_started_at + duration.seconds
                if elapsed < end_time:
                    return
                self._complete_current(end_time, distance if distance is not None else self._step_start_distance)
            elif isinstance(duration, DistanceDuration):
                if distance is None:
                    return
                end_distance = self._step_start_distance + duration.meters
                if distance < end_distance:
                    return
                self._complete_current(elapsed, end_distance)
            else:
                # Until-finished and repetition steps end through advance_manually
                return

    def begin(self, elapsed: float = 0.0, distance: float = 0.0) -> AdherenceState:
        """Start the first step at the given session time.

        Without an explicit start the first tick starts the plan.
        """
        with self._lock:
            if self._state == TrackerState.AWAITING_START:
                self._enter_step(0, elapsed, distance)
                self._last_elapsed = elapsed
                self._last_distance = distance
            return self._view()

    def on_session_tick(self, elapsed: float, reading: Optional[Reading] = None,
                        distance: Optional[float] = None) -> AdherenceState:
        """Advance against the session clock and score the tick.

        Args:
            elapsed: Session time in seconds (moving time, so pauses do not
                consume step time)
            reading: Latest live values
            distance: Session distance in meters

        Returns:
            The tracker state after this tick
        """
        with self._lock:
            self._completed_last_tick = 0
            if self._state == TrackerState.PLAN_COMPLETE:
                return self._view()

            self._catch_up(elapsed, distance)

            if self._state == TrackerState.IN_STEP:
                self._ticks += 1
                target = self._steps[self._index].primary_target
                if target_in_band(target, reading or Reading(), self.ftp, self.threshold_hr, self.max_hr):
                    self._in_band_ticks += 1

            return self._view()

    def sync(self, elapsed: float, distance: Optional[float] = None) -> AdherenceState:
        """Move steps forward to the given session time without scoring a tick.

        Lets time-based steps finish while no sensor samples arrive.
        """
        with self._lock:
            if self._state == TrackerState.PLAN_COMPLETE:
                return self._view()

            index = self._index
            previously_completed = self._completed_last_tick
            self._completed_last_tick = 0
            self._catch_up(elapsed, distance)
            if self._index == index:
                self._completed_last_tick = previously_completed
            return self._view()

    def _catch_up(self, elapsed: float, distance: Optional[float]):
        if self._state == TrackerState.AWAITING_START:
            self._enter_step(0, elapsed, distance if distance is not None else 0.0)

        self._advance(elapsed, distance)
        self._last_elapsed = max(self._last_elapsed, elapsed)
        if distance is not None:
            self._last_distance = max(self._last_distance, distance)

    def advance_manually(self, elapsed: Optional[float] = None) -> AdherenceState:
        """Finish the current step now (used for until-finished steps)."""
        with self._lock:
            self._completed_last_tick = 0
            if self._state == TrackerState.IN_STEP:
                now = elapsed if elapsed is not None else self._last_elapsed
                logger.info(f"Step {self._index} finished manually")
                self._complete_current(now, self._last_distance)
                self._advance(now, None)
            return self._view()

    def state(self) -> AdherenceState:
        with self._lock:
            return self._view()

    def _view(self) -> AdherenceState:
        current = None
        elapsed_in_step = 0.0
        distance_in_step = 0.0
        if self._state == TrackerState.IN_STEP:
            current = self._steps[self._index]
            elapsed_in_step = max(0.0, self._last_elapsed - self._step_started_at)
            distance_in_step = max(0.0, self._last_distance - self._step_start_distance)

        return AdherenceState(
            state=self._state,
            step_index=self._index,
            step_count=len(self._steps),
            current_step=current,
            elapsed_in_step=elapsed_in_step,
            distance_in_step=distance_in_step,
            in_band_ticks=self._in_band_ticks,
            total_ticks=self._ticks,
            steps_completed=self._completed_last_tick,
        )
