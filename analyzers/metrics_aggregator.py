"""Streaming accumulator for live session metrics."""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Tuple

from analyzers import training_metrics
from config.settings import RecorderConfig
from models.sample import Position, Sample
from models.zones import ZoneCalculator

logger = logging.getLogger(__name__)

CHANNELS = ('power', 'heart_rate', 'cadence', 'speed')


@dataclass(frozen=True)
class ChannelStats:
    count: int = 0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    average: Optional[float] = None
    current: Optional[float] = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable read of the aggregator's totals."""

    sample_count: int
    elapsed_seconds: float
    moving_seconds: float
    distance_m: float
    ascent_m: float
    descent_m: float
    power: ChannelStats
    heart_rate: ChannelStats
    cadence: ChannelStats
    speed: ChannelStats
    work_kj: float
    calories: Optional[float]
    rolling_power: Optional[float]
    normalized_power: Optional[float]
    decoupling: Optional[float]
    elevation_gain_per_km: Optional[float]
    power_zone_seconds: Optional[Tuple[int, ...]]
    hr_zone_seconds: Optional[Tuple[int, ...]]


def haversine_distance(a: Position, b: Position) -> float:
    """Great-circle distance in meters."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * RecorderConfig.EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class _Channel:
    __slots__ = ('count', 'total', 'minimum', 'maximum', 'current')

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.minimum = None
        self.maximum = None
        self.current = None

    def add(self, value: float):
        self.count += 1
        self.total += value
        self.current = value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def stats(self) -> ChannelStats:
        if not self.count:
            return ChannelStats()
        return ChannelStats(
            count=self.count,
            minimum=self.minimum,
            maximum=self.maximum,
            average=self.total / self.count,
            current=self.current,
        )


class MetricsAggregator:
    """Accumulates running totals, windowed power and zone time per sample.

    Power readings are first averaged per whole second; each completed
    second enters a FIFO rolling window of ``window_seconds`` entries. The
    4th power of every full-window average feeds normalized power.
    """

    def __init__(self, ftp: Optional[float] = None, threshold_hr: Optional[float] = None,
                 window_seconds: int = RecorderConfig.ROLLING_WINDOW_SECONDS):
        self.ftp = ftp
        self.threshold_hr = threshold_hr
        self.window_seconds = window_seconds
        self._lock = threading.Lock()

        self._channels = {name: _Channel() for name in CHANNELS}
        self._sample_count = 0
        self._first_timestamp = None
        self._last_timestamp = None
        self._moving_seconds = 0.0
        self._distance_m = 0.0
        self._ascent_m = 0.0
        self._descent_m = 0.0
        self._work_j = 0.0

        # Segment references, cleared on pause
        self._prev_timestamp = None
        self._prev_position = None
        self._prev_sensor_distance = None
        self._reference_altitude = None

        # Per-second bucket: [second, power_sum, power_count, hr_sum, hr_count, speed_sum, speed_count]
        self._bucket = None
        self._window: Deque[float] = deque(maxlen=window_seconds)
        self._window_sum = 0.0
        self._np_sum4 = 0.0
        self._np_count = 0
        self._second_power: List[Optional[float]] = []
        self._second_hr: List[Optional[float]] = []
        self._second_speed: List[Optional[float]] = []

        self._power_zone_time = [0.0] * len(ZoneCalculator.POWER_ZONES)
        self._hr_zone_time = [0.0] * len(ZoneCalculator.HEART_RATE_ZONES)

    def _validated(self, sample: Sample, channel: str) -> Optional[float]:
        value = getattr(sample, channel)
        if value is None:
            return None
        low, high = RecorderConfig.SENSOR_LIMITS[channel]
        if (isinstance(value, float) and math.isnan(value)) or not low <= value <= high:
            logger.debug(f"Dropping out-of-range {channel} reading: {value}")
            return None
        return float(value)

    def _sample_duration(self, timestamp: float) -> float:
        if self._prev_timestamp is None:
            return RecorderConfig.DEFAULT_SAMPLE_INTERVAL_S
        delta = timestamp - self._prev_timestamp
        if delta < 0:
            return 0.0
        if delta > RecorderConfig.MAX_SAMPLE_GAP_S:
            return RecorderConfig.DEFAULT_SAMPLE_INTERVAL_S
        return delta

    def ingest(self, sample: Sample):
        """Fold one sample into the running totals."""
        with self._lock:
            self._ingest_locked(sample)

    def _ingest_locked(self, sample: Sample):
        dt = self._sample_duration(sample.timestamp)
        self._prev_timestamp = sample.timestamp
        self._sample_count += 1
        self._moving_seconds += dt

        if self._first_timestamp is None:
            self._first_timestamp = sample.timestamp
        if self._last_timestamp is None or sample.timestamp > self._last_timestamp:
            self._last_timestamp = sample.timestamp

        values = {channel: self._validated(sample, channel) for channel in CHANNELS}
        for channel, value in values.items():
            if value is not None:
                self._channels[channel].add(value)

        self._update_distance(sample, values['speed'], dt)
        self._update_elevation(sample.altitude)

        power = values['power']
        heart_rate = values['heart_rate']
        if power is not None:
            self._work_j += power * dt
            zone = ZoneCalculator.power_zone(power, self.ftp)
            if zone is not None:
                self._power_zone_time[zone] += dt
        if heart_rate is not None:
            zone = ZoneCalculator.heart_rate_zone(heart_rate, self.threshold_hr)
            if zone is not None:
                self._hr_zone_time[zone] += dt

        self._add_to_bucket(sample.timestamp, power, heart_rate, values['speed'])

    def _update_distance(self, sample: Sample, speed: Optional[float], dt: float):
        if sample.distance is not None:
            if self._prev_sensor_distance is not None and sample.distance > self._prev_sensor_distance:
                self._distance_m += sample.distance - self._prev_sensor_distance
            self._prev_sensor_distance = sample.distance
        elif sample.position is not None:
            if self._prev_position is not None:
                step = haversine_distance(self._prev_position, sample.position)
                if RecorderConfig.DISTANCE_MIN_DELTA_M < step < RecorderConfig.DISTANCE_MAX_DELTA_M:
                    self._distance_m += step
                elif step >= RecorderConfig.DISTANCE_MAX_DELTA_M:
                    logger.debug(f"Ignoring GPS jump of {step:.0f} m")
        elif speed is not None:
            self._distance_m += speed * dt

        if sample.position is not None:
            self._prev_position = sample.position

    def _update_elevation(self, altitude: Optional[float]):
        if altitude is None:
            return
        if self._reference_altitude is None:
            self._reference_altitude = altitude
            return
        delta = altitude - self._reference_altitude
        if abs(delta) < RecorderConfig.ELEVATION_NOISE_THRESHOLD_M:
            return
        if delta > 0:
            self._ascent_m += delta
        else:
            self._descent_m -= delta
        self._reference_altitude = altitude

    def _add_to_bucket(self, timestamp: float, power: Optional[float], heart_rate: Optional[float],
                       speed: Optional[float]):
        second = math.floor(timestamp)
        if self._bucket is not None and self._bucket[0] != second:
            self._close_bucket()
        if self._bucket is None:
            self._bucket = [second, 0.0, 0, 0.0, 0, 0.0, 0]
        if power is not None:
            self._bucket[1] += power
            self._bucket[2] += 1
        if heart_rate is not None:
            self._bucket[3] += heart_rate
            self._bucket[4] += 1
        if speed is not None:
            self._bucket[5] += speed
            self._bucket[6] += 1

    @staticmethod
    def _bucket_means(bucket) -> Tuple[Optional[float], Optional[float], Optional[float]]:
        _, power_sum, power_count, hr_sum, hr_count, speed_sum, speed_count = bucket
        return (power_sum / power_count if power_count else None,
                hr_sum / hr_count if hr_count else None,
                speed_sum / speed_count if speed_count else None)

    def _close_bucket(self):
        power, heart_rate, speed = self._bucket_means(self._bucket)
        self._bucket = None
        if power is None and heart_rate is None and speed is None:
            return

        self._second_power.append(power)
        self._second_hr.append(heart_rate)
        self._second_speed.append(speed)
        if power is None:
            return

        if len(self._window) == self.window_seconds:
            self._window_sum -= self._window[0]
        self._window.append(power)
        self._window_sum += power
        if len(self._window) == self.window_seconds:
            self._np_sum4 += (self._window_sum / self.window_seconds) ** 4
            self._np_count += 1

    def pause(self):
        """End the current segment; the next sample starts a new one."""
        with self._lock:
            if self._bucket is not None:
                self._close_bucket()
            self._prev_timestamp = None
            self._prev_position = None
            self._prev_sensor_distance = None
            self._reference_altitude = None

    def _open_bucket_power(self) -> Optional[float]:
        if self._bucket is None or not self._bucket[2]:
            return None
        return self._bucket[1] / self._bucket[2]

    def _current_np(self) -> Tuple[Optional[float], Optional[float]]:
        window = list(self._window)
        sum4, count = self._np_sum4, self._np_count
        open_power = self._open_bucket_power()
        if open_power is not None:
            window = (window + [open_power])[-self.window_seconds:]
            if len(window) == self.window_seconds:
                sum4 += (sum(window) / self.window_seconds) ** 4
                count += 1

        rolling = sum(window) / len(window) if window else None
        normalized = (sum4 / count) ** 0.25 if count else None
        return rolling, normalized

    def _per_second_series(self) -> Tuple[List[Optional[float]], List[Optional[float]], List[Optional[float]]]:
        power, hr, speed = list(self._second_power), list(self._second_hr), list(self._second_speed)
        if self._bucket is not None:
            open_power, open_hr, open_speed = self._bucket_means(self._bucket)
            if open_power is not None or open_hr is not None or open_speed is not None:
                power.append(open_power)
                hr.append(open_hr)
                speed.append(open_speed)
        return power, hr, speed

    def _decoupling(self, power_series, hr_series, speed_series) -> Optional[float]:
        """Power:HR drift, or speed:HR drift for sessions without power."""
        if any(value is not None for value in power_series):
            return training_metrics.decoupling(power_series, hr_series)
        return training_metrics.decoupling(speed_series, hr_series)

    def totals(self) -> Tuple[float, float]:
        """Moving seconds and distance without building a full snapshot."""
        with self._lock:
            return self._moving_seconds, self._distance_m

    def per_second_series(self) -> Tuple[List[Optional[float]], List[Optional[float]], List[Optional[float]]]:
        """Copies of the per-second power, heart rate and speed series."""
        with self._lock:
            return self._per_second_series()

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            rolling, normalized = self._current_np()
            power_series, hr_series, speed_series = self._per_second_series()

            elapsed = 0.0
            if self._first_timestamp is not None:
                elapsed = self._last_timestamp - self._first_timestamp

            work_kj = self._work_j / 1000
            gain_per_km = None
            if self._distance_m > 0:
                gain_per_km = self._ascent_m / (self._distance_m / 1000)

            power_zones = None
            if self.ftp:
                power_zones = tuple(int(seconds) for seconds in self._power_zone_time)
            hr_zones = None
            if self.threshold_hr:
                hr_zones = tuple(int(seconds) for seconds in self._hr_zone_time)

            power_stats = self._channels['power'].stats()
            return MetricsSnapshot(
                sample_count=self._sample_count,
                elapsed_seconds=elapsed,
                moving_seconds=self._moving_seconds,
                distance_m=self._distance_m,
                ascent_m=self._ascent_m,
                descent_m=self._descent_m,
                power=power_stats,
                heart_rate=self._channels['heart_rate'].stats(),
                cadence=self._channels['cadence'].stats(),
                speed=self._channels['speed'].stats(),
                work_kj=work_kj,
                calories=work_kj * RecorderConfig.KCAL_PER_KJ if power_stats.count else None,
                rolling_power=rolling,
                normalized_power=normalized,
                decoupling=self._decoupling(power_series, hr_series, speed_series),
                elevation_gain_per_km=gain_per_km,
                power_zone_seconds=power_zones,
                hr_zone_seconds=hr_zones,
            )
