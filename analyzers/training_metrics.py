"""Stateless training metric calculations.

Every function returns ``None`` when the inputs do not support the metric
(missing FTP, too little data) instead of raising.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from config.settings import RecorderConfig
from models.zones import ZoneCalculator, ZoneDefinition

logger = logging.getLogger(__name__)

CTL_ALPHA = 1 - math.exp(-1 / RecorderConfig.CTL_TIME_CONSTANT_DAYS)
ATL_ALPHA = 1 - math.exp(-1 / RecorderConfig.ATL_TIME_CONSTANT_DAYS)

GRADE_BINS = [-np.inf, -5, -2, 2, 5, 8, np.inf]
GRADE_LABELS = ['descent_steep', 'descent', 'flat', 'climb', 'climb_steep', 'climb_very_steep']


@dataclass(frozen=True)
class TrainingLoad:
    ctl: float
    atl: float
    tsb: float


def per_second_power(timestamps: Sequence[float], power_values: Sequence[Optional[float]]) -> List[float]:
    """Collapse samples sharing a whole second into their mean.

    Samples without a power reading are ignored. The result is ordered by
    second, so the arrival order of samples within a second does not matter.
    """
    df = pd.DataFrame({'timestamp': timestamps, 'power': power_values}, dtype=float).dropna()
    if df.empty:
        return []
    seconds = np.floor(df['timestamp']).astype(np.int64)
    return df.groupby(seconds, sort=True)['power'].mean().tolist()


def normalized_power(power_values: Sequence[float],
                     window: int = RecorderConfig.ROLLING_WINDOW_SECONDS) -> Optional[float]:
    """Calculate normalized power from 1Hz power values.

    Each full 30-second rolling average is raised to the 4th power; the
    4th root of their mean is NP. Returns None below one full window.
    """
    power_series = pd.Series(power_values, dtype=float).dropna()
    if len(power_series) < window:
        return None

    rolling_avg = power_series.rolling(window=window, min_periods=window).mean().dropna()
    normalized = (rolling_avg ** 4).mean() ** 0.25
    return float(normalized)


def intensity_factor(np_value: Optional[float], ftp: Optional[float]) -> Optional[float]:
    if np_value is None or not ftp or ftp <= 0:
        return None
    return np_value / ftp


def training_stress_score(duration_seconds: float, np_value: Optional[float],
                          ftp: Optional[float]) -> Optional[float]:
    """TSS = (duration × NP × IF) / (FTP × 3600) × 100."""
    if_value = intensity_factor(np_value, ftp)
    if if_value is None:
        return None
    if duration_seconds <= 0:
        return 0.0
    return (duration_seconds * np_value * if_value) / (ftp * 3600) * 100


def heart_rate_tss(avg_hr: Optional[float], threshold_hr: Optional[float],
                   duration_seconds: float) -> Optional[float]:
    """hrTSS = (avg HR / threshold HR)² × hours × 100."""
    if not avg_hr or not threshold_hr or threshold_hr <= 0:
        return None
    if duration_seconds <= 0:
        return 0.0
    return (avg_hr / threshold_hr) ** 2 * (duration_seconds / 3600) * 100


def running_tss(avg_pace: Optional[float], threshold_pace: Optional[float],
                moving_seconds: float) -> Optional[float]:
    """rTSS = (threshold pace / avg pace)² × hours × 100.

    Paces are in seconds per kilometer, so a faster average pace (smaller
    number) gives an intensity above 1.
    """
    if not avg_pace or avg_pace <= 0 or threshold_pace is None:
        return None
    if threshold_pace <= 0 or moving_seconds <= 0:
        return 0.0
    return (threshold_pace / avg_pace) ** 2 * (moving_seconds / 3600) * 100


def pace_from_speed(speed: Optional[float]) -> Optional[float]:
    """Seconds per kilometer for a speed in m/s."""
    if not speed or speed <= 0:
        return None
    return 1000 / speed


def variability_index(np_value: Optional[float], avg_power: Optional[float]) -> Optional[float]:
    if np_value is None or not avg_power or avg_power <= 0:
        return None
    return np_value / avg_power


def efficiency_factor(avg_hr: Optional[float], np_value: Optional[float] = None,
                      avg_power: Optional[float] = None) -> Optional[float]:
    """NP / avg HR, falling back to avg power / avg HR without NP."""
    output = np_value if np_value is not None else avg_power
    if output is None or not avg_hr or avg_hr <= 0:
        return None
    return output / avg_hr


def decoupling(output_values: Sequence[Optional[float]],
               hr_values: Sequence[Optional[float]]) -> Optional[float]:
    """Percent change of the output:HR ratio from the first to the second half.

    ``output_values`` is power or speed, aligned index-for-index with
    ``hr_values``. Positive values mean more output per heartbeat late in
    the session.
    """
    df = pd.DataFrame({'output': output_values, 'hr': hr_values}, dtype=float)
    if len(df) < 2:
        return None

    mid_point = len(df) // 2
    first_half = df.iloc[:mid_point]
    second_half = df.iloc[mid_point:]

    first_output = first_half['output'].mean()
    second_output = second_half['output'].mean()
    first_hr = first_half['hr'].mean()
    second_hr = second_half['hr'].mean()

    if any(pd.isna(v) for v in (first_output, second_output, first_hr, second_hr)):
        return None
    if first_hr <= 0 or second_hr <= 0 or first_output <= 0:
        return None

    first_ratio = first_output / first_hr
    second_ratio = second_output / second_hr
    return float((second_ratio - first_ratio) / first_ratio * 100)


def _daily_tss_series(daily_tss: Union[Mapping[date, float], Sequence[float], pd.Series],
                      end: Optional[date] = None) -> pd.Series:
    if isinstance(daily_tss, pd.Series):
        series = daily_tss.copy()
    elif isinstance(daily_tss, Mapping):
        series = pd.Series(daily_tss, dtype=float)
    else:
        return pd.Series(list(daily_tss), dtype=float).fillna(0.0)

    if series.empty:
        return series.astype(float)

    series.index = pd.to_datetime(series.index).normalize()
    series = series.astype(float).groupby(level=0).sum().sort_index()
    last = pd.Timestamp(end) if end is not None else series.index.max()
    full_range = pd.date_range(series.index.min(), last, freq='D')
    return series.reindex(full_range, fill_value=0.0).fillna(0.0)


def _ewma(values: pd.Series, alpha: float, initial: float) -> np.ndarray:
    seeded = pd.concat([pd.Series([initial], dtype=float), values.reset_index(drop=True)], ignore_index=True)
    return seeded.ewm(alpha=alpha, adjust=False).mean().iloc[1:].to_numpy()


def training_load_series(daily_tss: Union[Mapping[date, float], Sequence[float], pd.Series],
                         initial_ctl: float = 0.0, initial_atl: float = 0.0,
                         end: Optional[date] = None) -> pd.DataFrame:
    """Compute CTL, ATL and TSB for every day of a TSS history.

    Args:
        daily_tss: Either a date-keyed mapping/Series (several entries on the
            same day are summed, missing days count as zero TSS) or a plain
            sequence of consecutive daily values
        initial_ctl: CTL before the first day
        initial_atl: ATL before the first day
        end: Extend a dated history with zero-TSS days up to this date

    Returns:
        DataFrame with ``tss``, ``ctl``, ``atl`` and ``tsb`` columns
    """
    tss = _daily_tss_series(daily_tss, end=end)
    if tss.empty:
        return pd.DataFrame(columns=['tss', 'ctl', 'atl', 'tsb'], dtype=float)

    ctl = _ewma(tss, CTL_ALPHA, initial_ctl)
    atl = _ewma(tss, ATL_ALPHA, initial_atl)
    return pd.DataFrame({'tss': tss.to_numpy(), 'ctl': ctl, 'atl': atl, 'tsb': ctl - atl}, index=tss.index)


def training_load(daily_tss, initial_ctl: float = 0.0, initial_atl: float = 0.0,
                  end: Optional[date] = None) -> TrainingLoad:
    """CTL/ATL/TSB as of the last day of the history."""
    series = training_load_series(daily_tss, initial_ctl, initial_atl, end=end)
    if series.empty:
        return TrainingLoad(ctl=initial_ctl, atl=initial_atl, tsb=initial_ctl - initial_atl)
    last = series.iloc[-1]
    return TrainingLoad(ctl=float(last['ctl']), atl=float(last['atl']), tsb=float(last['tsb']))


def project_ctl(current_ctl: float, planned_tss: Iterable[float]) -> float:
    ctl = current_ctl
    for tss in planned_tss:
        ctl = tss * CTL_ALPHA + ctl * (1 - CTL_ALPHA)
    return ctl


def recommended_tss(current_ctl: float, target_ctl: float, weekly_ramp_rate: float = 6.0) -> float:
    """Daily TSS that raises CTL by ``weekly_ramp_rate`` per week toward a target."""
    if current_ctl >= target_ctl:
        return float(round(current_ctl))
    daily_ramp = weekly_ramp_rate / 7
    tss = (current_ctl + daily_ramp) / CTL_ALPHA - current_ctl * (1 - CTL_ALPHA) / CTL_ALPHA
    return float(max(0.0, round(tss)))


def form_status(tsb: float) -> str:
    if tsb > 25:
        return 'fresh'
    if tsb > 5:
        return 'optimal'
    if tsb >= -10:
        return 'neutral'
    if tsb >= -30:
        return 'tired'
    return 'overreaching'


def analyze_training_load(load: TrainingLoad) -> Dict[str, str]:
    """Label fitness, fatigue and form levels for a training load."""
    def level(value: float) -> str:
        if value < 40:
            return 'low'
        if value < 60:
            return 'moderate'
        if value < 80:
            return 'high'
        return 'very_high'

    if load.tsb > 10:
        form = 'optimal'
    elif load.tsb > -10:
        form = 'good'
    elif load.tsb > -30:
        form = 'tired'
    else:
        form = 'very_tired'

    return {
        'fitness_level': level(load.ctl),
        'fatigue_level': level(load.atl),
        'form': form,
        'form_status': form_status(load.tsb),
    }


def vam(ascent_m: float, moving_seconds: float) -> Optional[float]:
    """Vertical ascent in meters per hour of moving time."""
    if moving_seconds is None or moving_seconds <= 0:
        return None
    return ascent_m / (moving_seconds / 3600)


def _distance_window_indices(distance: np.ndarray, half_window_m: float):
    left = np.searchsorted(distance, distance - half_window_m, side='left')
    right = np.searchsorted(distance, distance + half_window_m, side='right') - 1
    left = np.clip(left, 0, len(distance) - 1)
    right = np.clip(right, 0, len(distance) - 1)
    return left, right


def gradient_series(distance: Sequence[float], altitude: Sequence[float],
                    window_m: float = 10.0) -> List[float]:
    """Percent grade at each point over a centred distance window.

    Grades are clipped to ±30 %, lightly smoothed with a 5-point rolling
    median, and short gaps are interpolated.
    """
    n = len(distance)
    if n == 0:
        return []

    dist = pd.Series(distance, dtype=float).ffill().fillna(0.0).cummax().to_numpy()
    elev = np.asarray(altitude, dtype=float)
    left, right = _distance_window_indices(dist, window_m / 2)

    gradients = []
    for i in range(n):
        j, k = left[i], right[i]
        delta_dist = dist[k] - dist[j]
        if delta_dist >= 1 and not (np.isnan(elev[j]) or np.isnan(elev[k])):
            grad = 100 * (elev[k] - elev[j]) / delta_dist
            gradients.append(float(np.clip(grad, -30, 30)))
        else:
            gradients.append(np.nan)

    smoothed = pd.Series(gradients).rolling(5, center=True, min_periods=1).median()
    smoothed = smoothed.interpolate(limit=3, limit_direction='both')
    return smoothed.tolist()


def grade_analysis(distance: Sequence[float], altitude: Sequence[float],
                   window_m: float = 10.0) -> Optional[Dict[str, object]]:
    """Summarize grade: average, extremes and share of points per grade band."""
    grades = pd.Series(gradient_series(distance, altitude, window_m)).dropna()
    if grades.empty:
        return None

    bands = pd.cut(grades, bins=GRADE_BINS, labels=GRADE_LABELS)
    shares = bands.value_counts(normalize=True).reindex(GRADE_LABELS, fill_value=0.0) * 100

    return {
        'avg_grade': float(grades.mean()),
        'max_grade': float(grades.max()),
        'min_grade': float(grades.min()),
        'distribution': {label: float(share) for label, share in shares.items()},
    }


def power_zone_index(power: float, ftp: Optional[float]) -> Optional[int]:
    return ZoneCalculator.power_zone(power, ftp)


def hr_zone_index(heart_rate: float, threshold_hr: Optional[float]) -> Optional[int]:
    return ZoneCalculator.heart_rate_zone(heart_rate, threshold_hr)


def zone_distribution(values: Sequence[Optional[float]], threshold: Optional[float],
                      zones: List[ZoneDefinition],
                      durations: Optional[Sequence[float]] = None) -> Optional[Dict[str, float]]:
    """Seconds spent in each zone.

    Each value counts for its matching entry in ``durations`` (1 second per
    value when omitted). Missing values are skipped.
    """
    if not threshold or threshold <= 0:
        return None

    seconds = [0.0] * len(zones)
    if durations is None:
        durations = [1.0] * len(values)
    for value, dt in zip(values, durations):
        if value is None or (isinstance(value, float) and math.isnan(value)):
            continue
        index = ZoneCalculator.zone_index(value, threshold, zones)
        seconds[index] += dt

    return {zone.name: secs for zone, secs in zip(zones, seconds)}


def mean_max_power(power_values: Sequence[float],
                   durations: Sequence[int] = (5, 30, 60, 300, 600, 1200, 1800, 3600)) -> Dict[int, float]:
    """Best average power for each duration (1Hz input)."""
    series = pd.Series(power_values, dtype=float).fillna(0.0)
    curve = {}
    for duration in durations:
        if len(series) < duration:
            continue
        curve[duration] = float(series.rolling(window=duration).mean().max())
    return curve
