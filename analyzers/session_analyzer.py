"""Post-hoc analysis of finished or imported sessions."""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from analyzers import training_metrics
from analyzers.metrics_aggregator import MetricsAggregator, MetricsSnapshot
from models.sample import Sample
from models.zones import ZoneCalculator
from plans.structure import PlanEstimate
from storage.sample_buffer import SealedBuffer

logger = logging.getLogger(__name__)


def samples_to_dataframe(samples: Sequence[Sample]) -> pd.DataFrame:
    """One row per sample with flat sensor columns."""
    rows = [sample.to_dict() for sample in samples]
    df = pd.DataFrame(rows, columns=[
        'timestamp', 'wall_time', 'power', 'heart_rate', 'cadence', 'speed',
        'latitude', 'longitude', 'altitude', 'distance',
    ])
    for column in ('timestamp', 'power', 'heart_rate', 'cadence', 'speed',
                   'latitude', 'longitude', 'altitude', 'distance'):
        df[column] = pd.to_numeric(df[column], errors='coerce')
    return df


def duration_compliance(planned_seconds: float, actual_seconds: float) -> float:
    """Score 0-100 for how closely the actual duration matched the plan."""
    if planned_seconds <= 0:
        return 100.0
    deviation = abs(actual_seconds / planned_seconds - 1.0)
    if deviation <= 0.05:
        return 100 - deviation / 0.05 * 10
    if deviation <= 0.10:
        return 90 - (deviation - 0.05) / 0.05 * 10
    if deviation <= 0.20:
        return 80 - (deviation - 0.10) / 0.10 * 20
    return max(0.0, 60 - (deviation - 0.20) * 100)


def tss_compliance(planned_tss: float, actual_tss: float) -> float:
    """Score 0-100; falling short is penalized more than overshooting."""
    if planned_tss <= 0:
        return 100.0
    ratio = actual_tss / planned_tss
    if ratio >= 1.0:
        excess = ratio - 1.0
        if excess <= 0.10:
            return 100 - excess * 50
        if excess <= 0.25:
            return 95 - (excess - 0.10) * 200
        return max(0.0, 65 - (excess - 0.25) * 100)
    deficit = 1.0 - ratio
    if deficit <= 0.05:
        return 100 - deficit * 100
    if deficit <= 0.15:
        return 95 - (deficit - 0.05) * 300
    return max(0.0, 65 - (deficit - 0.15) * 100)


class SessionAnalyzer:
    """Analyzer turning recorded samples into a summary of metrics and insights."""

    def __init__(self, ftp: Optional[float] = None, threshold_hr: Optional[float] = None,
                 threshold_pace: Optional[float] = None):
        self.ftp = ftp
        self.threshold_hr = threshold_hr
        self.threshold_pace = threshold_pace

    def analyze_session(self, session: Union[SealedBuffer, Sequence[Sample]],
                        plan_estimate: Optional[PlanEstimate] = None,
                        adherence_score: Optional[float] = None) -> Dict[str, Any]:
        """Analyze a session and return comprehensive metrics.

        Args:
            session: Sealed buffer handle or samples in recording order
            plan_estimate: Planned duration/TSS to score compliance against
            adherence_score: Live in-band fraction from the adherence tracker

        Returns:
            Dictionary of analysis sections
        """
        samples = list(session.samples) if isinstance(session, SealedBuffer) else list(session)
        df = samples_to_dataframe(samples)

        aggregator = MetricsAggregator(ftp=self.ftp, threshold_hr=self.threshold_hr)
        for sample in samples:
            aggregator.ingest(sample)
        totals = aggregator.snapshot()

        power_seconds = training_metrics.per_second_power(df['timestamp'], df['power'])

        analysis = {
            'summary': self._calculate_summary_metrics(totals),
            'power_analysis': self._analyze_power(df, power_seconds),
            'heart_rate_analysis': self._analyze_channel(df, 'heart_rate'),
            'speed_analysis': self._analyze_speed(df),
            'cadence_analysis': self._analyze_channel(df, 'cadence'),
            'elevation_analysis': self._analyze_elevation(df, totals),
            'zones': self._calculate_zone_distribution(totals),
            'efficiency': self._calculate_efficiency_metrics(totals),
        }

        if plan_estimate is not None:
            analysis['plan_compliance'] = self._calculate_plan_compliance(
                plan_estimate, analysis['summary'], adherence_score)

        if isinstance(session, SealedBuffer):
            analysis['session_id'] = session.session_id
            analysis['buffer_degraded'] = session.degraded

        return analysis

    def _calculate_summary_metrics(self, totals: MetricsSnapshot) -> Dict[str, Any]:
        np_value = totals.normalized_power
        return {
            'sample_count': totals.sample_count,
            'elapsed_seconds': totals.elapsed_seconds,
            'moving_seconds': totals.moving_seconds,
            'distance_km': totals.distance_m / 1000,
            'avg_power': totals.power.average,
            'max_power': totals.power.maximum,
            'avg_hr': totals.heart_rate.average,
            'max_hr': totals.heart_rate.maximum,
            'work_kj': totals.work_kj,
            'calories': totals.calories,
            'elevation_gain_m': totals.ascent_m,
            'elevation_loss_m': totals.descent_m,
            'normalized_power': np_value,
            'intensity_factor': training_metrics.intensity_factor(np_value, self.ftp),
            'training_stress_score': training_metrics.training_stress_score(
                totals.moving_seconds, np_value, self.ftp),
            'heart_rate_tss': training_metrics.heart_rate_tss(
                totals.heart_rate.average, self.threshold_hr, totals.moving_seconds),
            'running_tss': training_metrics.running_tss(
                training_metrics.pace_from_speed(totals.speed.average), self.threshold_pace,
                totals.moving_seconds),
            'variability_index': training_metrics.variability_index(np_value, totals.power.average),
            'vam': training_metrics.vam(totals.ascent_m, totals.moving_seconds),
        }

    def _analyze_power(self, df: pd.DataFrame, power_seconds: List[float]) -> Dict[str, Any]:
        power = df['power'].dropna()
        if power.empty:
            return {}

        return {
            'avg_power': float(power.mean()),
            'max_power': float(power.max()),
            'min_power': float(power.min()),
            'power_std': float(power.std()) if len(power) > 1 else 0.0,
            'normalized_power': training_metrics.normalized_power(power_seconds),
            'power_curve': training_metrics.mean_max_power(power_seconds),
            'power_distribution': {
                'p10': float(np.percentile(power, 10)),
                'p50': float(np.percentile(power, 50)),
                'p90': float(np.percentile(power, 90)),
            },
        }

    def _analyze_channel(self, df: pd.DataFrame, column: str) -> Dict[str, Any]:
        values = df[column].dropna()
        if values.empty:
            return {}
        return {
            f'avg_{column}': float(values.mean()),
            f'max_{column}': float(values.max()),
            f'min_{column}': float(values.min()),
        }

    def _analyze_speed(self, df: pd.DataFrame) -> Dict[str, Any]:
        speed = df['speed'].dropna()
        if speed.empty:
            return {}
        return {
            'avg_speed_kmh': float(speed.mean() * 3.6),
            'max_speed_kmh': float(speed.max() * 3.6),
        }

    def _analyze_elevation(self, df: pd.DataFrame, totals: MetricsSnapshot) -> Dict[str, Any]:
        elevation = {
            'total_ascent_m': totals.ascent_m,
            'total_descent_m': totals.descent_m,
            'gain_per_km': totals.elevation_gain_per_km,
        }
        track = df[['distance', 'altitude']].dropna()
        if len(track) > 1:
            elevation['grade'] = training_metrics.grade_analysis(track['distance'], track['altitude'])
        return elevation

    def _calculate_zone_distribution(self, totals: MetricsSnapshot) -> Dict[str, Any]:
        zones = {}
        if totals.power_zone_seconds is not None:
            zones['power'] = {
                'seconds': dict(zip([z.name for z in ZoneCalculator.POWER_ZONES], totals.power_zone_seconds)),
                'percent': ZoneCalculator.calculate_zone_distribution(
                    totals.power_zone_seconds, ZoneCalculator.POWER_ZONES),
            }
        if totals.hr_zone_seconds is not None:
            zones['heart_rate'] = {
                'seconds': dict(zip([z.name for z in ZoneCalculator.HEART_RATE_ZONES], totals.hr_zone_seconds)),
                'percent': ZoneCalculator.calculate_zone_distribution(
                    totals.hr_zone_seconds, ZoneCalculator.HEART_RATE_ZONES),
            }
        return zones

    def _calculate_efficiency_metrics(self, totals: MetricsSnapshot) -> Dict[str, Any]:
        return {
            'efficiency_factor': training_metrics.efficiency_factor(
                totals.heart_rate.average, totals.normalized_power, totals.power.average),
            'decoupling': totals.decoupling,
        }

    def _calculate_plan_compliance(self, estimate: PlanEstimate, summary: Dict[str, Any],
                                   adherence_score: Optional[float]) -> Dict[str, Any]:
        """Weighted compliance: duration 30%, TSS 25%, live adherence 25%."""
        duration_score = duration_compliance(estimate.duration_seconds, summary['moving_seconds'])
        weighted = duration_score * 0.3
        weight = 0.3

        tss_score = None
        if summary['training_stress_score'] is not None and estimate.tss:
            tss_score = tss_compliance(estimate.tss, summary['training_stress_score'])
            weighted += tss_score * 0.25
            weight += 0.25

        intensity_score = None
        if adherence_score is not None:
            intensity_score = adherence_score * 100
            weighted += intensity_score * 0.25
            weight += 0.25

        return {
            'overall_score': weighted / weight,
            'duration_compliance': duration_score,
            'tss_compliance': tss_score,
            'intensity_compliance': intensity_score,
            'duration_delta_s': summary['moving_seconds'] - estimate.duration_seconds,
            'tss_delta': (summary['training_stress_score'] - estimate.tss
                          if summary['training_stress_score'] is not None else None),
        }
