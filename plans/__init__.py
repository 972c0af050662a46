"""Structured workout plans: flattening, estimates and live adherence."""

from .structure import (
    DurationEstimate, PlanEstimate, flatten, expand_block, replace_segment,
    estimate_duration, estimate_tss, time_remaining,
)
from .adherence import AdherenceState, PlanAdherenceTracker, Reading, TrackerState

__all__ = [
    'DurationEstimate',
    'PlanEstimate',
    'flatten',
    'expand_block',
    'replace_segment',
    'estimate_duration',
    'estimate_tss',
    'time_remaining',
    'AdherenceState',
    'PlanAdherenceTracker',
    'Reading',
    'TrackerState',
]
