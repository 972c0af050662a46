"""Data models for the activity recorder."""

from .sample import Sample, Position
from .session import RecorderStatus, SessionConfig, SessionState
from .zones import ZoneDefinition, ZoneCalculator
from .plan import (
    Plan, PlanStep, Step, RepeatedBlock, IntensityTarget,
    TimeDuration, DistanceDuration, RepetitionsDuration, UntilFinished,
    InvalidPlanStructure, MalformedPlanStep, parse_plan,
)

__all__ = [
    'Sample',
    'Position',
    'RecorderStatus',
    'SessionConfig',
    'SessionState',
    'ZoneDefinition',
    'ZoneCalculator',
    'Plan',
    'PlanStep',
    'Step',
    'RepeatedBlock',
    'IntensityTarget',
    'TimeDuration',
    'DistanceDuration',
    'RepetitionsDuration',
    'UntilFinished',
    'InvalidPlanStructure',
    'MalformedPlanStep',
    'parse_plan',
]
