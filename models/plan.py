"""Structured workout plan models and boundary validation."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class InvalidPlanStructure(ValueError):
    """Raised when a raw plan cannot be turned into plan nodes."""


class MalformedPlanStep(ValueError):
    """Raised when a step has no usable duration criterion."""


TARGET_TYPES = ('%FTP', '%MaxHR', '%ThresholdHR', 'watts', 'bpm', 'speed', 'cadence', 'RPE')

# Order in which a step's targets are considered for estimation and adherence
TARGET_PRIORITY = ('%FTP', 'watts', '%ThresholdHR', '%MaxHR', 'bpm', 'speed', 'cadence', 'RPE')


@dataclass(frozen=True)
class TimeDuration:
    seconds: float


@dataclass(frozen=True)
class DistanceDuration:
    meters: float


@dataclass(frozen=True)
class RepetitionsDuration:
    count: int


@dataclass(frozen=True)
class UntilFinished:
    pass


Duration = Union[TimeDuration, DistanceDuration, RepetitionsDuration, UntilFinished]


@dataclass(frozen=True)
class IntensityTarget:
    """Single intensity target, e.g. 90 %FTP or 150 bpm."""

    type: str
    intensity: float


@dataclass(frozen=True)
class Step:
    """Atomic plan instruction as authored."""

    name: str
    duration: Optional[Duration]
    targets: Tuple[IntensityTarget, ...] = ()
    notes: Optional[str] = None


@dataclass(frozen=True)
class RepeatedBlock:
    """Pattern of steps repeated ``repetitions`` times."""

    name: str
    steps: Tuple[Step, ...]
    repetitions: int = 1


PlanNode = Union[Step, RepeatedBlock]


@dataclass(frozen=True)
class PlanStep:
    """Flattened plan step with provenance of the block it came from."""

    name: str
    duration: Optional[Duration]
    targets: Tuple[IntensityTarget, ...] = ()
    notes: Optional[str] = None
    segment_name: Optional[str] = None
    segment_index: Optional[int] = None
    repetition_count: Optional[int] = None

    @property
    def primary_target(self) -> Optional[IntensityTarget]:
        """Target used for estimation and adherence scoring."""
        if not self.targets:
            return None
        for target_type in TARGET_PRIORITY:
            for target in self.targets:
                if target.type == target_type:
                    return target
        return self.targets[0]

    def require_duration(self) -> Duration:
        if self.duration is None:
            raise MalformedPlanStep(f"Step '{self.name}' has no duration")
        return self.duration


@dataclass(frozen=True)
class Plan:
    """A named plan: an ordered mix of steps and repeated blocks."""

    name: str
    nodes: Tuple[Union[PlanNode, PlanStep], ...] = field(default_factory=tuple)


def _parse_duration(raw: Any, step_name: str) -> Optional[Duration]:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return TimeDuration(seconds=float(raw)) if raw > 0 else None
    if not isinstance(raw, dict):
        return None

    kind = raw.get('type')
    try:
        if kind == 'time' and float(raw['seconds']) > 0:
            return TimeDuration(seconds=float(raw['seconds']))
        if kind == 'distance' and float(raw['meters']) > 0:
            return DistanceDuration(meters=float(raw['meters']))
        if kind == 'repetitions' and int(raw['count']) > 0:
            return RepetitionsDuration(count=int(raw['count']))
        if kind == 'untilFinished':
            return UntilFinished()
    except (KeyError, TypeError, ValueError):
        pass

    logger.warning(f"Step '{step_name}' has an unusable duration: {raw!r}")
    return None


def _parse_targets(raw: Any, step_name: str) -> Tuple[IntensityTarget, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise InvalidPlanStructure(f"Targets of step '{step_name}' must be a list")

    targets = []
    for item in raw:
        if not isinstance(item, dict) or item.get('type') not in TARGET_TYPES:
            raise InvalidPlanStructure(f"Unknown target in step '{step_name}': {item!r}")
        try:
            intensity = float(item['intensity'])
        except (KeyError, TypeError, ValueError):
            raise InvalidPlanStructure(f"Target in step '{step_name}' has no intensity")
        targets.append(IntensityTarget(type=item['type'], intensity=intensity))
    return tuple(targets)


def _parse_step(raw: Dict[str, Any]) -> Step:
    name = str(raw.get('name') or 'Step')
    duration = _parse_duration(raw.get('duration'), name)
    if duration is None:
        logger.warning(f"Step '{name}' has no time or distance criterion")
    return Step(
        name=name,
        duration=duration,
        targets=_parse_targets(raw.get('targets'), name),
        notes=raw.get('notes'),
    )


def _parse_block(raw: Dict[str, Any], repetitions: Any) -> RepeatedBlock:
    name = raw.get('name')
    if not name:
        raise InvalidPlanStructure("Repeated block requires a name")
    try:
        count = int(repetitions)
    except (TypeError, ValueError):
        raise InvalidPlanStructure(f"Block '{name}' has invalid repetitions: {repetitions!r}")
    if count < 1:
        raise InvalidPlanStructure(f"Block '{name}' must repeat at least once")

    raw_steps = raw.get('steps')
    if not isinstance(raw_steps, list) or not raw_steps:
        raise InvalidPlanStructure(f"Block '{name}' requires a non-empty list of steps")

    steps = []
    for item in raw_steps:
        if not isinstance(item, dict):
            raise InvalidPlanStructure(f"Invalid step in block '{name}': {item!r}")
        if 'steps' in item:
            raise InvalidPlanStructure(f"Nested repetition inside block '{name}' is not supported")
        steps.append(_parse_step(item))

    return RepeatedBlock(name=str(name), steps=tuple(steps), repetitions=count)


def parse_node(raw: Any) -> PlanNode:
    """Validate one raw node (step dict or block dict)."""
    if not isinstance(raw, dict):
        raise InvalidPlanStructure(f"Plan node must be a mapping, got {type(raw).__name__}")
    if 'steps' in raw:
        repetitions = raw.get('repeat', raw.get('repetitions', 1))
        return _parse_block(raw, repetitions)
    return _parse_step(raw)


def parse_plan(raw: Any) -> Plan:
    """Validate a raw plan structure.

    Accepts the version 2 shape ``{"version": 2, "intervals": [...]}``, a
    mapping with a ``steps`` list that mixes steps and blocks, or a bare
    list of nodes.

    Raises:
        InvalidPlanStructure: If the structure cannot be interpreted
    """
    name = 'Plan'
    if isinstance(raw, dict):
        name = str(raw.get('name') or name)
        if 'intervals' in raw:
            intervals = raw['intervals']
            if not isinstance(intervals, list) or not intervals:
                raise InvalidPlanStructure("Plan intervals must be a non-empty list")
            nodes = []
            for interval in intervals:
                if not isinstance(interval, dict):
                    raise InvalidPlanStructure(f"Invalid interval: {interval!r}")
                nodes.append(_parse_block(interval, interval.get('repetitions', 1)))
            return Plan(name=name, nodes=tuple(nodes))
        raw_nodes = raw.get('steps')
    else:
        raw_nodes = raw

    if not isinstance(raw_nodes, list):
        raise InvalidPlanStructure("Plan must contain a list of steps or intervals")

    return Plan(name=name, nodes=tuple(parse_node(item) for item in raw_nodes))
