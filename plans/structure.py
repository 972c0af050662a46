"""Plan flattening and planning estimates."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from config.settings import RecorderConfig
from models.plan import (
    DistanceDuration, InvalidPlanStructure, IntensityTarget, Plan, PlanNode, PlanStep,
    RepeatedBlock, Step, TimeDuration,
)
from models.zones import ZoneCalculator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DurationEstimate:
    seconds: float
    incomplete_steps: Tuple[int, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.incomplete_steps


@dataclass(frozen=True)
class PlanEstimate:
    """Planning-screen estimate for a flattened plan."""

    duration_seconds: float
    tss: float
    intensity_factor: float
    incomplete_steps: Tuple[int, ...] = ()
    power_zone_seconds: Tuple[float, ...] = field(default_factory=tuple)
    hr_zone_seconds: Tuple[float, ...] = field(default_factory=tuple)


def expand_block(block: RepeatedBlock) -> List[PlanStep]:
    """Expand a block of N steps repeated K times into N×K tagged steps."""
    expanded = []
    for repetition in range(block.repetitions):
        for step in block.steps:
            expanded.append(PlanStep(
                name=step.name,
                duration=step.duration,
                targets=step.targets,
                notes=step.notes,
                segment_name=block.name,
                segment_index=repetition,
                repetition_count=block.repetitions,
            ))
    return expanded


def flatten(plan: Union[Plan, Sequence[Union[PlanNode, PlanStep]]]) -> Tuple[PlanStep, ...]:
    """Turn steps and repeated blocks into an ordered flat timeline.

    Already flattened steps pass through unchanged, so flattening twice
    gives the same result.
    """
    nodes = plan.nodes if isinstance(plan, Plan) else plan
    flattened: List[PlanStep] = []
    for node in nodes:
        if isinstance(node, PlanStep):
            flattened.append(node)
        elif isinstance(node, Step):
            flattened.append(PlanStep(
                name=node.name, duration=node.duration, targets=node.targets, notes=node.notes,
            ))
        elif isinstance(node, RepeatedBlock):
            flattened.extend(expand_block(node))
        else:
            raise InvalidPlanStructure(f"Unsupported plan node: {node!r}")
    return tuple(flattened)


def replace_segment(flattened: Sequence[PlanStep], block: RepeatedBlock) -> Tuple[PlanStep, ...]:
    """Regenerate the steps of one edited repeated block.

    Only steps tagged with the block's name are removed. The regenerated
    steps take the position of the first removed step, or go at the end if
    the block was not present.
    """
    kept: List[PlanStep] = []
    insert_at = None
    for step in flattened:
        if step.segment_name == block.name and step.repetition_count is not None:
            if insert_at is None:
                insert_at = len(kept)
            continue
        kept.append(step)

    regenerated = expand_block(block)
    if insert_at is None:
        insert_at = len(kept)
    logger.debug(f"Re-expanded segment '{block.name}' into {len(regenerated)} steps at index {insert_at}")
    return tuple(kept[:insert_at] + regenerated + kept[insert_at:])


def step_duration_seconds(step: PlanStep, pace_mps: Optional[float] = None) -> Optional[float]:
    """Estimated seconds for one step, or None when it cannot be estimated."""
    duration = step.duration
    if isinstance(duration, TimeDuration):
        return duration.seconds
    if isinstance(duration, DistanceDuration) and pace_mps and pace_mps > 0:
        return duration.meters / pace_mps
    return None


def estimate_duration(flattened: Sequence[PlanStep], pace_mps: Optional[float] = None) -> DurationEstimate:
    """Sum step durations.

    Distance steps need a pace; without one they contribute zero and are
    flagged incomplete, as are until-finished, repetition and malformed
    steps.
    """
    total = 0.0
    incomplete = []
    for index, step in enumerate(flattened):
        seconds = step_duration_seconds(step, pace_mps)
        if seconds is None:
            incomplete.append(index)
            continue
        total += seconds
    return DurationEstimate(seconds=total, incomplete_steps=tuple(incomplete))


def target_intensity_factor(target: Optional[IntensityTarget], ftp: Optional[float] = None,
                            threshold_hr: Optional[float] = None) -> float:
    """Approximate intensity factor implied by a step target."""
    if target is None:
        return RecorderConfig.DEFAULT_STEP_INTENSITY

    if target.type in ('%FTP', '%ThresholdHR'):
        return target.intensity / 100
    if target.type == '%MaxHR':
        return target.intensity * RecorderConfig.MAX_HR_TO_THRESHOLD_RATIO / 100
    if target.type == 'watts' and ftp:
        return target.intensity / ftp
    if target.type == 'bpm' and threshold_hr:
        return target.intensity / threshold_hr
    if target.type == 'RPE':
        return target.intensity / 10
    return RecorderConfig.DEFAULT_STEP_INTENSITY


def estimate_tss(flattened: Sequence[PlanStep], ftp: Optional[float],
                 threshold_hr: Optional[float] = None,
                 pace_mps: Optional[float] = None) -> Optional[PlanEstimate]:
    """Estimate duration, TSS and IF for a flattened plan.

    Each step's power is FTP × step IF; its TSS follows the standard
    formula, which reduces to hours × IF² × 100. Overall IF is the
    duration-weighted mean. Returns None without FTP.
    """
    if not ftp or ftp <= 0:
        return None

    total_seconds = 0.0
    total_tss = 0.0
    weighted_if = 0.0
    incomplete = []
    power_zones = [0.0] * len(ZoneCalculator.POWER_ZONES)
    hr_zones = [0.0] * len(ZoneCalculator.HEART_RATE_ZONES)

    for index, step in enumerate(flattened):
        seconds = step_duration_seconds(step, pace_mps)
        if seconds is None:
            incomplete.append(index)
            continue

        target = step.primary_target
        step_if = target_intensity_factor(target, ftp, threshold_hr)
        step_power = ftp * step_if
        total_tss += (seconds * step_power * step_if) / (ftp * 3600) * 100
        total_seconds += seconds
        weighted_if += step_if * seconds

        if target is not None and target.type in ('%FTP', 'watts'):
            power_zones[ZoneCalculator.power_zone(step_power, ftp)] += seconds
        elif target is not None and target.type in ('%ThresholdHR', '%MaxHR', 'bpm'):
            hr_zones[ZoneCalculator.zone_index(step_if * 100, 100, ZoneCalculator.HEART_RATE_ZONES)] += seconds

    if incomplete:
        logger.info(f"Plan estimate excludes {len(incomplete)} step(s) without a usable duration")

    return PlanEstimate(
        duration_seconds=total_seconds,
        tss=total_tss,
        intensity_factor=weighted_if / total_seconds if total_seconds > 0 else 0.0,
        incomplete_steps=tuple(incomplete),
        power_zone_seconds=tuple(power_zones),
        hr_zone_seconds=tuple(hr_zones),
    )


def time_remaining(flattened: Sequence[PlanStep], index: int, elapsed_in_step: float,
                   pace_mps: Optional[float] = None) -> Optional[float]:
    """Estimated seconds left in the plan from the current position."""
    if index < 0:
        return estimate_duration(flattened, pace_mps).seconds
    if index >= len(flattened):
        return 0.0

    current = step_duration_seconds(flattened[index], pace_mps)
    remaining = max(0.0, current - elapsed_in_step) if current is not None else 0.0
    return remaining + estimate_duration(flattened[index + 1:], pace_mps).seconds


def segment_names(flattened: Iterable[PlanStep]) -> List[str]:
    names = []
    for step in flattened:
        if step.segment_name and step.segment_name not in names:
            names.append(step.segment_name)
    return names
