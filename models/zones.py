"""Zone definitions and calculations for training sessions."""

from typing import Dict, List, Optional
from dataclasses import dataclass


@dataclass
class ZoneDefinition:
    """Definition of a training zone as a fraction of a threshold."""

    name: str
    min_pct: float
    max_pct: Optional[float]
    description: str


class ZoneCalculator:
    """Calculator for power and heart rate zones."""

    POWER_ZONES: List[ZoneDefinition] = [
        ZoneDefinition('Z1', 0, 55, 'Active recovery'),
        ZoneDefinition('Z2', 55, 75, 'Endurance'),
        ZoneDefinition('Z3', 75, 90, 'Tempo'),
        ZoneDefinition('Z4', 90, 105, 'Lactate threshold'),
        ZoneDefinition('Z5', 105, 120, 'VO2 max'),
        ZoneDefinition('Z6', 120, 150, 'Anaerobic capacity'),
        ZoneDefinition('Z7', 150, None, 'Neuromuscular power'),
    ]

    HEART_RATE_ZONES: List[ZoneDefinition] = [
        ZoneDefinition('Z1', 0, 81, 'Recovery'),
        ZoneDefinition('Z2', 81, 89, 'Aerobic'),
        ZoneDefinition('Z3', 89, 94, 'Tempo'),
        ZoneDefinition('Z4', 94, 100, 'Threshold'),
        ZoneDefinition('Z5', 100, None, 'Anaerobic'),
    ]

    @staticmethod
    def zone_index(value: float, threshold: float, zones: List[ZoneDefinition]) -> Optional[int]:
        """Return the 0-based zone index for ``value`` relative to ``threshold``.

        Upper bounds are exclusive. Returns None when the threshold is not
        configured.
        """
        if not threshold or threshold <= 0:
            return None
        pct = value / threshold * 100
        for index, zone in enumerate(zones):
            if zone.max_pct is None or pct < zone.max_pct:
                return index
        return len(zones) - 1

    @classmethod
    def power_zone(cls, power: float, ftp: float) -> Optional[int]:
        return cls.zone_index(power, ftp, cls.POWER_ZONES)

    @classmethod
    def heart_rate_zone(cls, heart_rate: float, threshold_hr: float) -> Optional[int]:
        return cls.zone_index(heart_rate, threshold_hr, cls.HEART_RATE_ZONES)

    @staticmethod
    def absolute_bounds(threshold: float, zones: List[ZoneDefinition]) -> Dict[str, tuple]:
        """Convert percentage zones to absolute (min, max) values."""
        bounds = {}
        for zone in zones:
            upper = threshold * zone.max_pct / 100 if zone.max_pct is not None else None
            bounds[zone.name] = (threshold * zone.min_pct / 100, upper)
        return bounds

    @staticmethod
    def calculate_zone_distribution(seconds_per_zone: List[float],
                                    zones: List[ZoneDefinition]) -> Dict[str, float]:
        """Calculate time distribution across zones.

        Args:
            seconds_per_zone: Time spent in each zone, in zone order
            zones: Zone definitions matching ``seconds_per_zone``

        Returns:
            Dictionary with percentage of time in each zone
        """
        total = sum(seconds_per_zone)
        distribution = {}
        for zone, seconds in zip(zones, seconds_per_zone):
            distribution[zone.name] = (seconds / total) * 100 if total > 0 else 0.0
        return distribution
