"""Sensor sample model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Position:
    """GPS fix."""

    latitude: float
    longitude: float
    altitude: Optional[float] = None


@dataclass(frozen=True)
class Sample:
    """One instant of sensor data.

    ``timestamp`` is a monotonic clock reading in seconds; ``wall_time`` is
    the wall-clock time of capture when the sensor adapter provides it.
    Every sensor channel is optional.
    """

    timestamp: float
    wall_time: Optional[datetime] = None
    power: Optional[float] = None
    heart_rate: Optional[float] = None
    cadence: Optional[float] = None
    speed: Optional[float] = None
    position: Optional[Position] = None
    distance: Optional[float] = None

    @property
    def altitude(self) -> Optional[float]:
        return self.position.altitude if self.position else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            'timestamp': self.timestamp,
            'wall_time': self.wall_time.isoformat() if self.wall_time else None,
            'power': self.power,
            'heart_rate': self.heart_rate,
            'cadence': self.cadence,
            'speed': self.speed,
            'latitude': self.position.latitude if self.position else None,
            'longitude': self.position.longitude if self.position else None,
            'altitude': self.position.altitude if self.position else None,
            'distance': self.distance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Sample':
        """Build a sample from :meth:`to_dict` output."""
        wall_time = data.get('wall_time')
        if isinstance(wall_time, str):
            wall_time = datetime.fromisoformat(wall_time)

        position = None
        if data.get('latitude') is not None and data.get('longitude') is not None:
            position = Position(
                latitude=data['latitude'],
                longitude=data['longitude'],
                altitude=data.get('altitude'),
            )

        return cls(
            timestamp=float(data['timestamp']),
            wall_time=wall_time,
            power=data.get('power'),
            heart_rate=data.get('heart_rate'),
            cadence=data.get('cadence'),
            speed=data.get('speed'),
            position=position,
            distance=data.get('distance'),
        )
