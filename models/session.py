"""Recording session models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from models.sample import Position


class RecorderStatus(str, Enum):
    IDLE = 'idle'
    RECORDING = 'recording'
    PAUSED = 'paused'
    STOPPED = 'stopped'


@dataclass(frozen=True)
class SessionConfig:
    """Per-session athlete configuration passed to ``start()``."""

    ftp: Optional[float] = None
    threshold_hr: Optional[float] = None
    max_hr: Optional[float] = None
    threshold_pace: Optional[float] = None  # seconds per km
    session_id: Optional[str] = None
    activity_type: str = 'cycling'


@dataclass(frozen=True)
class SessionState:
    """Immutable view of the active recording session."""

    session_id: str
    status: RecorderStatus
    started_at: Optional[datetime]
    elapsed_seconds: float = 0.0
    moving_seconds: float = 0.0
    paused_seconds: float = 0.0
    distance_m: float = 0.0
    ascent_m: float = 0.0
    descent_m: float = 0.0
    last_position: Optional[Position] = None
    plan_name: Optional[str] = None
    buffer_degraded: bool = False
