"""Configuration settings for the activity recorder."""

import os
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Logger for this module
logger = logging.getLogger(__name__)

# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("RECORDER_DATA_DIR", str(BASE_DIR / "data")))

# Local sample buffer (SQLite by default)
BUFFER_DATABASE_URL = os.getenv(
    "BUFFER_DATABASE_URL", f"sqlite:///{DATA_DIR / 'sample_buffer.db'}"
)


def ensure_data_dir() -> Path:
    """Create the data directory if it does not exist yet."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return DATA_DIR


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {value!r}")
        return None


class RecorderConfig:
    """Recorder and analytics tuning constants."""

    # Normalized power window (seconds at 1Hz)
    ROLLING_WINDOW_SECONDS = 30

    # Sample timing
    DEFAULT_SAMPLE_INTERVAL_S = 1.0  # Credited to the first sample of a segment
    MAX_SAMPLE_GAP_S = 5.0  # Larger gaps are credited as one default interval

    # Elevation and distance filtering
    ELEVATION_NOISE_THRESHOLD_M = 1.0
    DISTANCE_MIN_DELTA_M = 0.0
    DISTANCE_MAX_DELTA_M = 1000.0  # GPS jumps above this are ignored
    EARTH_RADIUS_M = 6371e3

    # Sample buffer
    BUFFER_WRITE_RETRIES = 3
    BUFFER_RETRY_DELAY_S = 0.05

    # Snapshot subscriptions
    SNAPSHOT_MIN_INTERVAL_S = 1.0

    # Sensor validation ranges (inclusive)
    SENSOR_LIMITS: Dict[str, Tuple[float, float]] = {
        'power': (0, 4000),
        'heart_rate': (30, 250),
        'cadence': (0, 255),
        'speed': (0, 100),
    }

    # Training load time constants (days)
    CTL_TIME_CONSTANT_DAYS = 42
    ATL_TIME_CONSTANT_DAYS = 7

    # Plan adherence tolerance bands
    ADHERENCE_TOLERANCE_PCT_POINTS = 5.0  # %FTP, %MaxHR, %ThresholdHR
    ADHERENCE_TOLERANCE_RELATIVE = 0.05  # watts, speed
    ADHERENCE_TOLERANCE_BPM = 5.0
    ADHERENCE_TOLERANCE_CADENCE = 5.0
    ADHERENCE_TOLERANCE_RPE = 1.0

    # Plan estimation
    MAX_HR_TO_THRESHOLD_RATIO = 0.9  # %MaxHR -> %ThresholdHR approximation
    DEFAULT_STEP_INTENSITY = 0.5  # IF for steps without a usable target

    # Calories from mechanical work (gross efficiency offsets the kJ -> kcal factor)
    KCAL_PER_KJ = 1.0


# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# File type detection
SUPPORTED_FORMATS = ['.fit', '.jsonl']

# User-specific settings (can be overridden via CLI or environment)
FTP = _optional_int("FTP")  # Functional Threshold Power in watts
THRESHOLD_HR = _optional_int("THRESHOLD_HR")  # Lactate threshold heart rate in bpm
MAX_HEART_RATE = _optional_int("MAX_HEART_RATE")  # Maximum heart rate in bpm
THRESHOLD_PACE = _optional_int("THRESHOLD_PACE")  # Threshold running pace in seconds per km
