"""File parser for recorded activities (FIT and JSON-lines sample exports)."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from fitparse import FitFile, FitParseError

from config.settings import SUPPORTED_FORMATS
from models.sample import Position, Sample

logger = logging.getLogger(__name__)

SEMICIRCLES_TO_DEGREES = 180.0 / 2 ** 31


class FileParser:
    """Parser turning activity files into ordered sensor samples."""

    def parse_file(self, file_path: Path) -> Optional[List[Sample]]:
        """Parse an activity file.

        Args:
            file_path: Path to a .fit or .jsonl file

        Returns:
            Samples in file order, or None if parsing failed
        """
        file_path = Path(file_path)
        if not file_path.exists():
            logger.error(f"File not found: {file_path}")
            return None

        file_extension = file_path.suffix.lower()
        if file_extension not in SUPPORTED_FORMATS:
            logger.error(f"Unsupported file format: {file_extension}")
            return None

        try:
            if file_extension == '.fit':
                return self._parse_fit(file_path)
            return self._parse_jsonl(file_path)
        except (FitParseError, OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to parse file {file_path}: {e}")
            return None

    def _parse_fit(self, file_path: Path) -> Optional[List[Sample]]:
        fit_file = FitFile(str(file_path))

        records = [record.get_values() for record in fit_file.get_messages('record')]
        if not records:
            logger.error("No record data found in FIT file")
            return None

        df = self._fit_records_to_dataframe(records)
        if df.empty:
            logger.error("No valid data extracted from FIT records")
            return None

        samples = [self._row_to_sample(row) for row in df.to_dict('records')]
        logger.info(f"Parsed {len(samples)} samples from {file_path.name}")
        return samples

    def _fit_records_to_dataframe(self, records: List[Dict[str, Any]]) -> pd.DataFrame:
        """Normalize FIT record fields into one row per timestamped record."""
        df = pd.DataFrame(records)
        if 'timestamp' not in df.columns:
            return pd.DataFrame()

        df = df.dropna(subset=['timestamp']).reset_index(drop=True)
        if df.empty:
            return df

        # Prefer enhanced fields when present
        for field_name in ('speed', 'altitude'):
            enhanced = f'enhanced_{field_name}'
            if enhanced in df.columns:
                if field_name in df.columns:
                    df[field_name] = df[enhanced].fillna(df[field_name])
                else:
                    df[field_name] = df[enhanced]

        for column in ('position_lat', 'position_long'):
            if column in df.columns:
                df[column] = df[column] * SEMICIRCLES_TO_DEGREES

        timestamps = pd.to_datetime(df['timestamp'])
        df['wall_time'] = timestamps
        df['elapsed'] = (timestamps - timestamps.iloc[0]).dt.total_seconds()

        columns = ['elapsed', 'wall_time', 'power', 'heart_rate', 'cadence', 'speed',
                   'position_lat', 'position_long', 'altitude', 'distance']
        for column in columns:
            if column not in df.columns:
                df[column] = None
        return df[columns]

    @staticmethod
    def _value(row: Dict[str, Any], key: str) -> Optional[float]:
        value = row.get(key)
        if value is None or pd.isna(value):
            return None
        return float(value)

    def _row_to_sample(self, row: Dict[str, Any]) -> Sample:
        lat = self._value(row, 'position_lat')
        lon = self._value(row, 'position_long')
        position = None
        if lat is not None and lon is not None:
            position = Position(latitude=lat, longitude=lon, altitude=self._value(row, 'altitude'))

        wall_time = row.get('wall_time')
        if isinstance(wall_time, pd.Timestamp):
            wall_time = wall_time.to_pydatetime()

        return Sample(
            timestamp=float(row['elapsed']),
            wall_time=wall_time if isinstance(wall_time, datetime) else None,
            power=self._value(row, 'power'),
            heart_rate=self._value(row, 'heart_rate'),
            cadence=self._value(row, 'cadence'),
            speed=self._value(row, 'speed'),
            position=position,
            distance=self._value(row, 'distance'),
        )

    def _parse_jsonl(self, file_path: Path) -> List[Sample]:
        samples = []
        with open(file_path, 'r', encoding='utf-8') as fh:
            for line_number, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    samples.append(Sample.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    raise ValueError(f"Invalid sample on line {line_number}: {e}") from e
        logger.info(f"Parsed {len(samples)} samples from {file_path.name}")
        return samples
