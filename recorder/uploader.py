"""Interface to the collaborator that ships finished recordings."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from storage.sample_buffer import SealedBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    success: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None


class Uploader(Protocol):
    """Receives a sealed recording and owns its transfer, retries included."""

    def upload(self, sealed: SealedBuffer) -> UploadResult:
        ...


class JsonLinesExporter:
    """Uploader that writes the sealed samples to a local JSON-lines file."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def upload(self, sealed: SealedBuffer) -> UploadResult:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path = self.output_dir / f"{sealed.session_id}.jsonl"
            with open(path, 'w', encoding='utf-8') as fh:
                for sample in sealed.samples:
                    fh.write(json.dumps(sample.to_dict()) + '\n')
        except OSError as e:
            logger.error(f"Failed to export session {sealed.session_id}: {e}")
            return UploadResult(success=False, error=str(e))

        logger.info(f"Exported {sealed.sample_count} samples to {path}")
        return UploadResult(success=True, remote_id=str(path))
