"""Recording session service and uploader interface."""

from .service import ActivityRecorderService, RecorderSnapshot, DerivedMetrics, SessionStateConflict
from .uploader import Uploader, UploadResult, JsonLinesExporter

__all__ = [
    'ActivityRecorderService',
    'RecorderSnapshot',
    'DerivedMetrics',
    'SessionStateConflict',
    'Uploader',
    'UploadResult',
    'JsonLinesExporter',
]
