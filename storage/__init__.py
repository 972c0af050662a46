"""Local, crash-recoverable sample storage."""

from .sample_buffer import (
    SampleBuffer, SealedBuffer, SampleBufferError,
    BufferWriteFailed, BufferSealed, UnknownBufferSession,
)

__all__ = [
    'SampleBuffer',
    'SealedBuffer',
    'SampleBufferError',
    'BufferWriteFailed',
    'BufferSealed',
    'UnknownBufferSession',
]
