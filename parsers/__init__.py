"""Activity file parsers."""

from .file_parser import FileParser

__all__ = ['FileParser']
