"""Streaming and post-hoc training metric analysis."""
