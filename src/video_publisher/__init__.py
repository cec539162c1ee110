"""Resumable, idempotent video upload pipeline."""

__version__ = "0.1.0"
