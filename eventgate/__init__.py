"""Authenticated event ingestion and fan-out pipeline."""

__version__ = "1.0.0"
