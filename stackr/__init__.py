"""Stackr - Docker Compose stack orchestration for a single host."""

__version__ = "0.4.0"
