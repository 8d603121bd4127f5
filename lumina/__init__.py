"""Lumina generation orchestration and persistence core."""

__version__ = "0.1.0"
