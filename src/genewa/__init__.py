"""Genewa calendar engine: resilient calendar operations and availability search."""

__version__ = "0.1.0"
