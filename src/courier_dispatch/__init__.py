"""Courier delivery dispatch core."""

__version__ = "0.1.0"
