"""Utility modules."""

from courier_dispatch.utils.geo import haversine_km
from courier_dispatch.utils.logging import LifecycleLogger, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "LifecycleLogger", "haversine_km"]
