"""
Event-Driven Monitoring Layer
"""

from .service import SPEED_PRESETS, MonitoringService

__all__ = ["SPEED_PRESETS", "MonitoringService"]
