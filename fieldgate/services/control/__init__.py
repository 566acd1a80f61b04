"""
Control / Setpoint Layer
"""

from .schedule import ReadingScheduleStatus, ScheduleStatusProvider, StaticScheduleStatus
from .service import ControlService, WriteCommand, validate_command

__all__ = [
    "ReadingScheduleStatus",
    "ScheduleStatusProvider",
    "StaticScheduleStatus",
    "ControlService",
    "WriteCommand",
    "validate_command",
]
