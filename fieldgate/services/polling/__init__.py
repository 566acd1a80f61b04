"""
Polling Layer

Per-device poll jobs publishing into per-device event channels.
"""

from .events import ErrorEvent, EventHub, PollEvent
from .service import PollingService, PollJob

__all__ = ["ErrorEvent", "EventHub", "PollEvent", "PollingService", "PollJob"]
