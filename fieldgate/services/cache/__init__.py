"""
Realtime Cache Layer
"""

from .realtime import DeviceSnapshot, RealtimeCache

__all__ = ["DeviceSnapshot", "RealtimeCache"]
