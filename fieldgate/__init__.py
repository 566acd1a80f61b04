"""
Fieldgate - Modbus Device Gateway

Polls field devices over Modbus TCP/RTU, decodes register values and
exposes current readings, health and setpoint control.
"""

__version__ = "1.0.0"
