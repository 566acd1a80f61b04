"""
Gateway Services

- device/     - Transports, codec, devices and registry
- polling/    - Per-device poll jobs and the event hub
- monitoring/ - Shared scan loop with health and change detection
- control/    - Validated setpoint writes with schedule precedence
- cache/      - Last-known readings per device
"""
