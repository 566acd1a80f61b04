"""
Fieldgate - Main Entry Point

Usage:
    fieldgate                           # Use default gateway.yaml
    fieldgate --config my.yaml          # Use custom config file
    fieldgate --dry-run                 # Print config summary and exit
    python -m fieldgate --verbose       # Debug logging

The gateway will:
1. Load gateway settings from YAML (with FIELDGATE_* env overrides)
2. Load device records from the devices file
3. Start the shared monitoring loop and the health HTTP server
4. Run until SIGINT/SIGTERM, then shut down gracefully
"""

import argparse
import asyncio
import os
import sys

from fieldgate import __version__
from fieldgate.common.config import (
    GatewaySettings,
    SerialConnection,
    load_gateway_settings,
    parse_device_record,
)
from fieldgate.common.exceptions import ConfigurationError
from fieldgate.common.logging_setup import get_service_logger, set_log_level
from fieldgate.service import GatewayService
from fieldgate.storage.config_store import FileConfigStore

logger = get_service_logger("main")


def print_config_summary(settings: GatewaySettings, store: FileConfigStore) -> int:
    """
    Print a summary of the configuration.

    Returns the number of invalid device records.
    """
    print("\n" + "=" * 60)
    print(f"  FIELDGATE v{__version__}")
    print("=" * 60)

    print(f"\n  Monitoring interval: {settings.monitoring_interval_ms}ms")
    print(f"  Health server: {settings.health_host}:{settings.health_port}")
    print(f"  Network timeout: {settings.network_timeout_s}s")
    print(f"  History: {settings.history_db or 'disabled'}")

    print(f"\n  Devices ({settings.devices_file}):")
    invalid = 0
    for record in store._load_records():
        try:
            device = parse_device_record(record)
        except ConfigurationError as e:
            invalid += 1
            print(f"    ! {record.get('name') or record.get('id', '?')}: {e.message}")
            continue
        link = "RTU" if isinstance(device.connection, SerialConnection) else "TCP"
        state = "enabled" if device.enabled else "disabled"
        print(
            f"    - {device.name} [{link} {device.connection.label} "
            f"unit {device.connection.unit_id}] {len(device.parameters)} parameters, {state}"
        )

    print("=" * 60 + "\n")
    return invalid


def resolve_log_level(settings: GatewaySettings, verbose: bool = False) -> str:
    """--verbose, then FIELDGATE_LOG_LEVEL, then the settings file"""
    if verbose:
        return "DEBUG"
    return os.environ.get("FIELDGATE_LOG_LEVEL") or settings.log_level


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Fieldgate Modbus device gateway")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default="gateway.yaml",
        help="Path to gateway settings file (default: gateway.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without starting the gateway",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        set_log_level("DEBUG")

    try:
        settings = load_gateway_settings(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading configuration: {e}")
        return 1

    set_log_level(resolve_log_level(settings, args.verbose))

    store = FileConfigStore(settings.devices_file)

    if args.dry_run:
        try:
            invalid = print_config_summary(settings, store)
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e.message}")
            return 1
        print("Dry run mode - exiting without starting gateway")
        return 1 if invalid else 0

    service = GatewayService(settings, store=store)
    logger.info("Starting gateway...")

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        print("\nStopped by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
