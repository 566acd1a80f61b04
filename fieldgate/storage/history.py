"""
Historical Series Sink

Append-only store of per-parameter readings. The gateway writes into it
from the event hub; querying the series is left to its consumers.
"""

import asyncio
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.polling.events import Event, PollEvent

logger = get_service_logger("storage.history")


@dataclass
class HistoryRecord:
    """One row of the historical series"""
    device_id: str
    parameter_name: str
    value: float | int | None
    unit: str
    timestamp: datetime
    quality: str  # 'good' or 'bad'

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "parameterName": self.parameter_name,
            "value": self.value,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat(),
            "quality": self.quality,
        }


class HistorySink(Protocol):
    async def append(self, records: list[HistoryRecord]) -> None: ...


def history_records(event: PollEvent) -> list[HistoryRecord]:
    """Rows for every reading in a poll event"""
    return [
        HistoryRecord(
            device_id=event.device_id,
            parameter_name=reading.name,
            value=reading.value,
            unit=reading.unit,
            timestamp=reading.timestamp,
            quality=reading.quality,
        )
        for reading in event.readings
    ]


class HistoryWriter:
    """Event hub sink forwarding poll events to a HistorySink"""

    def __init__(self, sink: HistorySink):
        self.sink = sink
        self.written = 0

    async def handle_event(self, event: Event) -> None:
        if not isinstance(event, PollEvent) or not event.readings:
            return
        records = history_records(event)
        await self.sink.append(records)
        self.written += len(records)


class SqliteHistorySink:
    """
    SQLite-backed historical series.

    Writes run in a worker thread so the event loop is never blocked.
    """

    def __init__(self, db_path: str = "fieldgate_history.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"History database initialized at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    parameter_name TEXT NOT NULL,
                    value REAL,
                    unit TEXT,
                    timestamp TEXT NOT NULL,
                    quality TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_readings_device_time
                ON readings(device_id, timestamp DESC)
            """)

    async def append(self, records: list[HistoryRecord]) -> None:
        if not records:
            return
        await asyncio.to_thread(self._insert, records)

    def _insert(self, records: list[HistoryRecord]) -> None:
        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT INTO readings
                    (device_id, parameter_name, value, unit, timestamp, quality)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.device_id,
                        r.parameter_name,
                        r.value,
                        r.unit,
                        r.timestamp.isoformat(),
                        r.quality,
                    )
                    for r in records
                ],
            )

    def count(self, device_id: str | None = None) -> int:
        """Number of stored rows, optionally for one device"""
        with self._get_connection() as conn:
            if device_id is None:
                row = conn.execute("SELECT COUNT(*) FROM readings").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM readings WHERE device_id = ?", (device_id,)
                ).fetchone()
        return row[0]
