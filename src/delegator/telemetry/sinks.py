"""
Telemetry Sinks — Where Flushed Events Go

- ``InMemoryTelemetrySink``: bounded deque, queryable. Used by the API and tests.
- ``ConsoleTelemetrySink``: one line per event on a rich console.
- ``SQLiteTelemetrySink``: aiosqlite-backed event store, queryable.

Usage:
    async with SQLiteTelemetrySink("telemetry.db") as sink:
        engine = TelemetryEngine("agent-a", sinks=[sink])
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Sequence

import aiosqlite
from rich.console import Console

from delegator.telemetry.events import Severity, TelemetryEvent, TelemetryQueryFilter

_SEVERITY_STYLE = {
    Severity.DEBUG: "dim",
    Severity.INFO: "cyan",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITICAL: "bold red",
}


class TelemetrySink(ABC):
    """Destination for flushed telemetry events."""

    name: str = "sink"
    queryable: bool = False

    @abstractmethod
    async def write_events(self, events: Sequence[TelemetryEvent]) -> None:
        """Persist a batch of events, in order."""
        ...

    async def query_events(self, query: TelemetryQueryFilter) -> list[TelemetryEvent]:
        raise NotImplementedError(f"{self.name} sink does not support queries")

    async def close(self) -> None:
        return None


class InMemoryTelemetrySink(TelemetrySink):
    """Keeps the most recent ``max_events`` events in memory."""

    name = "memory"
    queryable = True

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: deque[TelemetryEvent] = deque(maxlen=max_events)

    async def write_events(self, events: Sequence[TelemetryEvent]) -> None:
        self._events.extend(events)

    async def query_events(self, query: TelemetryQueryFilter) -> list[TelemetryEvent]:
        return query.apply(list(self._events))

    @property
    def events(self) -> list[TelemetryEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()


class ConsoleTelemetrySink(TelemetrySink):
    """Prints events to the terminal."""

    name = "console"

    def __init__(self, console: Console | None = None, min_severity: Severity = Severity.DEBUG) -> None:
        self.console = console or Console(stderr=True)
        self.min_severity = min_severity

    async def write_events(self, events: Sequence[TelemetryEvent]) -> None:
        for event in events:
            if event.severity.rank < self.min_severity.rank:
                continue
            style = _SEVERITY_STYLE[event.severity]
            chain = event.chain_correlation
            self.console.print(
                f"[{style}]{event.severity.upper():8}[/{style}] "
                f"{event.timestamp:%H:%M:%S} {event.event_type} "
                f"agent={event.agent_id} contract={event.contract_id} "
                f"chain={chain.root_delegation_id}@{chain.chain_depth}",
                highlight=False,
            )


class SQLiteTelemetrySink(TelemetrySink):
    """Event store on SQLite via aiosqlite."""

    name = "sqlite"
    queryable = True
    DB_PATH = Path.home() / ".delegator" / "telemetry.db"

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None
        self._open_lock = asyncio.Lock()

    async def __aenter__(self) -> SQLiteTelemetrySink:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def open(self) -> None:
        if self._db is not None:
            return
        async with self._open_lock:
            if self._db is not None:
                return
            db = await aiosqlite.connect(str(self.db_path))
            try:
                await self._create_schema(db)
            except BaseException:
                await db.close()
                raise
            self._db = db

    @staticmethod
    async def _create_schema(db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS telemetry_events (
                event_id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL,
                ts REAL NOT NULL,
                agent_id TEXT NOT NULL,
                contract_id TEXT NOT NULL,
                execution_id TEXT,
                chain_root_id TEXT NOT NULL,
                chain_depth INTEGER NOT NULL DEFAULT 0,
                severity TEXT NOT NULL,
                document TEXT NOT NULL,
                CHECK (chain_depth >= 0),
                CHECK (severity IN ('debug', 'info', 'warning', 'error', 'critical'))
            )
        """)
        for column in ("agent_id", "contract_id", "event_type", "ts", "chain_root_id"):
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_events_{column} ON telemetry_events({column})"
            )
        await db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def write_events(self, events: Sequence[TelemetryEvent]) -> None:
        await self.open()
        assert self._db is not None
        await self._db.executemany(
            """INSERT OR REPLACE INTO telemetry_events
               (event_id, event_type, ts, agent_id, contract_id, execution_id,
                chain_root_id, chain_depth, severity, document)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    e.event_id,
                    str(e.event_type),
                    e.timestamp.timestamp(),
                    e.agent_id,
                    e.contract_id,
                    e.execution_id,
                    e.root_id,
                    e.chain_correlation.chain_depth,
                    str(e.severity),
                    json.dumps(e.to_dict(), default=str),
                )
                for e in events
            ],
        )
        await self._db.commit()

    async def query_events(self, query: TelemetryQueryFilter) -> list[TelemetryEvent]:
        await self.open()
        assert self._db is not None

        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("agent_id", query.agent_id),
            ("contract_id", query.contract_id),
            ("chain_root_id", query.chain_root_id),
            ("chain_depth", query.chain_depth),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if query.event_types:
            clauses.append(f"event_type IN ({', '.join('?' * len(query.event_types))})")
            params.extend(str(t) for t in query.event_types)
        if query.severities:
            clauses.append(f"severity IN ({', '.join('?' * len(query.severities))})")
            params.extend(str(s) for s in query.severities)
        if query.start_time is not None:
            clauses.append("ts >= ?")
            params.append(query.start_time.timestamp())
        if query.end_time is not None:
            clauses.append("ts <= ?")
            params.append(query.end_time.timestamp())

        sql = "SELECT document FROM telemetry_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY ts DESC"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [TelemetryEvent.from_dict(json.loads(row[0])) for row in rows]

    async def count(self) -> int:
        await self.open()
        assert self._db is not None
        cursor = await self._db.execute("SELECT COUNT(*) FROM telemetry_events")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
