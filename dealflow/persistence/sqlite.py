"""SQLite implementation of the engine repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import (
    TERMINAL_STATES,
    AuditRecord,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    Run,
)
from .repository import EngineRepository


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _where(filters: dict[str, Any]) -> tuple[str, list[Any]]:
    clauses = [f"{column} = ?" for column, value in filters.items() if value is not None]
    params = [value for value in filters.values() if value is not None]
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


class SQLiteEngineRepository(EngineRepository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS flows (
                flow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 0,
                deleted INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (flow_id, version)
            );
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                state TEXT NOT NULL,
                wake_at TEXT,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_runs_flow_state ON runs (flow_id, state);
            CREATE INDEX IF NOT EXISTS idx_runs_wake_at ON runs (state, wake_at);
            CREATE TABLE IF NOT EXISTS attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                flow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                attempt_number INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (run_id, step_id, attempt_number)
            );
            CREATE INDEX IF NOT EXISTS idx_attempts_flow_channel
                ON attempts (flow_id, channel, timestamp);
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL,
                run_id TEXT,
                flow_id TEXT,
                channel TEXT,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_events_run ON events (run_id);
            CREATE INDEX IF NOT EXISTS idx_events_flow_channel
                ON events (flow_id, channel, timestamp);
            CREATE TABLE IF NOT EXISTS audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL,
                flow_id TEXT,
                channel TEXT,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_flow_version(self, flow: FlowDefinition) -> FlowDefinition:
        with self._lock:
            return self._insert_flow_version_locked(flow)

    def _insert_flow_version_locked(self, flow: FlowDefinition) -> FlowDefinition:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(version), 0) AS v FROM flows WHERE flow_id = ?",
            (flow.id,),
        ).fetchone()
        stored = flow.model_copy(update={"version": row["v"] + 1})
        self._conn.execute("UPDATE flows SET deleted = 0 WHERE flow_id = ?", (flow.id,))
        self._conn.execute(
            "INSERT INTO flows (flow_id, version, data, is_active) VALUES (?, ?, ?, ?)",
            (stored.id, stored.version, stored.model_dump_json(), int(stored.is_active)),
        )
        self._conn.commit()
        return stored

    @staticmethod
    def _flow_from_row(row: sqlite3.Row) -> FlowDefinition:
        flow = FlowDefinition.model_validate_json(row["data"])
        return flow.model_copy(update={"is_active": bool(row["is_active"])})

    # ------------------------------------------------------------------
    # Flows
    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        return await asyncio.to_thread(self._insert_flow_version, flow)

    async def get_flow(
        self, flow_id: str, version: Optional[int] = None
    ) -> FlowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT data, is_active FROM flows WHERE flow_id = ? AND deleted = 0 "
                "ORDER BY version DESC LIMIT 1",
                flow_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT data, is_active FROM flows WHERE flow_id = ? AND version = ?",
                flow_id,
                version,
            )
        return self._flow_from_row(row) if row else None

    async def list_flows(self) -> list[FlowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT f.data, f.is_active FROM flows f
            JOIN (SELECT flow_id, MAX(version) AS v FROM flows GROUP BY flow_id) latest
              ON f.flow_id = latest.flow_id AND f.version = latest.v
            WHERE f.deleted = 0
            ORDER BY f.flow_id
            """,
        )
        return [self._flow_from_row(r) for r in rows]

    async def set_flow_active(self, flow_id: str, active: bool) -> FlowDefinition | None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE flows SET is_active = ?
            WHERE flow_id = ? AND deleted = 0
              AND version = (SELECT MAX(version) FROM flows WHERE flow_id = ?)
            """,
            int(active),
            flow_id,
            flow_id,
        )
        return await self.get_flow(flow_id)

    async def delete_flow(self, flow_id: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE flows SET deleted = 1, is_active = 0 WHERE flow_id = ? AND deleted = 0",
            flow_id,
        )
        return changed > 0

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (run_id, flow_id, recipient_id, state, wake_at, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            run.id,
            run.flow_id,
            run.recipient_id,
            run.state,
            _ts(run.wake_at),
            run.model_dump_json(),
        )

    async def update_run(self, run: Run) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET state = ?, wake_at = ?, data = ? WHERE run_id = ?",
            run.state,
            _ts(run.wake_at),
            run.model_dump_json(),
            run.id,
        )

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM runs WHERE run_id = ?", run_id
        )
        return Run.model_validate_json(row["data"]) if row else None

    async def list_runs(
        self,
        flow_id: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        recipient_id: Optional[str] = None,
    ) -> list[Run]:
        where, params = _where({"flow_id": flow_id, "recipient_id": recipient_id})
        if states is not None:
            states = list(states)
            if not states:
                return []
            marks = ", ".join("?" for _ in states)
            where += (" AND " if where else " WHERE ") + f"state IN ({marks})"
            params.extend(states)
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT data FROM runs{where} ORDER BY rowid", *params
        )
        return [Run.model_validate_json(r["data"]) for r in rows]

    async def find_open_run(self, flow_id: str, recipient_id: str) -> Run | None:
        marks = ", ".join("?" for _ in TERMINAL_STATES)
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT data FROM runs WHERE flow_id = ? AND recipient_id = ? "
            f"AND state NOT IN ({marks}) LIMIT 1",
            flow_id,
            recipient_id,
            *sorted(TERMINAL_STATES),
        )
        return Run.model_validate_json(row["data"]) if row else None

    async def list_due_runs(self, now: datetime) -> list[Run]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM runs WHERE state = 'waiting' AND wake_at IS NOT NULL "
            "AND wake_at <= ? ORDER BY wake_at",
            _ts(now),
        )
        return [Run.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Attempts, events, audit
    async def add_attempt(self, attempt: DeliveryAttempt) -> bool:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO attempts (run_id, flow_id, step_id, channel, attempt_number, "
                "timestamp, data) VALUES (?, ?, ?, ?, ?, ?, ?)",
                attempt.run_id,
                attempt.flow_id,
                attempt.step_id,
                attempt.channel,
                attempt.attempt_number,
                _ts(attempt.timestamp),
                attempt.model_dump_json(),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    async def list_attempts(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> list[DeliveryAttempt]:
        where, params = _where(
            {"run_id": run_id, "flow_id": flow_id, "channel": channel, "step_id": step_id}
        )
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT data FROM attempts{where} ORDER BY id", *params
        )
        return [DeliveryAttempt.model_validate_json(r["data"]) for r in rows]

    async def add_event(self, event: EngagementEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO events (event_id, run_id, flow_id, channel, timestamp, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            event.id,
            event.run_id,
            event.flow_id,
            event.channel,
            _ts(event.timestamp),
            event.model_dump_json(),
        )

    async def list_events(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> list[EngagementEvent]:
        where, params = _where({"run_id": run_id, "flow_id": flow_id, "channel": channel})
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT data FROM events{where} ORDER BY id", *params
        )
        return [EngagementEvent.model_validate_json(r["data"]) for r in rows]

    async def add_audit_record(self, record: AuditRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO audit (record_id, flow_id, channel, timestamp, data) "
            "VALUES (?, ?, ?, ?, ?)",
            record.id,
            record.flow_id,
            record.channel,
            _ts(record.timestamp),
            record.model_dump_json(),
        )

    async def list_audit_records(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> list[AuditRecord]:
        where, params = _where({"flow_id": flow_id, "channel": channel})
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT data FROM audit{where} ORDER BY id", *params
        )
        return [AuditRecord.model_validate_json(r["data"]) for r in rows]
