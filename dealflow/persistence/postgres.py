"""PostgreSQL implementation of the engine repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import (
    TERMINAL_STATES,
    AuditRecord,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    Run,
)
from .repository import EngineRepository


def _where(filters: dict[str, Any], start: int = 1) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if value is None:
            continue
        params.append(value)
        clauses.append(f"{column} = ${start + len(params) - 1}")
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


class PostgresEngineRepository(EngineRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flows (
                flow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT FALSE,
                deleted BOOLEAN NOT NULL DEFAULT FALSE,
                PRIMARY KEY (flow_id, version)
            );
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                state TEXT NOT NULL,
                wake_at TIMESTAMPTZ,
                data JSONB NOT NULL,
                seq BIGSERIAL
            );
            CREATE INDEX IF NOT EXISTS idx_runs_flow_state ON runs (flow_id, state);
            CREATE INDEX IF NOT EXISTS idx_runs_wake_at ON runs (state, wake_at);
            CREATE TABLE IF NOT EXISTS attempts (
                id BIGSERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                flow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                attempt_number INTEGER NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL,
                UNIQUE (run_id, step_id, attempt_number)
            );
            CREATE INDEX IF NOT EXISTS idx_attempts_flow_channel
                ON attempts (flow_id, channel, timestamp);
            CREATE TABLE IF NOT EXISTS events (
                id BIGSERIAL PRIMARY KEY,
                event_id TEXT NOT NULL,
                run_id TEXT,
                flow_id TEXT,
                channel TEXT,
                timestamp TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_events_run ON events (run_id);
            CREATE INDEX IF NOT EXISTS idx_events_flow_channel
                ON events (flow_id, channel, timestamp);
            CREATE TABLE IF NOT EXISTS audit (
                id BIGSERIAL PRIMARY KEY,
                record_id TEXT NOT NULL,
                flow_id TEXT,
                channel TEXT,
                timestamp TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            );
            """
        )

    @staticmethod
    def _flow_from_row(row: asyncpg.Record) -> FlowDefinition:
        flow = FlowDefinition.model_validate(json.loads(row["data"]))
        return flow.model_copy(update={"is_active": row["is_active"]})

    # ------------------------------------------------------------------
    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        conn = await self._connect()
        try:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT COALESCE(MAX(version), 0) FROM flows WHERE flow_id = $1",
                    flow.id,
                )
                stored = flow.model_copy(update={"version": current + 1})
                await conn.execute(
                    "UPDATE flows SET deleted = FALSE WHERE flow_id = $1", flow.id
                )
                await conn.execute(
                    "INSERT INTO flows (flow_id, version, data, is_active) VALUES ($1, $2, $3, $4)",
                    stored.id,
                    stored.version,
                    stored.model_dump_json(),
                    stored.is_active,
                )
        finally:
            await conn.close()
        return stored

    async def get_flow(
        self, flow_id: str, version: Optional[int] = None
    ) -> FlowDefinition | None:
        conn = await self._connect()
        try:
            if version is None:
                row = await conn.fetchrow(
                    "SELECT data, is_active FROM flows WHERE flow_id = $1 AND NOT deleted "
                    "ORDER BY version DESC LIMIT 1",
                    flow_id,
                )
            else:
                row = await conn.fetchrow(
                    "SELECT data, is_active FROM flows WHERE flow_id = $1 AND version = $2",
                    flow_id,
                    version,
                )
        finally:
            await conn.close()
        return self._flow_from_row(row) if row else None

    async def list_flows(self) -> list[FlowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT DISTINCT ON (flow_id) data, is_active, deleted FROM flows
                ORDER BY flow_id, version DESC
                """
            )
        finally:
            await conn.close()
        return [self._flow_from_row(r) for r in rows if not r["deleted"]]

    async def set_flow_active(self, flow_id: str, active: bool) -> FlowDefinition | None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE flows SET is_active = $1
                WHERE flow_id = $2 AND NOT deleted
                  AND version = (SELECT MAX(version) FROM flows WHERE flow_id = $2)
                """,
                active,
                flow_id,
            )
        finally:
            await conn.close()
        return await self.get_flow(flow_id)

    async def delete_flow(self, flow_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE flows SET deleted = TRUE, is_active = FALSE "
                "WHERE flow_id = $1 AND NOT deleted",
                flow_id,
            )
        finally:
            await conn.close()
        return not status.endswith(" 0")

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO runs (run_id, flow_id, recipient_id, state, wake_at, data) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                run.id,
                run.flow_id,
                run.recipient_id,
                run.state,
                run.wake_at,
                run.model_dump_json(),
            )
        finally:
            await conn.close()

    async def update_run(self, run: Run) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE runs SET state = $1, wake_at = $2, data = $3 WHERE run_id = $4",
                run.state,
                run.wake_at,
                run.model_dump_json(),
                run.id,
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT data FROM runs WHERE run_id = $1", run_id)
        finally:
            await conn.close()
        return Run.model_validate(json.loads(row["data"])) if row else None

    async def list_runs(
        self,
        flow_id: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        recipient_id: Optional[str] = None,
    ) -> list[Run]:
        where, params = _where({"flow_id": flow_id, "recipient_id": recipient_id})
        if states is not None:
            params.append(list(states))
            where += (" AND " if where else " WHERE ") + f"state = ANY(${len(params)})"
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT data FROM runs{where} ORDER BY seq", *params)
        finally:
            await conn.close()
        return [Run.model_validate(json.loads(r["data"])) for r in rows]

    async def find_open_run(self, flow_id: str, recipient_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM runs WHERE flow_id = $1 AND recipient_id = $2 "
                "AND NOT (state = ANY($3)) LIMIT 1",
                flow_id,
                recipient_id,
                sorted(TERMINAL_STATES),
            )
        finally:
            await conn.close()
        return Run.model_validate(json.loads(row["data"])) if row else None

    async def list_due_runs(self, now: datetime) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM runs WHERE state = 'waiting' AND wake_at <= $1 "
                "ORDER BY wake_at",
                now,
            )
        finally:
            await conn.close()
        return [Run.model_validate(json.loads(r["data"])) for r in rows]

    # ------------------------------------------------------------------
    async def add_attempt(self, attempt: DeliveryAttempt) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "INSERT INTO attempts (run_id, flow_id, step_id, channel, attempt_number, "
                "timestamp, data) VALUES ($1, $2, $3, $4, $5, $6, $7) "
                "ON CONFLICT (run_id, step_id, attempt_number) DO NOTHING",
                attempt.run_id,
                attempt.flow_id,
                attempt.step_id,
                attempt.channel,
                attempt.attempt_number,
                attempt.timestamp,
                attempt.model_dump_json(),
            )
        finally:
            await conn.close()
        return status.endswith(" 1")

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
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT data FROM attempts{where} ORDER BY id", *params)
        finally:
            await conn.close()
        return [DeliveryAttempt.model_validate(json.loads(r["data"])) for r in rows]

    async def add_event(self, event: EngagementEvent) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO events (event_id, run_id, flow_id, channel, timestamp, data) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                event.id,
                event.run_id,
                event.flow_id,
                event.channel,
                event.timestamp,
                event.model_dump_json(),
            )
        finally:
            await conn.close()

    async def list_events(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> list[EngagementEvent]:
        where, params = _where({"run_id": run_id, "flow_id": flow_id, "channel": channel})
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT data FROM events{where} ORDER BY id", *params)
        finally:
            await conn.close()
        return [EngagementEvent.model_validate(json.loads(r["data"])) for r in rows]

    async def add_audit_record(self, record: AuditRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO audit (record_id, flow_id, channel, timestamp, data) "
                "VALUES ($1, $2, $3, $4, $5)",
                record.id,
                record.flow_id,
                record.channel,
                record.timestamp,
                record.model_dump_json(),
            )
        finally:
            await conn.close()

    async def list_audit_records(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> list[AuditRecord]:
        where, params = _where({"flow_id": flow_id, "channel": channel})
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT data FROM audit{where} ORDER BY id", *params)
        finally:
            await conn.close()
        return [AuditRecord.model_validate(json.loads(r["data"])) for r in rows]
