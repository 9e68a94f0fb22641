"""In-memory implementation of the engine repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..contracts import (
    TERMINAL_STATES,
    AuditRecord,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    Run,
)
from .repository import EngineRepository


class InMemoryEngineRepository(EngineRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._flows: Dict[str, List[FlowDefinition]] = {}
        self._deleted: set[str] = set()
        self._runs: Dict[str, Run] = {}
        self._attempts: List[DeliveryAttempt] = []
        self._attempt_keys: set[str] = set()
        self._events: List[EngagementEvent] = []
        self._audit: List[AuditRecord] = []

    # ------------------------------------------------------------------
    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        history = self._flows.setdefault(flow.id, [])
        stored = flow.model_copy(update={"version": len(history) + 1}, deep=True)
        history.append(stored)
        self._deleted.discard(flow.id)
        return stored.model_copy(deep=True)

    async def get_flow(
        self, flow_id: str, version: Optional[int] = None
    ) -> FlowDefinition | None:
        history = self._flows.get(flow_id)
        if not history:
            return None
        if version is None:
            if flow_id in self._deleted:
                return None
            return history[-1].model_copy(deep=True)
        if version < 1 or version > len(history):
            return None
        return history[version - 1].model_copy(deep=True)

    async def list_flows(self) -> list[FlowDefinition]:
        return [
            history[-1].model_copy(deep=True)
            for flow_id, history in self._flows.items()
            if flow_id not in self._deleted
        ]

    async def set_flow_active(self, flow_id: str, active: bool) -> FlowDefinition | None:
        history = self._flows.get(flow_id)
        if not history or flow_id in self._deleted:
            return None
        history[-1] = history[-1].model_copy(update={"is_active": active})
        return history[-1].model_copy(deep=True)

    async def delete_flow(self, flow_id: str) -> bool:
        if flow_id not in self._flows or flow_id in self._deleted:
            return False
        history = self._flows[flow_id]
        history[-1] = history[-1].model_copy(update={"is_active": False})
        self._deleted.add(flow_id)
        return True

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def update_run(self, run: Run) -> None:
        if run.id in self._runs:
            self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        flow_id: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        recipient_id: Optional[str] = None,
    ) -> list[Run]:
        wanted = set(states) if states is not None else None
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if (flow_id is None or run.flow_id == flow_id)
            and (wanted is None or run.state in wanted)
            and (recipient_id is None or run.recipient_id == recipient_id)
        ]

    async def find_open_run(self, flow_id: str, recipient_id: str) -> Run | None:
        for run in self._runs.values():
            if (
                run.flow_id == flow_id
                and run.recipient_id == recipient_id
                and run.state not in TERMINAL_STATES
            ):
                return run.model_copy(deep=True)
        return None

    async def list_due_runs(self, now: datetime) -> list[Run]:
        due = [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if run.state == "waiting" and run.wake_at is not None and run.wake_at <= now
        ]
        return sorted(due, key=lambda r: r.wake_at)

    # ------------------------------------------------------------------
    async def add_attempt(self, attempt: DeliveryAttempt) -> bool:
        if attempt.idempotency_key in self._attempt_keys:
            return False
        self._attempt_keys.add(attempt.idempotency_key)
        self._attempts.append(attempt)
        return True

    async def list_attempts(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> list[DeliveryAttempt]:
        return [
            a
            for a in self._attempts
            if (run_id is None or a.run_id == run_id)
            and (flow_id is None or a.flow_id == flow_id)
            and (channel is None or a.channel == channel)
            and (step_id is None or a.step_id == step_id)
        ]

    async def add_event(self, event: EngagementEvent) -> None:
        self._events.append(event.model_copy())

    async def list_events(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> list[EngagementEvent]:
        return [
            e.model_copy()
            for e in self._events
            if (run_id is None or e.run_id == run_id)
            and (flow_id is None or e.flow_id == flow_id)
            and (channel is None or e.channel == channel)
        ]

    async def add_audit_record(self, record: AuditRecord) -> None:
        self._audit.append(record.model_copy())

    async def list_audit_records(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> list[AuditRecord]:
        return [
            r.model_copy()
            for r in self._audit
            if (flow_id is None or r.flow_id == flow_id)
            and (channel is None or r.channel == channel)
        ]
