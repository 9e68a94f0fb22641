"""Repository abstraction for engine state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import (
    AuditRecord,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    Run,
)


class EngineRepository(Protocol):
    """Protocol for engine persistence backends.

    Flow versions, delivery attempts, engagement events and audit records
    are append-only. Runs are the only records updated in place.
    """

    # Flows -------------------------------------------------------------
    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        """Persist ``flow`` as a new version and return the stored copy."""

    async def get_flow(
        self, flow_id: str, version: Optional[int] = None
    ) -> FlowDefinition | None:
        """Return a pinned version, or the latest non-deleted version."""

    async def list_flows(self) -> list[FlowDefinition]:
        """Return the latest version of every non-deleted flow."""

    async def set_flow_active(self, flow_id: str, active: bool) -> FlowDefinition | None:
        """Toggle the active flag of the latest version."""

    async def delete_flow(self, flow_id: str) -> bool:
        """Hide the flow from listings; stored versions stay readable."""

    # Runs --------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        """Persist a new run."""

    async def update_run(self, run: Run) -> None:
        """Persist the current state of ``run``."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    async def list_runs(
        self,
        flow_id: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        recipient_id: Optional[str] = None,
    ) -> list[Run]:
        """Return runs filtered by flow, state and recipient."""

    async def find_open_run(self, flow_id: str, recipient_id: str) -> Run | None:
        """Return a non-terminal run for the pair, if any."""

    async def list_due_runs(self, now: datetime) -> list[Run]:
        """Return waiting runs whose ``wake_at`` is at or before ``now``."""

    # Attempts, events, audit ------------------------------------------
    async def add_attempt(self, attempt: DeliveryAttempt) -> bool:
        """Append an attempt. Returns ``False`` if its key already exists."""

    async def list_attempts(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> list[DeliveryAttempt]:
        """Return attempts in insertion order."""

    async def add_event(self, event: EngagementEvent) -> None:
        """Append an engagement event."""

    async def list_events(
        self,
        run_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> list[EngagementEvent]:
        """Return engagement events in insertion order."""

    async def add_audit_record(self, record: AuditRecord) -> None:
        """Append an audit record."""

    async def list_audit_records(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> list[AuditRecord]:
        """Return audit records in insertion order."""
