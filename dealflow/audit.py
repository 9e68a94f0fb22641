"""Append-only audit log of send attempts and run failures."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .contracts import AuditExportRow, AuditRecord, DeliveryAttempt, Run
from .persistence import EngineRepository

logger = logging.getLogger(__name__)


class AuditSink:
    """Records every attempted send, successful or not, and every failed run."""

    def __init__(self, repository: EngineRepository) -> None:
        self._repository = repository

    async def record_attempt(self, run: Run, attempt: DeliveryAttempt) -> AuditRecord:
        record = AuditRecord(
            timestamp=attempt.timestamp,
            run_id=attempt.run_id,
            flow_id=attempt.flow_id,
            step_id=attempt.step_id,
            channel=attempt.channel,
            audience=run.audience,
            status="Sent" if attempt.succeeded else "Failed",
            attempt_number=attempt.attempt_number,
            cost=attempt.cost,
            detail=attempt.error,
        )
        await self._repository.add_audit_record(record)
        return record

    async def record_run_failure(
        self, run: Run, reason: str, channel: Optional[str] = None
    ) -> AuditRecord:
        record = AuditRecord(
            run_id=run.id,
            flow_id=run.flow_id,
            step_id=run.current_step_id,
            channel=channel,
            audience=run.audience,
            status="Failed",
            attempt_number=None,
            cost=0.0,
            detail=reason,
        )
        await self._repository.add_audit_record(record)
        logger.warning(f"Run {run.id} failed: {reason}")
        return record

    async def records(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> List[AuditRecord]:
        return await self._repository.list_audit_records(flow_id=flow_id, channel=channel)

    async def export(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> List[AuditExportRow]:
        """Flatten audit records into the admin notification log layout.

        ``delivered``, ``opened`` and ``clicked`` are 0/1 flags taken from the
        engagement stream for the record's run and step.
        """
        records = await self.records(flow_id=flow_id, channel=channel)
        events = await self._repository.list_events(flow_id=flow_id, channel=channel)
        signals: Dict[Tuple[Optional[str], Optional[str]], set[str]] = defaultdict(set)
        for event in events:
            if event.run_id is not None:
                signals[(event.run_id, event.step_id)].add(event.type)

        delivered_by_attempt = {
            a.idempotency_key
            for a in await self._repository.list_attempts(flow_id=flow_id, channel=channel)
            if a.outcome == "delivered"
        }

        rows = []
        for record in records:
            seen = signals.get((record.run_id, record.step_id), set())
            sent = record.status == "Sent"
            delivered = sent and (
                "delivered" in seen
                or f"{record.run_id}:{record.step_id}:{record.attempt_number}"
                in delivered_by_attempt
            )
            rows.append(
                AuditExportRow(
                    timestamp=record.timestamp,
                    channel=record.channel,
                    audience=record.audience,
                    status=record.status,
                    delivered=int(delivered),
                    opened=int(sent and "opened" in seen),
                    clicked=int(sent and "clicked" in seen),
                    cost=record.cost,
                )
            )
        return rows
