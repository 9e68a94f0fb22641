"""Engine facade wiring the stores, trigger listener, scheduler and sinks."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from .audience import InMemoryRecipientDirectory, RecipientDirectory
from .audit import AuditSink
from .channels import ChannelSwitchboard, MessageProvider, SandboxProvider, get_channel_adapters
from .clock import DEFAULT_CLOCK, Clock
from .config import DealflowConfig, load_config
from .contracts import (
    AuditExportRow,
    EngagementEvent,
    EngineMessage,
    FlowDefinition,
    MetricsSnapshot,
    Run,
    RunStatus,
)
from .errors import RunNotFound, ValidationError
from .flows import FlowStore
from .metrics import MetricsAggregator
from .persistence import EngineRepository, get_repository
from .scheduler import RunScheduler
from .templates import TemplateStore
from .transports import METRICS_TOPIC, BaseTransport, get_transport
from .triggers import TriggerListener

logger = logging.getLogger(__name__)


class Engine:
    """Single entry point for flow authoring, event intake and observability."""

    def __init__(
        self,
        config: Optional[DealflowConfig] = None,
        repository: Optional[EngineRepository] = None,
        transport: Optional[BaseTransport] = None,
        provider: Optional[MessageProvider] = None,
        clock: Optional[Clock] = None,
        directory: Optional[RecipientDirectory] = None,
        templates: Optional[TemplateStore] = None,
    ) -> None:
        self.config = config or load_config()
        self.clock = clock or DEFAULT_CLOCK
        self.repository = repository or get_repository(config=self.config)
        self.transport = transport or get_transport(config=self.config)
        self.provider = provider or SandboxProvider()
        self.directory = directory if directory is not None else InMemoryRecipientDirectory()

        self.templates = templates or TemplateStore()
        if templates is None and self.config.templates_path:
            self.templates.load(self.config.templates_path)

        self.switchboard = ChannelSwitchboard.from_config(self.config.channels)
        self.adapters = get_channel_adapters(self.provider, self.switchboard, self.config)
        self.flows = FlowStore(self.repository, self.templates)
        self.audit = AuditSink(self.repository)
        self.metrics = MetricsAggregator()
        self.scheduler = RunScheduler(
            self.repository,
            self.flows,
            self.templates,
            self.adapters,
            self.audit,
            self.transport,
            config=self.config,
            clock=self.clock,
            directory=self.directory,
        )
        self.triggers = TriggerListener(
            self.flows, self.repository, self.scheduler, self.directory, self.clock
        )

    # Flow authoring ----------------------------------------------------
    async def save_flow(self, flow: FlowDefinition | Dict[str, Any]) -> FlowDefinition:
        return await self.flows.save(flow)

    async def toggle_flow(self, flow_id: str, active: bool) -> FlowDefinition:
        """Activate or deactivate a flow.

        Deactivation stops new runs and, unless disabled in the scheduler
        config, cancels the flow's open runs.
        """
        flow = await self.flows.set_active(flow_id, active)
        if not active and self.config.scheduler.cancel_runs_on_deactivate:
            cancelled = await self.scheduler.cancel_flow(flow_id)
            if cancelled:
                logger.info(f"Cancelled {len(cancelled)} open run(s) of flow {flow_id}")
        return flow

    async def delete_flow(self, flow_id: str) -> None:
        await self.flows.delete(flow_id)

    async def duplicate_flow(
        self, flow_id: str, copy_id: Optional[str] = None, name: Optional[str] = None
    ) -> FlowDefinition:
        """Copy a flow's latest version under a new id. The copy starts inactive."""
        return await self.flows.duplicate(flow_id, copy_id, name)

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> FlowDefinition:
        return await self.flows.get(flow_id, version)

    async def list_flows(self) -> List[FlowDefinition]:
        return await self.flows.list()

    async def load_flows(self, path: str, activate: bool = False) -> List[FlowDefinition]:
        """Save every flow in a YAML file of the form ``flows: [ {...}, ... ]``."""
        if not os.path.exists(path):
            raise ValidationError(f"Flow file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("flows", []) if isinstance(data, dict) else data
        saved = []
        for entry in entries:
            if activate:
                entry = {**entry, "is_active": True}
            saved.append(await self.save_flow(entry))
        return saved

    # Trigger ingestion ---------------------------------------------------
    async def emit(self, event: Any) -> List[str]:
        return await self.triggers.on_event(event)

    # Observability -------------------------------------------------------
    async def get_run_status(self, run_id: str) -> RunStatus:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        attempts = await self.repository.list_attempts(run_id=run_id)
        return RunStatus(run=run, attempts=attempts)

    async def list_runs(
        self, flow_id: Optional[str] = None, state: Optional[str] = None
    ) -> List[Run]:
        states = [state] if state else None
        return await self.repository.list_runs(flow_id=flow_id, states=states)

    async def drain_metrics(self) -> int:
        """Apply queued attempt and engagement messages to the aggregator."""
        handled = 0
        while True:
            item = await self.transport.receive(METRICS_TOPIC)
            if item is None:
                return handled
            raw_message, message = item
            try:
                self.metrics.consume(message)
            except PydanticValidationError:
                logger.exception(f"Dropping malformed metrics message {message.message_id}")
            await self.transport.ack(raw_message)
            handled += 1

    async def rebuild_metrics(self) -> None:
        """Recompute the aggregator from the stored attempt and event log."""
        attempts = await self.repository.list_attempts()
        events = await self.repository.list_events()
        self.metrics.rebuild(attempts, events)

    async def get_metrics_snapshot(
        self,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> MetricsSnapshot:
        await self.drain_metrics()
        return self.metrics.snapshot(flow_id=flow_id, channel=channel, step_id=step_id)

    async def export_audit(
        self, flow_id: Optional[str] = None, channel: Optional[str] = None
    ) -> List[AuditExportRow]:
        return await self.audit.export(flow_id=flow_id, channel=channel)

    # Engagement ----------------------------------------------------------
    async def record_engagement(
        self,
        type: str,
        run_id: Optional[str] = None,
        step_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> EngagementEvent:
        """Persist a receipt or engagement signal and queue it for metrics.

        For run-scoped events the flow, channel and step default to the run's
        latest successful send.
        """
        if run_id is not None and (flow_id is None or channel is None or step_id is None):
            attempts = [
                a
                for a in await self.repository.list_attempts(run_id=run_id, step_id=step_id)
                if a.succeeded
            ]
            if not attempts:
                raise ValidationError(f"No successful send recorded for run {run_id}")
            latest = attempts[-1]
            flow_id = flow_id or latest.flow_id
            channel = channel or latest.channel
            step_id = step_id or latest.step_id

        try:
            event = EngagementEvent(
                type=type,
                run_id=run_id,
                step_id=step_id,
                flow_id=flow_id,
                channel=channel,
                timestamp=self.clock.now(),
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid engagement event: {e}") from e

        await self.repository.add_event(event)
        await self.transport.publish(
            METRICS_TOPIC,
            EngineMessage(
                kind="engagement", run_id=run_id, payload=event.model_dump(mode="json")
            ),
        )
        return event

    # Recipients and channels ---------------------------------------------
    async def opt_out(self, recipient_id: str) -> List[str]:
        """Cancel every open run of ``recipient_id`` and block new ones."""
        await self.directory.opt_out(recipient_id)
        return await self.scheduler.cancel_recipient(recipient_id)

    def set_channel_enabled(self, channel: str, enabled: bool) -> None:
        self.switchboard.set_enabled(channel, enabled)

    def channel_states(self) -> Dict[str, bool]:
        return self.switchboard.snapshot()

    # Processing ------------------------------------------------------------
    async def run_pending(self) -> int:
        """Process queued runs and metrics until both topics are empty."""
        total = 0
        while True:
            handled = await self.scheduler.drain()
            drained = await self.drain_metrics()
            total += handled
            if handled == 0 and drained == 0:
                return total

    async def tick(self) -> List[str]:
        """Wake runs whose timers are due and process them."""
        woken = await self.scheduler.wake_due()
        await self.run_pending()
        return woken

    async def recover(self) -> Dict[str, List[str]]:
        """Rebuild metrics and timers from storage after a restart."""
        await self.rebuild_metrics()
        return await self.scheduler.recover()

    async def _consume_metrics(self, lifespan: Optional[float] = None) -> None:
        async for raw_message, message in self.transport.subscribe(
            METRICS_TOPIC, lifespan=lifespan
        ):
            try:
                self.metrics.consume(message)
            except PydanticValidationError:
                logger.exception(f"Dropping malformed metrics message {message.message_id}")
            await self.transport.ack(raw_message)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Run scheduler workers and the metrics consumer until ``lifespan`` expires."""
        await self.transport.connect()
        try:
            await self.rebuild_metrics()
            await asyncio.gather(
                self.scheduler.start(lifespan=lifespan),
                self._consume_metrics(lifespan=lifespan),
            )
        finally:
            await self.transport.disconnect()
