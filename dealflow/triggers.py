"""Trigger listener: turns domain events into runs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .audience import RecipientDirectory
from .clock import DEFAULT_CLOCK, Clock
from .contracts import (
    TRIGGER_TYPES,
    CustomBroadcastEvent,
    FlowDefinition,
    Run,
    trigger_event_adapter,
)
from .errors import ValidationError
from .flows import FlowStore
from .persistence import EngineRepository
from .scheduler import RunScheduler
from .utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

_ENVELOPE_FIELDS = {"type", "event_id", "context", "occurred_at", "audience_filter", "flow_id"}


def parse_event(event: Any) -> Optional[BaseModel]:
    """Validate a raw event. Returns ``None`` for trigger types we do not handle.

    Raises:
        ValidationError: If a known event type is malformed.
    """
    if isinstance(event, BaseModel):
        event = event.model_dump()
    if not isinstance(event, dict):
        raise ValidationError(f"Event must be a mapping, got {type(event).__name__}")

    event_type = event.get("type")
    if event_type not in TRIGGER_TYPES:
        logger.warning(f"Ignoring event with unknown trigger type: {event_type!r}")
        return None
    try:
        return trigger_event_adapter.validate_python(event)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {event_type} event: {e}") from e


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item) for item in value]


def _category_matches(trigger: Any, category: Any) -> bool:
    if trigger.deal_category:
        if category is None or str(category).lower() != trigger.deal_category.lower():
            return False
    if trigger.deal_categories:
        allowed = {name.lower() for name in trigger.deal_categories}
        if "all" not in allowed and (category is None or str(category).lower() not in allowed):
            return False
    return True


def trigger_matches(flow: FlowDefinition, event: Any, context: Dict[str, Any]) -> bool:
    """Return ``True`` if ``flow``'s trigger conditions hold for ``event``."""
    trigger = flow.trigger
    if trigger.type != event.type:
        return False
    if trigger.days is not None and getattr(event, "days", None) != trigger.days:
        return False
    if trigger.idle_days is not None:
        idle = getattr(event, "idle_days", None)
        if idle is None or idle < trigger.idle_days:
            return False
    if not _category_matches(trigger, context.get("deal_category")):
        return False
    if trigger.min_deal_value is not None:
        value = context.get("deal_value")
        try:
            if value is None or float(value) < trigger.min_deal_value:
                return False
        except (TypeError, ValueError):
            return False
    if trigger.user_segment and context.get("segment") != trigger.user_segment:
        return False
    if trigger.user_tags:
        # Any one shared tag is enough.
        tags = {tag.lower() for tag in _as_list(context.get("tags"))}
        if not tags.intersection(tag.lower() for tag in trigger.user_tags):
            return False
    return True


class TriggerListener:
    """Matches events against active flows and starts runs.

    At most one open run exists per (flow, recipient); re-delivered events
    are absorbed.
    """

    def __init__(
        self,
        flows: FlowStore,
        repository: EngineRepository,
        scheduler: RunScheduler,
        directory: Optional[RecipientDirectory] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._flows = flows
        self._repository = repository
        self._scheduler = scheduler
        self._directory = directory
        self._clock = clock or DEFAULT_CLOCK
        self._pair_locks: KeyedLocks[Tuple[str, str]] = KeyedLocks()

    async def _recipients(self, event: Any) -> List[Tuple[str, Dict[str, Any]]]:
        if isinstance(event, CustomBroadcastEvent):
            if self._directory is None:
                logger.warning("Broadcast received but no recipient directory is configured")
                return []
            resolved = await self._directory.resolve(event.audience_filter)
            return [(r.recipient_id, r.attributes) for r in resolved]

        attributes: Dict[str, Any] = {}
        if self._directory is not None:
            attributes = await self._directory.get(event.recipient_id) or {}
        return [(event.recipient_id, attributes)]

    async def on_event(self, event: Any) -> List[str]:
        """Start runs for every active flow matching ``event``.

        Returns the ids of the runs created by this call.
        """
        parsed = parse_event(event)
        if parsed is None:
            return []

        flows = await self._flows.active_flows(parsed.type)
        if isinstance(parsed, CustomBroadcastEvent) and parsed.flow_id:
            flows = [flow for flow in flows if flow.id == parsed.flow_id]
        if not flows:
            logger.debug(f"No active flow for {parsed.type} event {parsed.event_id}")
            return []

        recipients = await self._recipients(parsed)
        fields = parsed.model_dump(exclude=_ENVELOPE_FIELDS, exclude_none=True)

        created: List[str] = []
        for flow in flows:
            if isinstance(parsed, CustomBroadcastEvent):
                audience = parsed.audience_filter.label()
            else:
                audience = flow.name
            for recipient_id, attributes in recipients:
                if attributes.get("opted_out"):
                    logger.info(f"Recipient {recipient_id} opted out; no run for flow {flow.id}")
                    continue
                context = {**attributes, **parsed.context, **fields}
                context.setdefault("recipient_id", recipient_id)
                if not trigger_matches(flow, parsed, context):
                    continue
                run_id = await self._start_run(flow, parsed, recipient_id, context, audience)
                if run_id is not None:
                    created.append(run_id)

        if created:
            logger.info(f"{parsed.type} event {parsed.event_id} started {len(created)} run(s)")
        return created

    async def _start_run(
        self,
        flow: FlowDefinition,
        event: Any,
        recipient_id: str,
        context: Dict[str, Any],
        audience: str,
    ) -> Optional[str]:
        async with self._pair_locks.hold((flow.id, recipient_id)):
            existing = await self._repository.find_open_run(flow.id, recipient_id)
            if existing is not None:
                logger.info(
                    f"Recipient {recipient_id} already has open run {existing.id} "
                    f"for flow {flow.id}; event {event.event_id} ignored"
                )
                return None
            now = self._clock.now()
            run = Run(
                flow_id=flow.id,
                flow_version=flow.version,
                recipient_id=recipient_id,
                context=context,
                itinerary=flow.entry_sequence(),
                trigger_type=event.type,
                event_id=event.event_id,
                audience=audience,
                created_at=now,
                updated_at=now,
            )
            schedule = flow.trigger.schedule
            if schedule is not None and schedule.enabled:
                slot = schedule.next_slot(now)
                if slot > now:
                    run.state = "waiting"
                    run.wait_reason = "schedule"
                    run.wake_at = slot
            await self._repository.create_run(run)
        await self._scheduler.enqueue(run)
        return run.id
