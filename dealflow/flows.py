"""Flow definition store and definition-time validation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .contracts import ConditionStep, FlowDefinition, MessageStep, new_id, utcnow
from .errors import FlowNotFound, ValidationError
from .persistence import EngineRepository
from .templates import TemplateStore

logger = logging.getLogger(__name__)


def _walk(
    flow: FlowDefinition,
    sequence: Iterable[str],
    trail: Tuple[str, ...],
    reached: set[str],
) -> None:
    """Follow every execution path from ``sequence`` collecting reached steps."""
    for step_id in sequence:
        if step_id in trail:
            raise ValidationError(
                f"Flow {flow.id} has a cycle: {' -> '.join(trail + (step_id,))}"
            )
        trail = trail + (step_id,)
        reached.add(step_id)
        step = flow.get_step(step_id)
        if isinstance(step, ConditionStep):
            # The chosen branch replaces the rest of the sequence.
            _walk(flow, step.true_path, trail, reached)
            _walk(flow, step.false_path, trail, reached)
            return


def validate_flow(flow: FlowDefinition, templates: Optional[TemplateStore] = None) -> None:
    """Check structural invariants of ``flow``.

    Raises:
        ValidationError: On empty active flows, duplicate or dangling step IDs,
            cycles, unreachable steps, or unusable templates.
    """
    if flow.is_active and not flow.steps:
        raise ValidationError(f"Flow {flow.id} needs at least one step before activation")

    seen: set[str] = set()
    for step in flow.steps:
        if step.id in seen:
            raise ValidationError(f"Duplicate step id in flow {flow.id}: {step.id}")
        seen.add(step.id)

    for step in flow.steps:
        if isinstance(step, ConditionStep):
            for target in step.true_path + step.false_path:
                if target not in seen:
                    raise ValidationError(
                        f"Condition {step.id} references unknown step {target}"
                    )
                if target == step.id:
                    raise ValidationError(f"Condition {step.id} references itself")
        elif isinstance(step, MessageStep) and templates is not None:
            template = templates.get(step.template_ref)
            if not template.supports(step.channel):
                raise ValidationError(
                    f"Step {step.id}: template {template.id} ({template.channel}) "
                    f"cannot be sent over {step.channel}"
                )

    reached: set[str] = set()
    _walk(flow, flow.entry_sequence(), (), reached)
    orphans = [step.id for step in flow.steps if step.id not in reached]
    if orphans:
        raise ValidationError(
            f"Flow {flow.id} has unreachable steps: {', '.join(orphans)}"
        )


class FlowStore:
    """Versioned flow definitions on top of the engine repository.

    Stored versions never change, so pinned lookups are cached.
    """

    def __init__(
        self, repository: EngineRepository, templates: Optional[TemplateStore] = None
    ) -> None:
        self._repository = repository
        self._templates = templates
        self._pinned: Dict[Tuple[str, int], FlowDefinition] = {}

    @staticmethod
    def parse(data: FlowDefinition | Dict[str, Any]) -> FlowDefinition:
        if isinstance(data, FlowDefinition):
            return data
        try:
            return FlowDefinition.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid flow definition: {e}") from e

    async def save(self, data: FlowDefinition | Dict[str, Any]) -> FlowDefinition:
        """Validate and store a new version of a flow."""
        flow = self.parse(data)
        validate_flow(flow, self._templates)

        previous = await self._repository.get_flow(flow.id)
        now = utcnow()
        flow = flow.model_copy(
            update={
                "created_at": previous.created_at if previous else flow.created_at,
                "updated_at": now,
            }
        )
        stored = await self._repository.save_flow(flow)
        logger.info(
            f"Saved flow {stored.id} version {stored.version} (active={stored.is_active})"
        )
        return stored

    async def get(self, flow_id: str, version: Optional[int] = None) -> FlowDefinition:
        if version is not None and (flow_id, version) in self._pinned:
            return self._pinned[(flow_id, version)]
        flow = await self._repository.get_flow(flow_id, version)
        if flow is None:
            raise FlowNotFound(flow_id, version)
        if version is not None:
            self._pinned[(flow_id, version)] = flow
        return flow

    async def list(self) -> List[FlowDefinition]:
        return await self._repository.list_flows()

    async def active_flows(self, trigger_type: Optional[str] = None) -> List[FlowDefinition]:
        return [
            flow
            for flow in await self._repository.list_flows()
            if flow.is_active and (trigger_type is None or flow.trigger.type == trigger_type)
        ]

    async def set_active(self, flow_id: str, active: bool) -> FlowDefinition:
        flow = await self.get(flow_id)
        if active:
            validate_flow(flow.model_copy(update={"is_active": True}), self._templates)
        updated = await self._repository.set_flow_active(flow_id, active)
        if updated is None:
            raise FlowNotFound(flow_id)
        logger.info(f"Flow {flow_id} {'activated' if active else 'deactivated'}")
        return updated

    async def delete(self, flow_id: str) -> None:
        if not await self._repository.delete_flow(flow_id):
            raise FlowNotFound(flow_id)
        logger.info(f"Deleted flow {flow_id}; pinned versions remain readable")

    async def duplicate(
        self, flow_id: str, copy_id: Optional[str] = None, name: Optional[str] = None
    ) -> FlowDefinition:
        """Save the latest version of ``flow_id`` as a new, inactive flow."""
        source = await self.get(flow_id)
        copy_id = copy_id or new_id()
        if await self._repository.get_flow(copy_id) is not None:
            raise ValidationError(f"Flow {copy_id} already exists")
        now = utcnow()
        copy = source.model_copy(
            update={
                "id": copy_id,
                "name": name or f"{source.name} (Copy)",
                "is_active": False,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )
        stored = await self.save(copy)
        logger.info(f"Duplicated flow {flow_id} as {stored.id}")
        return stored
