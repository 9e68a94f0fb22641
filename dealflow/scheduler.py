"""Run scheduler: executes flow steps for each run.

Runs are advanced by workers consuming the ``runs`` topic. Each run is
guarded by its own ``asyncio.Lock`` so its steps execute strictly in order
while different runs proceed concurrently. Delays and retry back-offs put
the run into ``waiting`` with a durable ``wake_at``; the in-process min-heap
only decides when to re-enqueue it, and ``recover`` rebuilds it from storage.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from .audience import RecipientDirectory
from .audit import AuditSink
from .channels import ChannelAdapter
from .clock import DEFAULT_CLOCK, Clock
from .config import DealflowConfig
from .contracts import (
    TERMINAL_STATES,
    ConditionStep,
    DelayStep,
    DeliveryAttempt,
    EngineMessage,
    FlowDefinition,
    MessageStep,
    Run,
)
from .errors import (
    BouncedDelivery,
    DeliveryFailure,
    MessageTooLong,
    RunNotFound,
    UnrecoverableFailure,
    ValidationError,
)
from .flows import FlowStore
from .persistence import EngineRepository
from .templates import TemplateStore
from .transports import METRICS_TOPIC, RUNS_TOPIC, BaseTransport
from .utils.locks import KeyedLocks
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

OPEN_STATES = ("pending", "waiting", "running")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a condition operator to a recipient attribute.

    Condition values often arrive as strings from the flow editor, so
    ``equals`` compares as booleans when either side is one, numerically when
    both sides parse as numbers, and as text otherwise. The ordering
    operators compare numerically and are false for non-numbers.
    """
    if operator == "equals":
        if isinstance(actual, bool) or isinstance(expected, bool):
            if actual is None:
                return False
            return _as_bool(actual) == _as_bool(expected)
        left, right = _as_number(actual), _as_number(expected)
        if left is not None and right is not None:
            return left == right
        if actual is None or expected is None:
            return actual is expected
        return str(actual) == str(expected)

    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return any(str(item).lower() == str(expected).lower() for item in actual)
        return str(expected).lower() in str(actual).lower()

    if operator in ("greater_than", "less_than"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right

    raise ValidationError(f"Unknown condition operator: {operator}")


class RunScheduler:
    """Drives runs through their pinned flow version."""

    def __init__(
        self,
        repository: EngineRepository,
        flows: FlowStore,
        templates: TemplateStore,
        adapters: Dict[str, ChannelAdapter],
        audit: AuditSink,
        transport: BaseTransport,
        config: Optional[DealflowConfig] = None,
        clock: Optional[Clock] = None,
        directory: Optional[RecipientDirectory] = None,
    ) -> None:
        self._repository = repository
        self._flows = flows
        self._templates = templates
        self._adapters = adapters
        self._audit = audit
        self._transport = transport
        self._config = config or DealflowConfig()
        self._clock = clock or DEFAULT_CLOCK
        self._directory = directory
        self._locks: KeyedLocks[str] = KeyedLocks()
        self._wake_heap: List[Tuple[datetime, str]] = []
        self._cancel_requested: Set[str] = set()
        self._semaphore = asyncio.Semaphore(self._config.scheduler.max_concurrency)
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Queueing

    async def submit(self, run_id: str) -> None:
        """Enqueue ``run_id`` for execution on the runs topic."""
        await self._transport.publish(
            RUNS_TOPIC, EngineMessage(kind="run", run_id=run_id)
        )

    async def enqueue(self, run: Run) -> None:
        """Submit a new run, or park it on the timer heap if it starts later."""
        if run.state == "waiting" and run.wake_at is not None and run.wake_at > self._clock.now():
            self._schedule(run)
            logger.info(f"Run {run.id} held until {run.wake_at.isoformat()} ({run.wait_reason})")
            return
        await self.submit(run.id)

    def _schedule(self, run: Run) -> None:
        if run.wake_at is not None:
            heapq.heappush(self._wake_heap, (run.wake_at, run.id))

    def next_wake_at(self) -> Optional[datetime]:
        return self._wake_heap[0][0] if self._wake_heap else None

    async def wake_due(self) -> List[str]:
        """Re-enqueue every run whose ``wake_at`` has passed."""
        now = self._clock.now()
        due: List[str] = []
        while self._wake_heap and self._wake_heap[0][0] <= now:
            _, run_id = heapq.heappop(self._wake_heap)
            if run_id not in due:
                due.append(run_id)
        for run_id in due:
            await self.submit(run_id)
        if due:
            logger.debug(f"Woke {len(due)} due run(s)")
        return due

    async def recover(self) -> Dict[str, List[str]]:
        """Rebuild timers from storage after a restart.

        Waiting runs go back on the heap (due ones are enqueued right away)
        and runs left ``pending`` or ``running`` are enqueued again.
        """
        self._wake_heap = []
        requeued: List[str] = []
        for run in await self._repository.list_runs(states=["pending", "running"]):
            await self.submit(run.id)
            requeued.append(run.id)
        for run in await self._repository.list_runs(states=["waiting"]):
            self._schedule(run)
        woken = await self.wake_due()
        logger.info(
            f"Recovered {len(requeued)} interrupted and {len(woken)} due run(s); "
            f"{len(self._wake_heap)} timer(s) pending"
        )
        return {"requeued": requeued, "woken": woken}

    async def _handle(self, raw_message: Any, message: EngineMessage) -> None:
        try:
            if message.kind != "run" or message.run_id is None:
                logger.warning(f"Ignoring {message.kind} message on runs topic")
            else:
                await self.advance(message.run_id)
        except RunNotFound as e:
            logger.warning(str(e))
        except Exception:
            logger.exception(f"Failed to process message {message.message_id}")
        finally:
            await self._transport.ack(raw_message)

    async def drain(self) -> int:
        """Process queued run messages until the topic is empty."""
        handled = 0
        while True:
            item = await self._transport.receive(RUNS_TOPIC)
            if item is None:
                return handled
            raw_message, message = item
            await self._handle(raw_message, message)
            handled += 1

    async def _handle_with_permit(self, raw_message: Any, message: EngineMessage) -> None:
        try:
            await self._handle(raw_message, message)
        finally:
            self._semaphore.release()

    async def _waker_loop(self) -> None:
        while True:
            await self.wake_due()
            await asyncio.sleep(self._config.scheduler.poll_interval)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume the runs topic with at most ``max_concurrency`` runs in flight."""
        await self.recover()
        waker = asyncio.create_task(self._waker_loop())
        try:
            async for raw_message, message in self._transport.subscribe(
                RUNS_TOPIC, lifespan=lifespan
            ):
                await self._semaphore.acquire()
                task = asyncio.create_task(self._handle_with_permit(raw_message, message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            waker.cancel()
            await asyncio.gather(waker, *self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Cancellation

    async def cancel(self, run_id: str, reason: str = "cancelled") -> Run:
        """Cancel a run.

        A step already in flight finishes first: the call waits for the worker
        holding the run, which stops before its next step, then marks the run
        cancelled if it is still open.
        """
        if self._locks.locked(run_id):
            self._cancel_requested.add(run_id)
            logger.info(f"Cancellation of run {run_id} requested while a step is in flight")
        try:
            async with self._locks.hold(run_id):
                run = await self._load(run_id)
                if not run.is_terminal:
                    await self._mark_cancelled(run, reason)
        finally:
            self._cancel_requested.discard(run_id)
        return run

    async def cancel_flow(self, flow_id: str, reason: str = "flow deactivated") -> List[str]:
        runs = await self._repository.list_runs(flow_id=flow_id, states=OPEN_STATES)
        for run in runs:
            await self.cancel(run.id, reason)
        return [run.id for run in runs]

    async def cancel_recipient(
        self, recipient_id: str, reason: str = "recipient opted out"
    ) -> List[str]:
        runs = await self._repository.list_runs(recipient_id=recipient_id, states=OPEN_STATES)
        for run in runs:
            await self.cancel(run.id, reason)
        return [run.id for run in runs]

    async def _mark_cancelled(self, run: Run, reason: str) -> None:
        run.state = "cancelled"
        run.wake_at = None
        run.wait_reason = None
        run.last_error = reason
        await self._save(run)
        logger.info(f"Run {run.id} cancelled: {reason}")

    # ------------------------------------------------------------------
    # Execution

    async def _load(self, run_id: str) -> Run:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def _save(self, run: Run) -> None:
        run.updated_at = self._clock.now()
        await self._repository.update_run(run)

    async def advance(self, run_id: str) -> Run:
        """Execute steps of ``run_id`` until it waits or terminates."""
        async with self._locks.hold(run_id):
            run = await self._load(run_id)
            await self._advance(run)
        return run

    async def _advance(self, run: Run) -> None:
        if run.is_terminal:
            return
        if run.state == "waiting":
            if run.wake_at is not None and run.wake_at > self._clock.now():
                self._schedule(run)
                return
            run.wake_at = None
            run.wait_reason = None

        try:
            flow = await self._flows.get(run.flow_id, run.flow_version)
            run.state = "running"
            await self._save(run)

            while True:
                if run.id in self._cancel_requested:
                    logger.info(f"Run {run.id} stopping before {run.current_step_id}: cancel pending")
                    return
                step_id = run.current_step_id
                if step_id is None:
                    run.state = "completed"
                    await self._save(run)
                    logger.info(f"Run {run.id} of flow {run.flow_id} completed")
                    return
                proceed = await self._execute(run, flow, step_id)
                if run.state in TERMINAL_STATES:
                    return
                if not proceed:
                    return
        except Exception as e:
            logger.exception(f"Unexpected error while advancing run {run.id}")
            await self._fail(run, f"Unexpected error: {e}")

    async def _execute(self, run: Run, flow: FlowDefinition, step_id: str) -> bool:
        step = flow.get_step(step_id)
        if isinstance(step, MessageStep):
            return await self._run_message(run, flow, step)
        if isinstance(step, DelayStep):
            return await self._run_delay(run, step)
        if isinstance(step, ConditionStep):
            return await self._run_condition(run, step)
        raise ValidationError(f"Unsupported step type: {type(step).__name__}")

    async def _run_delay(self, run: Run, step: DelayStep) -> bool:
        run.advance()
        run.state = "waiting"
        run.wait_reason = "delay"
        run.wake_at = self._clock.now() + step.as_timedelta()
        await self._save(run)
        self._schedule(run)
        logger.info(f"Run {run.id} waiting until {run.wake_at.isoformat()} after {step.id}")
        return False

    async def _lookup(self, run: Run, field: str) -> Any:
        if self._directory is not None:
            record = await self._directory.get(run.recipient_id)
            if record is not None and field in record:
                return record[field]
        return run.context.get(field)

    async def _run_condition(self, run: Run, step: ConditionStep) -> bool:
        actual = await self._lookup(run, step.field)
        taken = evaluate_condition(step.operator, actual, step.value)
        path = step.true_path if taken else step.false_path
        run.executed.append(step.id)
        run.itinerary = list(path)
        run.attempt = 1
        await self._save(run)
        logger.info(
            f"Run {run.id} condition {step.id} ({step.field} {step.operator} {step.value!r}) "
            f"-> {'true' if taken else 'false'} path"
        )
        return True

    async def _run_message(self, run: Run, flow: FlowDefinition, step: MessageStep) -> bool:
        previous = await self._repository.list_attempts(run_id=run.id, step_id=step.id)
        if any(attempt.succeeded for attempt in previous):
            logger.info(f"Run {run.id} step {step.id} already sent; skipping")
            run.advance()
            await self._save(run)
            return True

        attempt_number = max(
            [run.attempt] + [attempt.attempt_number + 1 for attempt in previous]
        )
        max_attempts = self._config.retry.max_attempts
        if attempt_number > max_attempts:
            reason = previous[-1].error if previous else "retry budget exhausted"
            error = UnrecoverableFailure(run.id, step.id, max_attempts, reason or "")
            await self._fail(run, str(error), channel=step.channel)
            return False

        adapter = self._adapters[step.channel]
        try:
            template = self._templates.get(step.template_ref)
            rendered = adapter.render(
                template,
                run.context,
                personalizations=step.personalizations,
                subject=step.subject,
                from_identity=step.from_identity,
            )
            address = adapter.resolve_address(run.context)
        except (ValidationError, MessageTooLong) as e:
            await self._fail(run, str(e), channel=step.channel)
            return False

        try:
            attempt = await adapter.send(
                rendered,
                address,
                run_id=run.id,
                flow_id=flow.id,
                step_id=step.id,
                attempt_number=attempt_number,
            )
        except BouncedDelivery as e:
            await self._record(run, self._unsent(run, step, attempt_number, "bounced", str(e)))
            await self._fail(run, str(e), channel=step.channel)
            return False
        except DeliveryFailure as e:
            await self._record(run, self._unsent(run, step, attempt_number, "failed", str(e)))
            return await self._retry_or_fail(run, step, attempt_number, str(e))

        await self._record(run, attempt.model_copy(update={"timestamp": self._clock.now()}))
        run.advance()
        run.last_error = None
        await self._save(run)
        return True

    def _unsent(
        self, run: Run, step: MessageStep, attempt_number: int, outcome: str, error: str
    ) -> DeliveryAttempt:
        return DeliveryAttempt(
            run_id=run.id,
            flow_id=run.flow_id,
            step_id=step.id,
            channel=step.channel,
            attempt_number=attempt_number,
            outcome=outcome,
            cost=0.0,
            error=error,
            timestamp=self._clock.now(),
        )

    async def _record(self, run: Run, attempt: DeliveryAttempt) -> None:
        if not await self._repository.add_attempt(attempt):
            logger.warning(f"Attempt {attempt.idempotency_key} already recorded")
            return
        await self._audit.record_attempt(run, attempt)
        await self._transport.publish(
            METRICS_TOPIC,
            EngineMessage(
                kind="attempt", run_id=run.id, payload=attempt.model_dump(mode="json")
            ),
        )

    async def _retry_or_fail(
        self, run: Run, step: MessageStep, attempt_number: int, reason: str
    ) -> bool:
        retry = self._config.retry
        if attempt_number >= retry.max_attempts:
            error = UnrecoverableFailure(run.id, step.id, attempt_number, reason)
            await self._fail(run, str(error), channel=step.channel)
            return False

        delay = compute_backoff(
            attempt_number, base=retry.base_delay, factor=retry.factor, jitter=retry.jitter
        )
        run.attempt = attempt_number + 1
        run.state = "waiting"
        run.wait_reason = "retry"
        run.wake_at = self._clock.now() + timedelta(seconds=delay)
        run.last_error = reason
        await self._save(run)
        self._schedule(run)
        logger.warning(
            f"Run {run.id} step {step.id} attempt {attempt_number} failed ({reason}); "
            f"retrying in {delay:.1f}s"
        )
        return False

    async def _fail(self, run: Run, reason: str, channel: Optional[str] = None) -> None:
        run.state = "failed"
        run.last_error = reason
        run.wake_at = None
        run.wait_reason = None
        await self._save(run)
        await self._audit.record_run_failure(run, reason, channel=channel)
