"""Delivery, engagement and cost rollups.

Counters are kept per ``(flow_id, channel, step_id)`` key and summed on
demand, so any combination of filters can be answered. Engagement tied to a
run counts once per ``(run, step, type)``; aggregate events without a run id
count every time. The result depends only on the set of records seen, never
on their order, so ``rebuild`` over the stored log reproduces the
incrementally maintained numbers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from .contracts import DeliveryAttempt, EngagementEvent, EngineMessage, MetricsSnapshot

logger = logging.getLogger(__name__)

MetricsKey = Tuple[Optional[str], Optional[str], Optional[str]]


@dataclass
class _Counter:
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    failed: int = 0
    cost: float = 0.0


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


class MetricsAggregator:
    """Monotonic counters derived from the attempt and engagement streams."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self._counters: Dict[MetricsKey, _Counter] = {}
        self._seen: set[Tuple[str, Optional[str], str]] = set()
        self._attempts_seen: set[str] = set()
        self._routes: Dict[Tuple[str, Optional[str]], Tuple[str, str]] = {}

    def _counter(self, key: MetricsKey) -> _Counter:
        counter = self._counters.get(key)
        if counter is None:
            counter = self._counters[key] = _Counter()
        return counter

    # ------------------------------------------------------------------
    def record_attempt(self, attempt: DeliveryAttempt) -> None:
        with self._lock:
            if attempt.idempotency_key in self._attempts_seen:
                return
            self._attempts_seen.add(attempt.idempotency_key)
            self._routes[(attempt.run_id, attempt.step_id)] = (attempt.flow_id, attempt.channel)
            counter = self._counter((attempt.flow_id, attempt.channel, attempt.step_id))
            counter.cost += attempt.cost
            if attempt.succeeded:
                counter.sent += 1
                if attempt.outcome == "delivered":
                    self._mark(counter, attempt.run_id, attempt.step_id, "delivered")
            elif attempt.outcome == "bounced":
                # A later bounce receipt for the same send must not count again.
                self._mark(counter, attempt.run_id, attempt.step_id, "bounced")
            else:
                counter.failed += 1

    def record_event(self, event: EngagementEvent) -> None:
        with self._lock:
            flow_id, channel = event.flow_id, event.channel
            if event.run_id is not None and (flow_id is None or channel is None):
                route = self._routes.get((event.run_id, event.step_id))
                if route is None:
                    logger.warning(
                        f"Engagement {event.type} for unknown send {event.run_id}/{event.step_id}"
                    )
                    return
                flow_id, channel = route
            counter = self._counter((flow_id, channel, event.step_id))
            if event.run_id is None:
                self._bump(counter, event.type)
            else:
                self._mark(counter, event.run_id, event.step_id, event.type)

    def _mark(
        self, counter: _Counter, run_id: str, step_id: Optional[str], kind: str
    ) -> None:
        key = (run_id, step_id, kind)
        if key in self._seen:
            return
        self._seen.add(key)
        self._bump(counter, kind)

    @staticmethod
    def _bump(counter: _Counter, kind: str) -> None:
        if kind == "delivered":
            counter.delivered += 1
        elif kind == "opened":
            counter.opened += 1
        elif kind == "clicked":
            counter.clicked += 1
        elif kind == "bounced":
            counter.failed += 1

    def consume(self, message: EngineMessage) -> None:
        """Apply a message from the metrics topic."""
        if message.kind == "attempt":
            self.record_attempt(DeliveryAttempt.model_validate(message.payload))
        elif message.kind == "engagement":
            self.record_event(EngagementEvent.model_validate(message.payload))
        else:
            logger.warning(f"Ignoring {message.kind} message on metrics topic")

    def rebuild(
        self, attempts: Iterable[DeliveryAttempt], events: Iterable[EngagementEvent]
    ) -> None:
        """Discard all counters and recompute them from the log."""
        with self._lock:
            self._reset()
        for attempt in attempts:
            self.record_attempt(attempt)
        for event in events:
            self.record_event(event)

    # ------------------------------------------------------------------
    def snapshot(
        self,
        flow_id: Optional[str] = None,
        channel: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> MetricsSnapshot:
        """Sum the counters matching every given filter."""
        total = _Counter()
        with self._lock:
            for (k_flow, k_channel, k_step), counter in sorted(
                self._counters.items(),
                key=lambda item: tuple("" if part is None else part for part in item[0]),
            ):
                if flow_id is not None and k_flow != flow_id:
                    continue
                if channel is not None and k_channel != channel:
                    continue
                if step_id is not None and k_step != step_id:
                    continue
                total.sent += counter.sent
                total.delivered += counter.delivered
                total.opened += counter.opened
                total.clicked += counter.clicked
                total.failed += counter.failed
                total.cost += counter.cost

        cost = round(total.cost, 6)
        return MetricsSnapshot(
            sent=total.sent,
            delivered=total.delivered,
            opened=total.opened,
            clicked=total.clicked,
            failed=total.failed,
            cost=cost,
            open_rate=_ratio(total.opened, total.delivered),
            click_rate=_ratio(total.clicked, total.opened),
            cost_per_click=_ratio(cost, total.clicked),
        )
