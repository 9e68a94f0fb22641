"""Queue topics shared by the trigger listener, scheduler and metrics consumer."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import EngineMessage

RawMessageT = TypeVar("RawMessageT")

# Run ids waiting to be advanced.
RUNS_TOPIC = "runs"
# Delivery attempts and engagement signals for the metrics aggregator.
METRICS_TOPIC = "metrics"

Received = Tuple[RawMessageT, EngineMessage]


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Named FIFO topics carrying :class:`EngineMessage` envelopes.

    Backends implement a non-blocking ``receive``. ``subscribe`` builds a
    bounded consumer loop on top of it, so ``Engine.run_pending`` can drain a
    topic and a worker can consume one for ``lifespan`` seconds with the same
    backend.
    """

    poll_interval: float = 0.1

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: EngineMessage) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def receive(self, topic: str) -> Optional[Received]:
        """Take the oldest message of ``topic``, or ``None`` when it is empty."""
        raise NotImplementedError

    async def wait_for(self, topic: str, timeout: float) -> Optional[Received]:
        """Take a message, waiting up to ``timeout`` seconds for one to arrive."""
        item = await self.receive(topic)
        if item is None and timeout > 0:
            await asyncio.sleep(timeout)
        return item

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Received]:
        """Yield messages of ``topic`` until ``lifespan`` seconds pass (forever if ``None``)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        while deadline is None or loop.time() < deadline:
            timeout = self.poll_interval
            if deadline is not None:
                timeout = min(timeout, max(deadline - loop.time(), 0.0))
            item = await self.wait_for(topic, timeout)
            if item is not None:
                yield item

    async def ack(self, raw_message: RawMessageT) -> None:
        """Confirm processing. Messages leave the topic on receive, so this is a no-op."""

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give a received message back, or drop it when ``requeue`` is false."""
        raise NotImplementedError
