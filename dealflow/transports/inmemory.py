"""In-process topics for tests and single-worker deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from ..contracts import EngineMessage
from .base import BaseTransport

# (topic, message) so a nacked message knows where to go back to.
RawInMemory = Tuple[str, EngineMessage]


class InMemoryTransport(BaseTransport[RawInMemory]):
    """One deque per topic. Nothing survives the process."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[EngineMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: EngineMessage) -> None:
        async with self._lock:
            self._queues[topic].append(message)

    async def receive(self, topic: str) -> Optional[Tuple[RawInMemory, EngineMessage]]:
        async with self._lock:
            queue = self._queues[topic]
            if not queue:
                return None
            message = queue.popleft()
        return (topic, message), message

    async def nack(self, raw_message: RawInMemory, requeue: bool = True) -> None:
        if not requeue:
            return
        topic, message = raw_message
        async with self._lock:
            self._queues[topic].appendleft(message)

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return len(self._queues[topic])
