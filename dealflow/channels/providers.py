"""Delivery providers behind the channel adapters.

Real SMS, WhatsApp and email gateways live outside this package; they only
have to satisfy ``MessageProvider``. ``SandboxProvider`` keeps an in-process
outbox and is the default for tests and local runs.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Deque, Dict, List, Literal, Optional, Protocol

from ..errors import DeliveryFailure

if TYPE_CHECKING:
    from .base import RenderedMessage


@dataclass(frozen=True)
class ProviderReceipt:
    message_id: str
    status: Literal["sent", "delivered", "bounced"] = "sent"


@dataclass(frozen=True)
class OutboxEntry:
    channel: str
    address: str
    body: str
    subject: Optional[str]
    idempotency_key: str
    message_id: str


class MessageProvider(Protocol):
    """Gateway that hands a rendered message to the outside world."""

    async def deliver(
        self, channel: str, address: str, message: "RenderedMessage", idempotency_key: str
    ) -> ProviderReceipt:
        """Deliver ``message``; raise ``DeliveryFailure`` on transient errors.

        Repeated calls with the same ``idempotency_key`` must not send twice.
        """


class SandboxProvider:
    """Records messages instead of sending them.

    Failures can be scripted per channel with ``fail_next`` and permanent
    rejections with ``bounce_address``.
    """

    def __init__(self, status: Literal["sent", "delivered"] = "sent") -> None:
        self.outbox: List[OutboxEntry] = []
        self._status = status
        self._receipts: Dict[str, ProviderReceipt] = {}
        self._failures: Dict[str, Deque[str]] = {}
        self._bounced: set[str] = set()
        self._lock = asyncio.Lock()

    def fail_next(self, channel: str, count: int = 1, reason: str = "gateway timeout") -> None:
        queue = self._failures.setdefault(channel, deque())
        queue.extend([reason] * count)

    def bounce_address(self, address: str) -> None:
        self._bounced.add(address)

    def sent_to(self, address: str) -> List[OutboxEntry]:
        return [entry for entry in self.outbox if entry.address == address]

    async def deliver(
        self, channel: str, address: str, message: "RenderedMessage", idempotency_key: str
    ) -> ProviderReceipt:
        async with self._lock:
            existing = self._receipts.get(idempotency_key)
            if existing is not None:
                return existing

            failures = self._failures.get(channel)
            if failures:
                raise DeliveryFailure(f"{channel} provider error: {failures.popleft()}")

            message_id = str(uuid.uuid4())
            if address in self._bounced:
                receipt = ProviderReceipt(message_id=message_id, status="bounced")
            else:
                receipt = ProviderReceipt(message_id=message_id, status=self._status)
                self.outbox.append(
                    OutboxEntry(
                        channel=channel,
                        address=address,
                        body=message.body,
                        subject=message.subject,
                        idempotency_key=idempotency_key,
                        message_id=message_id,
                    )
                )
            self._receipts[idempotency_key] = receipt
            return receipt
