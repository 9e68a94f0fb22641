"""Recipient lookup and broadcast audience resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .contracts import AudienceFilter


@dataclass
class Recipient:
    recipient_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)


class RecipientDirectory(Protocol):
    """Source of recipient attributes owned by the user-facing services."""

    async def get(self, recipient_id: str) -> Optional[Dict[str, Any]]:
        """Return the live attributes of a recipient, or ``None`` if unknown."""

    async def resolve(self, audience: AudienceFilter) -> List[Recipient]:
        """Expand a broadcast audience filter into recipients."""

    async def opt_out(self, recipient_id: str) -> None:
        """Flag a recipient so no trigger or broadcast reaches them again."""


class InMemoryRecipientDirectory:
    """Directory backed by a dict, suitable for tests and demos.

    Recognised attributes: ``country``, ``saved_deals`` (list of deal ids)
    and ``opted_out``. Opted-out recipients never appear in broadcasts.
    """

    def __init__(self, recipients: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._recipients: Dict[str, Dict[str, Any]] = dict(recipients or {})

    def upsert(self, recipient_id: str, **attributes: Any) -> None:
        self._recipients.setdefault(recipient_id, {}).update(attributes)

    async def get(self, recipient_id: str) -> Optional[Dict[str, Any]]:
        record = self._recipients.get(recipient_id)
        return dict(record) if record is not None else None

    async def opt_out(self, recipient_id: str) -> None:
        self.upsert(recipient_id, opted_out=True)

    async def resolve(self, audience: AudienceFilter) -> List[Recipient]:
        matched = []
        for recipient_id, attributes in self._recipients.items():
            if attributes.get("opted_out"):
                continue
            if audience.kind == "by_country":
                if str(attributes.get("country", "")).lower() != audience.country.lower():
                    continue
            elif audience.kind == "saved_deal_followers":
                saved = attributes.get("saved_deals") or []
                if not saved or (audience.deal_id and audience.deal_id not in saved):
                    continue
            matched.append(Recipient(recipient_id, dict(attributes)))
        return matched
