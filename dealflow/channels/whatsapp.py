"""WhatsApp channel adapter."""

from __future__ import annotations

from .base import ChannelAdapter


class WhatsAppAdapter(ChannelAdapter):
    """Plain text, 300 characters at most. Falls back to the phone number."""

    channel = "whatsapp"
    address_fields = ("whatsapp", "phone")
