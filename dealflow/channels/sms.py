"""SMS channel adapter."""

from __future__ import annotations

from .base import ChannelAdapter


class SMSAdapter(ChannelAdapter):
    """Plain text, 160 characters at most."""

    channel = "sms"
    address_fields = ("phone",)
