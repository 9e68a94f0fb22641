"""Channel adapters and factory."""

from __future__ import annotations

from typing import Dict, Optional

from ..config import ChannelsConfig, DealflowConfig, load_config
from .base import ChannelAdapter, ChannelSwitchboard, RenderedMessage
from .email import EmailAdapter
from .providers import MessageProvider, ProviderReceipt, SandboxProvider
from .sms import SMSAdapter
from .whatsapp import WhatsAppAdapter

ADAPTER_CLASSES = {
    "email": EmailAdapter,
    "sms": SMSAdapter,
    "whatsapp": WhatsAppAdapter,
}


def get_channel_adapters(
    provider: Optional[MessageProvider] = None,
    switchboard: Optional[ChannelSwitchboard] = None,
    config: Optional[DealflowConfig] = None,
) -> Dict[str, ChannelAdapter]:
    """Build one adapter per channel sharing ``provider`` and ``switchboard``."""

    channels: ChannelsConfig = (config or load_config()).channels
    provider = provider or SandboxProvider()
    switchboard = switchboard or ChannelSwitchboard.from_config(channels)
    return {
        name: cls(provider, switchboard, channels.for_channel(name))
        for name, cls in ADAPTER_CLASSES.items()
    }


__all__ = [
    "ChannelAdapter",
    "ChannelSwitchboard",
    "EmailAdapter",
    "MessageProvider",
    "ProviderReceipt",
    "RenderedMessage",
    "SMSAdapter",
    "SandboxProvider",
    "WhatsAppAdapter",
    "get_channel_adapters",
]
