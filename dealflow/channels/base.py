"""Channel adapter interface and shared rendering logic."""

from __future__ import annotations

import abc
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..config import ChannelConfig, ChannelsConfig
from ..contracts import CHANNELS, DeliveryAttempt, Template, attempt_key
from ..errors import (
    BouncedDelivery,
    ChannelDisabled,
    MessageTooLong,
    RenderWarning,
    ValidationError,
)
from .providers import MessageProvider

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

LIMIT_CLASS_CEILINGS: Dict[str, Optional[int]] = {
    "sms": 160,
    "whatsapp": 300,
    "unlimited": None,
}


@dataclass
class RenderedMessage:
    """A template rendered for one recipient."""

    channel: str
    body: str
    subject: Optional[str] = None
    from_identity: Optional[str] = None
    template_id: Optional[str] = None
    template_version: Optional[int] = None
    warnings: List[RenderWarning] = field(default_factory=list)


def substitute_tokens(
    text: str, context: Mapping[str, Any], warnings: List[RenderWarning]
) -> str:
    """Replace ``{{token}}`` placeholders, marking missing ones as ``[token]``."""

    def _replace(match: re.Match) -> str:
        token = match.group(1)
        value = context.get(token)
        if value is None:
            if all(warning.token != token for warning in warnings):
                warnings.append(
                    RenderWarning(token=token, message=f"Missing personalization token: {token}")
                )
            return f"[{token}]"
        return str(value)

    return TOKEN_PATTERN.sub(_replace, text)


class ChannelSwitchboard:
    """Process-wide kill switch per channel.

    Read at every send so a toggle reaches in-flight runs immediately.
    """

    def __init__(self, enabled: Optional[Mapping[str, bool]] = None) -> None:
        self._lock = threading.Lock()
        self._enabled: Dict[str, bool] = {channel: True for channel in CHANNELS}
        if enabled:
            for channel, value in enabled.items():
                self._check(channel)
                self._enabled[channel] = bool(value)

    @classmethod
    def from_config(cls, channels: ChannelsConfig) -> "ChannelSwitchboard":
        return cls({c: channels.for_channel(c).enabled for c in CHANNELS})

    @staticmethod
    def _check(channel: str) -> None:
        if channel not in CHANNELS:
            raise ValidationError(f"Unknown channel: {channel}")

    def is_enabled(self, channel: str) -> bool:
        with self._lock:
            return self._enabled.get(channel, False)

    def set_enabled(self, channel: str, enabled: bool) -> None:
        self._check(channel)
        with self._lock:
            self._enabled[channel] = enabled
        logger.info(f"Channel {channel} {'enabled' if enabled else 'disabled'}")

    def snapshot(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._enabled)


class ChannelAdapter(metaclass=abc.ABCMeta):
    """Renders templates and sends them over one channel."""

    channel: str = ""
    address_fields: tuple[str, ...] = ()

    def __init__(
        self,
        provider: MessageProvider,
        switchboard: ChannelSwitchboard,
        config: Optional[ChannelConfig] = None,
    ) -> None:
        self._provider = provider
        self._switchboard = switchboard
        self._config = config or ChannelConfig()

    @property
    def max_length(self) -> Optional[int]:
        return self._config.max_length

    @property
    def cost_per_message(self) -> float:
        return self._config.cost_per_message

    def ceiling_for(self, template: Template) -> Optional[int]:
        """Effective length ceiling: the tighter of channel and template class."""
        limits = [
            limit
            for limit in (self.max_length, LIMIT_CLASS_CEILINGS[template.limit_class])
            if limit is not None
        ]
        return min(limits) if limits else None

    def render(
        self,
        template: Template,
        context: Mapping[str, Any],
        personalizations: Iterable[str] = (),
        subject: Optional[str] = None,
        from_identity: Optional[str] = None,
    ) -> RenderedMessage:
        """Render ``template`` for one recipient.

        Raises:
            ValidationError: If the template is inactive or not usable on this channel.
            MessageTooLong: If the rendered body exceeds the channel ceiling.
        """
        if not template.is_active:
            raise ValidationError(f"Template {template.id} is inactive")
        if not template.supports(self.channel):
            raise ValidationError(
                f"Template {template.id} ({template.channel}) cannot be sent over {self.channel}"
            )

        warnings: List[RenderWarning] = []
        body = substitute_tokens(template.body, context, warnings)
        rendered_subject = self.render_subject(subject or template.subject, context, warnings)
        reported = {warning.token for warning in warnings}
        for token in personalizations:
            if context.get(token) is None and token not in reported:
                reported.add(token)
                warnings.append(
                    RenderWarning(token=token, message=f"Missing personalization token: {token}")
                )

        limit = self.ceiling_for(template)
        if limit is not None and len(body) > limit:
            raise MessageTooLong(self.channel, len(body), limit)

        for warning in warnings:
            logger.warning(f"Render warning for template {template.id}: {warning}")

        return RenderedMessage(
            channel=self.channel,
            body=self.format_body(body),
            subject=rendered_subject,
            from_identity=from_identity,
            template_id=template.id,
            template_version=template.version,
            warnings=warnings,
        )

    def render_subject(
        self,
        subject: Optional[str],
        context: Mapping[str, Any],
        warnings: List[RenderWarning],
    ) -> Optional[str]:
        return None

    def format_body(self, body: str) -> str:
        return body

    def resolve_address(self, context: Mapping[str, Any]) -> str:
        """Pick the recipient address for this channel from ``context``."""
        for name in self.address_fields:
            value = context.get(name)
            if value:
                return str(value)
        raise ValidationError(
            f"Recipient has no {self.channel} address (looked for {', '.join(self.address_fields)})"
        )

    async def send(
        self,
        rendered: RenderedMessage,
        address: str,
        *,
        run_id: str,
        flow_id: str,
        step_id: str,
        attempt_number: int,
    ) -> DeliveryAttempt:
        """Send ``rendered`` and return the resulting attempt record.

        Raises:
            ChannelDisabled: If the channel is switched off right now.
            DeliveryFailure: If the provider failed transiently.
            BouncedDelivery: If the provider rejected the address permanently.
        """
        if not self._switchboard.is_enabled(self.channel):
            raise ChannelDisabled(self.channel)

        key = attempt_key(run_id, step_id, attempt_number)
        receipt = await self._provider.deliver(self.channel, address, rendered, key)
        if receipt.status == "bounced":
            raise BouncedDelivery(f"{self.channel} address bounced: {address}")

        logger.info(
            f"Sent {self.channel} message for run {run_id} step {step_id} attempt {attempt_number}"
        )
        return DeliveryAttempt(
            run_id=run_id,
            flow_id=flow_id,
            step_id=step_id,
            channel=self.channel,
            attempt_number=attempt_number,
            outcome=receipt.status,
            cost=self.cost_per_message,
            provider_message_id=receipt.message_id,
        )
