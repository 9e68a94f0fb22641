"""Error taxonomy for the messaging engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class DealflowError(Exception):
    """Base class for all engine errors."""


class ValidationError(DealflowError, ValueError):
    """Malformed flow, template or event. Raised before any state change."""


class TemplateNotFound(ValidationError):
    def __init__(self, template_id: str, version: Optional[int] = None) -> None:
        self.template_id = template_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Template not found: {template_id}{suffix}")


class FlowNotFound(DealflowError, LookupError):
    def __init__(self, flow_id: str, version: Optional[int] = None) -> None:
        self.flow_id = flow_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Flow not found: {flow_id}{suffix}")


class RunNotFound(DealflowError, LookupError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class MessageTooLong(DealflowError):
    """Rendered message exceeds the channel ceiling. Never truncated."""

    def __init__(self, channel: str, length: int, limit: int) -> None:
        self.channel = channel
        self.length = length
        self.limit = limit
        super().__init__(
            f"Message too long for {channel}: {length} chars (max {limit})"
        )


class DeliveryFailure(DealflowError):
    """Transient send failure. The scheduler retries these."""


class ChannelDisabled(DeliveryFailure):
    """Channel is switched off globally at send time."""

    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"Channel disabled: {channel}")


class BouncedDelivery(DealflowError):
    """Provider rejected the recipient address permanently."""


class UnrecoverableFailure(DealflowError):
    """Retry budget exhausted for a message step."""

    def __init__(self, run_id: str, step_id: str, attempts: int, reason: str) -> None:
        self.run_id = run_id
        self.step_id = step_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Run {run_id} step {step_id} failed after {attempts} attempts: {reason}"
        )


@dataclass(frozen=True)
class RenderWarning:
    """Non-fatal rendering problem, such as a missing personalization token."""

    token: str
    message: str

    def __str__(self) -> str:
        return self.message
