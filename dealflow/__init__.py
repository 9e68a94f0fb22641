"""Dealflow: automated messaging workflows for the deals admin console."""

from .audience import InMemoryRecipientDirectory, Recipient
from .channels import SandboxProvider, get_channel_adapters
from .clock import MockClock, SystemClock
from .config import DealflowConfig, load_config
from .contracts import (
    ConditionStep,
    DelayStep,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    FlowTrigger,
    MessageStep,
    Run,
    Template,
    TriggerSchedule,
)
from .engine import Engine
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ConditionStep",
    "DealflowConfig",
    "DelayStep",
    "DeliveryAttempt",
    "EngagementEvent",
    "Engine",
    "FlowDefinition",
    "FlowTrigger",
    "InMemoryRecipientDirectory",
    "MessageStep",
    "MockClock",
    "Recipient",
    "Run",
    "SandboxProvider",
    "SystemClock",
    "Template",
    "TriggerSchedule",
    "get_channel_adapters",
    "get_repository",
    "get_transport",
    "load_config",
]
