"""Core data contracts for the dealflow messaging engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

Channel = Literal["email", "sms", "whatsapp"]
CHANNELS: tuple[str, ...] = get_args(Channel)

RunState = Literal["pending", "waiting", "running", "completed", "failed", "cancelled"]
TERMINAL_STATES = frozenset({"completed", "failed", "cancelled"})

TriggerType = Literal[
    "user_signup",
    "deal_saved",
    "deal_expiring",
    "inactive_user",
    "custom_broadcast",
    "password_reset",
    "new_deal_published",
    "deal_clicked",
    "profile_updated",
    "subscription_ended",
]
TRIGGER_TYPES: tuple[str, ...] = get_args(TriggerType)

AttemptOutcome = Literal["sent", "delivered", "bounced", "failed"]
EngagementType = Literal["delivered", "bounced", "opened", "clicked"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DELAY_UNITS: Dict[str, timedelta] = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ----------------------------------------------------------------------
# Templates


class Template(BaseModel):
    """A named, versioned message body with ``{{token}}`` placeholders."""

    id: str
    name: str
    channel: Literal["email", "sms", "whatsapp", "both"] = "both"
    limit_class: Literal["sms", "whatsapp", "unlimited"] = "unlimited"
    subject: Optional[str] = None
    body: str
    version: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    def supports(self, channel: str) -> bool:
        """Return ``True`` if the template may be sent over ``channel``."""
        if self.channel == "both":
            # "Both" in the notification screens means SMS and WhatsApp.
            return channel in ("sms", "whatsapp")
        return self.channel == channel


# ----------------------------------------------------------------------
# Flow definitions


class MessageStep(BaseModel):
    """Send a rendered template over one channel."""

    id: str = Field(min_length=1)
    type: Literal["message"] = "message"
    channel: Channel
    template_ref: str = Field(min_length=1)
    from_identity: Optional[str] = None
    personalizations: List[str] = Field(default_factory=list)
    subject: Optional[str] = None


class DelayStep(BaseModel):
    """Suspend the run for a fixed duration."""

    id: str = Field(min_length=1)
    type: Literal["delay"] = "delay"
    duration: int = Field(gt=0)
    unit: Literal["minutes", "hours", "days"] = "days"

    def as_timedelta(self) -> timedelta:
        return DELAY_UNITS[self.unit] * self.duration


class ConditionStep(BaseModel):
    """Branch on a recipient attribute."""

    id: str = Field(min_length=1)
    type: Literal["condition"] = "condition"
    field: str = Field(min_length=1)
    operator: Literal["equals", "contains", "greater_than", "less_than"] = "equals"
    value: Any = None
    true_path: List[str] = Field(default_factory=list)
    false_path: List[str] = Field(default_factory=list)


Step = Annotated[Union[MessageStep, DelayStep, ConditionStep], Field(discriminator="type")]


class TriggerSchedule(BaseModel):
    """Holds new runs until the next allowed send slot.

    ``time`` is a local ``HH:MM`` in ``timezone``. An empty ``days`` list
    allows every weekday.
    """

    enabled: bool = False
    time: str = "09:00"
    days: List[str] = Field(default_factory=list)
    timezone: str = "UTC"

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        hour, sep, minute = value.partition(":")
        if not sep or not (hour.isdigit() and minute.isdigit()):
            raise ValueError(f"time must be HH:MM, got {value!r}")
        if not (0 <= int(hour) < 24 and 0 <= int(minute) < 60):
            raise ValueError(f"time out of range: {value!r}")
        return f"{int(hour):02d}:{int(minute):02d}"

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: List[str]) -> List[str]:
        days = []
        for day in value:
            matches = [name for name in WEEKDAYS if name.startswith(day.strip().lower()[:3])]
            if len(day.strip()) < 3 or not matches:
                raise ValueError(f"unknown weekday: {day!r}")
            days.append(matches[0])
        return days

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {value!r}") from e
        return value

    def next_slot(self, now: datetime) -> datetime:
        """First allowed slot at or after ``now``, in UTC."""
        zone = ZoneInfo(self.timezone)
        local = now.astimezone(zone)
        hour, minute = (int(part) for part in self.time.split(":"))
        for offset in range(8):
            day = local.date() + timedelta(days=offset)
            if self.days and WEEKDAYS[day.weekday()] not in self.days:
                continue
            slot = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
            if slot >= local:
                return slot.astimezone(timezone.utc)
        raise ValueError("schedule allows no weekday")


class FlowTrigger(BaseModel):
    """Trigger type plus trigger-specific conditions."""

    type: TriggerType
    days: Optional[int] = Field(default=None, ge=0)
    idle_days: Optional[int] = Field(default=None, ge=0)
    deal_category: Optional[str] = None
    # "All" in the list matches every category.
    deal_categories: List[str] = Field(default_factory=list)
    min_deal_value: Optional[float] = Field(default=None, ge=0)
    user_segment: Optional[str] = None
    user_tags: List[str] = Field(default_factory=list)
    schedule: Optional[TriggerSchedule] = None


class FlowDefinition(BaseModel):
    """A versioned, trigger-bound graph of steps."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str = ""
    trigger: FlowTrigger
    steps: List[Step] = Field(default_factory=list)
    is_active: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def branch_step_ids(self) -> set[str]:
        """IDs referenced by any condition path."""
        referenced: set[str] = set()
        for step in self.steps:
            if isinstance(step, ConditionStep):
                referenced.update(step.true_path)
                referenced.update(step.false_path)
        return referenced

    def entry_sequence(self) -> List[str]:
        """Steps that run in list order from the start of a run."""
        branch_only = self.branch_step_ids()
        return [step.id for step in self.steps if step.id not in branch_only]


# ----------------------------------------------------------------------
# Runs and their records


class Run(BaseModel):
    """One execution of a pinned flow version for one recipient."""

    id: str = Field(default_factory=new_id)
    flow_id: str
    flow_version: int
    recipient_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    itinerary: List[str] = Field(default_factory=list)
    executed: List[str] = Field(default_factory=list)
    state: RunState = "pending"
    wake_at: Optional[datetime] = None
    wait_reason: Optional[Literal["delay", "retry", "schedule"]] = None
    attempt: int = 1
    last_error: Optional[str] = None
    trigger_type: Optional[str] = None
    event_id: Optional[str] = None
    audience: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def current_step_id(self) -> Optional[str]:
        return self.itinerary[0] if self.itinerary else None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self) -> None:
        """Move the pointer past the current step."""
        if self.itinerary:
            self.executed.append(self.itinerary.pop(0))
        self.attempt = 1


class DeliveryAttempt(BaseModel):
    """One try at sending a message step. Immutable once written."""

    run_id: str
    flow_id: str
    step_id: str
    channel: Channel
    attempt_number: int = Field(ge=1)
    outcome: AttemptOutcome
    cost: float = 0.0
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @property
    def idempotency_key(self) -> str:
        return attempt_key(self.run_id, self.step_id, self.attempt_number)

    @property
    def succeeded(self) -> bool:
        return self.outcome in ("sent", "delivered")


def attempt_key(run_id: str, step_id: str, attempt_number: int) -> str:
    return f"{run_id}:{step_id}:{attempt_number}"


class EngagementEvent(BaseModel):
    """Post-send signal: provider receipt or recipient engagement."""

    id: str = Field(default_factory=new_id)
    type: EngagementType
    run_id: Optional[str] = None
    step_id: Optional[str] = None
    flow_id: Optional[str] = None
    channel: Optional[Channel] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _require_key(self) -> "EngagementEvent":
        if self.run_id is None and (self.flow_id is None or self.channel is None):
            raise ValueError("engagement event needs run_id or flow_id and channel")
        return self


class MetricsSnapshot(BaseModel):
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    failed: int = 0
    cost: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    cost_per_click: float = 0.0


class AuditRecord(BaseModel):
    """Append-only record of a send attempt or a run failure."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    run_id: Optional[str] = None
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    channel: Optional[Channel] = None
    audience: Optional[str] = None
    status: Literal["Sent", "Failed"]
    attempt_number: Optional[int] = None
    cost: float = 0.0
    detail: Optional[str] = None


class AuditExportRow(BaseModel):
    """Flat row matching the admin notification log table."""

    timestamp: datetime
    channel: Optional[str]
    audience: Optional[str]
    status: Literal["Sent", "Failed"]
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    cost: float = 0.0


class RunStatus(BaseModel):
    run: Run
    attempts: List[DeliveryAttempt] = Field(default_factory=list)

    @property
    def last_error(self) -> Optional[str]:
        return self.run.last_error


# ----------------------------------------------------------------------
# Trigger events


class AudienceFilter(BaseModel):
    kind: Literal["all", "by_country", "saved_deal_followers"] = "all"
    country: Optional[str] = None
    deal_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_kind(self) -> "AudienceFilter":
        if self.kind == "by_country" and not self.country:
            raise ValueError("by_country audience requires a country")
        return self

    def label(self) -> str:
        if self.kind == "by_country":
            return f"Users in {self.country}"
        if self.kind == "saved_deal_followers":
            if self.deal_id:
                return f"Users who saved deal {self.deal_id}"
            return "Users with saved deals"
        return "All users"


class _BaseEvent(BaseModel):
    event_id: str = Field(default_factory=new_id)
    context: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class _RecipientEvent(_BaseEvent):
    recipient_id: str = Field(min_length=1)


class UserSignupEvent(_RecipientEvent):
    type: Literal["user_signup"] = "user_signup"


class DealSavedEvent(_RecipientEvent):
    type: Literal["deal_saved"] = "deal_saved"
    deal_id: Optional[str] = None
    deal_category: Optional[str] = None
    deal_value: Optional[float] = None


class DealExpiringEvent(_RecipientEvent):
    type: Literal["deal_expiring"] = "deal_expiring"
    days: int = Field(ge=0)
    deal_id: Optional[str] = None
    deal_category: Optional[str] = None
    deal_value: Optional[float] = None


class DealClickedEvent(_RecipientEvent):
    type: Literal["deal_clicked"] = "deal_clicked"
    deal_id: Optional[str] = None
    deal_category: Optional[str] = None
    deal_value: Optional[float] = None


class ProfileUpdatedEvent(_RecipientEvent):
    type: Literal["profile_updated"] = "profile_updated"
    changed_fields: List[str] = Field(default_factory=list)


class SubscriptionEndedEvent(_RecipientEvent):
    type: Literal["subscription_ended"] = "subscription_ended"
    plan: Optional[str] = None


class InactiveUserEvent(_RecipientEvent):
    type: Literal["inactive_user"] = "inactive_user"
    idle_days: int = Field(ge=0)


class PasswordResetEvent(_RecipientEvent):
    type: Literal["password_reset"] = "password_reset"


class NewDealPublishedEvent(_RecipientEvent):
    type: Literal["new_deal_published"] = "new_deal_published"
    deal_id: Optional[str] = None
    deal_category: Optional[str] = None
    deal_value: Optional[float] = None


class CustomBroadcastEvent(_BaseEvent):
    type: Literal["custom_broadcast"] = "custom_broadcast"
    audience_filter: AudienceFilter = Field(default_factory=AudienceFilter)
    flow_id: Optional[str] = None


TriggerEvent = Annotated[
    Union[
        UserSignupEvent,
        DealSavedEvent,
        DealExpiringEvent,
        InactiveUserEvent,
        PasswordResetEvent,
        NewDealPublishedEvent,
        DealClickedEvent,
        ProfileUpdatedEvent,
        SubscriptionEndedEvent,
        CustomBroadcastEvent,
    ],
    Field(discriminator="type"),
]

trigger_event_adapter: TypeAdapter = TypeAdapter(TriggerEvent)


# ----------------------------------------------------------------------
# Queue envelope


class EngineMessage(BaseModel):
    """Envelope exchanged over the transport topics."""

    message_id: str = Field(default_factory=new_id)
    kind: Literal["run", "attempt", "engagement"]
    run_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EngineMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
