"""Persisted automation entities: workflows and payment subscriptions.

Both share the :class:`Automatable` shape: a status, a trigger spec, the next
due time, execution counters and a retry policy. The store bumps `version` on
every update so writers can detect lost races.
"""

from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from flowfi_automation.engine.errors import IllegalTransitionError


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_entity_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ALLOWED_STATUS_TRANSITIONS: dict[EntityStatus, set[EntityStatus]] = {
    EntityStatus.ACTIVE: {
        EntityStatus.PAUSED,
        EntityStatus.COMPLETED,
        EntityStatus.FAILED,
        EntityStatus.CANCELLED,
        EntityStatus.EXPIRED,
    },
    EntityStatus.PAUSED: {EntityStatus.ACTIVE, EntityStatus.CANCELLED},
    # Failed is terminal for the scheduler; only an administrator re-activates it.
    EntityStatus.FAILED: {EntityStatus.ACTIVE, EntityStatus.CANCELLED},
    EntityStatus.COMPLETED: set(),
    EntityStatus.CANCELLED: set(),
    EntityStatus.EXPIRED: set(),
}


def check_status_transition(current: EntityStatus, to: EntityStatus) -> None:
    if to not in ALLOWED_STATUS_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")


class Frequency(str, Enum):
    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class WorkflowAction(str, Enum):
    STAKE = "stake"
    SWAP = "swap"
    SEND = "send"
    MINT_NFT = "mint_nft"
    DAO_VOTE = "dao_vote"
    SUBSCRIPTION = "subscription"


_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class ScheduledTrigger(BaseModel):
    kind: Literal["scheduled"] = "scheduled"
    frequency: Frequency
    time_of_day: str = Field(default="00:00", description="HH:MM in UTC")
    interval_seconds: int | None = Field(
        default=None, ge=60, description="Cadence for the `custom` frequency"
    )

    @field_validator("time_of_day")
    @classmethod
    def _check_time_of_day(cls, value: str) -> str:
        if not _TIME_OF_DAY.match(value.strip()):
            raise ValueError(f"time_of_day must be HH:MM, got {value!r}")
        return value.strip()

    @model_validator(mode="after")
    def _custom_needs_interval(self) -> ScheduledTrigger:
        if self.frequency is Frequency.CUSTOM and self.interval_seconds is None:
            raise ValueError("custom frequency requires interval_seconds")
        return self


class TimeWindowTrigger(BaseModel):
    kind: Literal["time_window"] = "time_window"
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> TimeWindowTrigger:
        if self.end <= self.start:
            raise ValueError("time window end must be after start")
        return self


class EventTrigger(BaseModel):
    kind: Literal["event"] = "event"
    event_type: str = Field(min_length=1)


class Condition(BaseModel):
    """A structured condition evaluated against oracle side data."""

    type: Literal["balance_threshold", "price_threshold", "time_window"]
    operator: Literal["above", "below"] = "above"
    threshold: float = 0.0
    token: str = "FLOW"
    start_time: datetime | None = None
    end_time: datetime | None = None


class ConditionTrigger(BaseModel):
    kind: Literal["condition"] = "condition"
    condition: Condition
    poll_seconds: float | None = Field(default=None, gt=0)


TriggerSpec = Annotated[
    ScheduledTrigger | TimeWindowTrigger | EventTrigger | ConditionTrigger,
    Field(discriminator="kind"),
]

# Trigger kinds whose `next_due_at` is a real deadline (as opposed to an
# "armed since" marker for push/poll triggers).
TIMED_TRIGGER_KINDS: frozenset[str] = frozenset({"scheduled", "time_window"})


class ExecutionCounters(BaseModel):
    execution_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    current_retry: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _bounded(self) -> RetryPolicy:
        if self.current_retry > self.max_retries:
            raise ValueError("current_retry cannot exceed max_retries")
        return self


class Automatable(BaseModel, ABC):
    """Fields and due-time rules shared by workflows and subscriptions.

    Abstract: concrete kinds say how they are submitted to the ledger.
    """

    id: str
    owner: str = Field(min_length=1)
    status: EntityStatus = EntityStatus.ACTIVE
    trigger: TriggerSpec
    next_due_at: datetime | None = None

    counters: ExecutionCounters = Field(default_factory=ExecutionCounters)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    last_executed_at: datetime | None = None
    last_reference: str | None = None
    last_error: str | None = None
    resource_used: float = Field(default=0.0, ge=0)

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _disarm_when_inactive(self) -> Automatable:
        if self.status is not EntityStatus.ACTIVE:
            self.next_due_at = None
        return self

    def is_due(self, now: datetime) -> bool:
        return (
            self.status is EntityStatus.ACTIVE
            and self.next_due_at is not None
            and self.trigger.kind in TIMED_TRIGGER_KINDS
            and self.next_due_at <= now
        )

    @abstractmethod
    def ledger_request(self) -> tuple[str, dict[str, object]]:
        """The ledger action name and its parameters for one execution."""


class Workflow(Automatable):
    kind: Literal["workflow"] = "workflow"
    name: str = ""
    action: WorkflowAction
    token: str = "FLOW"
    amount: str = "0"
    frequency: Frequency = Frequency.ONCE
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _frequency_from_schedule(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("frequency") is not None:
            return data
        data = {k: v for k, v in data.items() if k != "frequency"}
        trigger = data.get("trigger")
        if isinstance(trigger, ScheduledTrigger):
            data["frequency"] = trigger.frequency
        elif isinstance(trigger, dict) and trigger.get("kind") == "scheduled":
            data["frequency"] = trigger.get("frequency")
        return data

    @model_validator(mode="after")
    def _frequency_matches_schedule(self) -> Workflow:
        schedule = self.trigger
        if isinstance(schedule, ScheduledTrigger) and schedule.frequency is not self.frequency:
            raise ValueError(
                f"frequency {self.frequency.value!r} does not match the scheduled trigger's "
                f"{schedule.frequency.value!r}"
            )
        return self

    @field_validator("frequency")
    @classmethod
    def _workflow_frequency(cls, value: Frequency) -> Frequency:
        if value is Frequency.HOURLY:
            raise ValueError("workflow frequency must be once, daily, weekly, monthly or custom")
        return value

    @property
    def runs_once(self) -> bool:
        return self.frequency is Frequency.ONCE or self.trigger.kind == "time_window"

    def ledger_request(self) -> tuple[str, dict[str, object]]:
        params: dict[str, object] = {
            "workflow_id": self.id,
            "owner": self.owner,
            "token": self.token,
            "amount": self.amount,
        }
        params.update(self.params)
        return self.action.value, params


class Subscription(Automatable):
    kind: Literal["subscription"] = "subscription"
    recipient: str = Field(min_length=1)
    token: str = "FLOW"
    amount_due: float = Field(gt=0)
    fee: float = Field(default=0.01, ge=0)
    interval_seconds: int = Field(default=86400, ge=3600)
    max_payments: int = Field(default=0, ge=0, description="0 means unlimited")
    total_payments: int = Field(default=0, ge=0)
    total_volume: float = Field(default=0.0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _default_trigger(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("trigger") is None:
            data = dict(data)
            data["trigger"] = {
                "kind": "scheduled",
                "frequency": Frequency.CUSTOM.value,
                "interval_seconds": data.get("interval_seconds", 86400),
            }
        return data

    def ledger_request(self) -> tuple[str, dict[str, object]]:
        return "subscription_payment", {
            "subscription_id": self.id,
            "payer": self.owner,
            "recipient": self.recipient,
            "token": self.token,
            "amount": self.amount_due,
            "fee": self.fee,
        }


AutomatableEntity = Workflow | Subscription
