"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from apscheduler.jobstores.base import ConflictingIdError, JobLookupError
from apscheduler.triggers.date import DateTrigger

from flowfi_automation.engine.coordinator import ExecutionCoordinator
from flowfi_automation.engine.ledger import LedgerResult
from flowfi_automation.engine.models import Subscription, Workflow, new_entity_id
from flowfi_automation.engine.payments import SubscriptionPaymentScheduler
from flowfi_automation.engine.store import JsonEntityStore
from flowfi_automation.engine.triggers import TriggerRegistry

# A Monday, so weekly schedules are easy to reason about.
BASE_TIME = datetime(2025, 1, 6, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeJob:
    def __init__(
        self,
        scheduler: FakeScheduler,
        job_id: str,
        func: Callable[..., None],
        trigger: Any,
        args: Any,
    ) -> None:
        self.scheduler = scheduler
        self.id = job_id
        self.func = func
        self.trigger = trigger
        self.args = tuple(args or ())
        self.removed = False

    @property
    def run_date(self) -> datetime | None:
        return getattr(self.trigger, "run_date", None)

    def fire(self) -> None:
        self.scheduler.fire(self.id)


class FakeScheduler:
    """Stand-in for an APScheduler scheduler whose jobs only run when a test says so."""

    def __init__(self) -> None:
        self.running = False
        self.added: list[FakeJob] = []
        self.jobs: dict[str, FakeJob] = {}

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False

    def add_job(
        self,
        func: Callable[..., None],
        trigger: Any = None,
        args: Any = None,
        id: str | None = None,
        replace_existing: bool = False,
        **kwargs: Any,
    ) -> FakeJob:
        assert id is not None
        if id in self.jobs and not replace_existing:
            raise ConflictingIdError(id)
        job = FakeJob(self, id, func, trigger, args)
        self.jobs[id] = job
        self.added.append(job)
        return job

    def remove_job(self, job_id: str, jobstore: str | None = None) -> None:
        job = self.jobs.pop(job_id, None)
        if job is None:
            raise JobLookupError(job_id)
        job.removed = True

    def get_job(self, job_id: str) -> FakeJob | None:
        return self.jobs.get(job_id)

    def live(self) -> list[FakeJob]:
        return list(self.jobs.values())

    def fire(self, job_id: str) -> None:
        job = self.jobs[job_id]
        # Like APScheduler, a date job leaves the store before it runs.
        if isinstance(job.trigger, DateTrigger):
            del self.jobs[job_id]
        job.func(*job.args)


class FakeLedger:
    """Scripted ledger: pops one outcome per submission, succeeding once the script runs out.

    An outcome may be a LedgerResult or an exception instance to raise.
    """

    def __init__(self, outcomes: list[LedgerResult | Exception] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.submissions: list[tuple[str, dict[str, object]]] = []
        self.fail_for: set[str] = set()
        self.on_submit: Callable[[str, Mapping[str, object]], None] | None = None
        self._lock = threading.Lock()

    def submit(self, action: str, params: Mapping[str, object]) -> LedgerResult:
        with self._lock:
            self.submissions.append((action, dict(params)))
            outcome = self.outcomes.pop(0) if self.outcomes else None
            count = len(self.submissions)
        if self.on_submit is not None:
            self.on_submit(action, params)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        target = params.get("subscription_id") or params.get("workflow_id")
        if target in self.fail_for:
            return LedgerResult(success=False, reference=f"tx-{count}", error="insufficient balance")
        return LedgerResult(success=True, resource_used=1.5, reference=f"tx-{count}")


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, object]]] = []
        self._lock = threading.Lock()

    def notify(self, owner: str, kind: str, payload: Mapping[str, object]) -> None:
        with self._lock:
            self.sent.append((owner, kind, dict(payload)))

    def kinds(self) -> list[str]:
        return [kind for _, kind, _ in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def jobs() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path: Path) -> JsonEntityStore:
    return JsonEntityStore(tmp_path / "state" / "entities.json")


@pytest.fixture
def registry(clock: FakeClock, jobs: FakeScheduler) -> Iterator[TriggerRegistry]:
    reg = TriggerRegistry(clock=clock, scheduler=jobs)
    yield reg
    reg.shutdown()


@pytest.fixture
def coordinator(
    store: JsonEntityStore,
    ledger: FakeLedger,
    notifier: RecordingNotifier,
    registry: TriggerRegistry,
    clock: FakeClock,
) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        store=store,
        ledger=ledger,
        notifier=notifier,
        registry=registry,
        retry_backoff_seconds=60.0,
        clock=clock,
    )


@pytest.fixture
def scheduler(
    store: JsonEntityStore,
    ledger: FakeLedger,
    notifier: RecordingNotifier,
    registry: TriggerRegistry,
    clock: FakeClock,
) -> SubscriptionPaymentScheduler:
    return SubscriptionPaymentScheduler(
        store=store,
        ledger=ledger,
        notifier=notifier,
        registry=registry,
        retry_backoff_seconds=60.0,
        clock=clock,
        batch_workers=4,
    )


@pytest.fixture
def make_workflow(store: JsonEntityStore, clock: FakeClock) -> Callable[..., Workflow]:
    """Persist a workflow that is due now (daily at 09:00 unless overridden)."""

    def build(**overrides: Any) -> Workflow:
        data: dict[str, Any] = {
            "id": new_entity_id("wf"),
            "owner": "0xowner",
            "name": "Daily stake",
            "action": "stake",
            "trigger": {"kind": "scheduled", "frequency": "daily", "time_of_day": "09:00"},
            "amount": "10.0",
            "next_due_at": clock.now,
        }
        data.update(overrides)
        return store.upsert(Workflow.model_validate(data))  # type: ignore[return-value]

    return build


@pytest.fixture
def make_subscription(store: JsonEntityStore, clock: FakeClock) -> Callable[..., Subscription]:
    """Persist a daily subscription that is due now."""

    def build(**overrides: Any) -> Subscription:
        data: dict[str, Any] = {
            "id": new_entity_id("sub"),
            "owner": "0xpayer",
            "recipient": "0xmerchant",
            "amount_due": 25.0,
            "interval_seconds": 86400,
            "next_due_at": clock.now,
        }
        data.update(overrides)
        return store.upsert(Subscription.model_validate(data))  # type: ignore[return-value]

    return build
