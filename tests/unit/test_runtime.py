"""Unit tests for the engine runtime."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from flowfi_automation.engine.config import EngineSettings
from flowfi_automation.engine.errors import ConfigurationError, IllegalTransitionError, NotFound
from flowfi_automation.engine.ledger import HttpLedgerClient
from flowfi_automation.engine.models import EntityStatus, Subscription, Workflow
from flowfi_automation.engine.runtime import AutomationEngine, build_engine
from flowfi_automation.engine.store import JsonEntityStore
from flowfi_automation.governance.models import Dao, DaoMember

EVENT_TRIGGER = {"kind": "event", "event_type": "payday"}


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        ENGINE_STATE_PATH=tmp_path / "state",
        ENGINE_SWEEP_INTERVAL_SECONDS=3600,
    )


@pytest.fixture
def engine(
    settings: EngineSettings, store: JsonEntityStore, ledger, notifier, clock, jobs
) -> Iterator[AutomationEngine]:
    eng = AutomationEngine(
        settings=settings,
        store=store,
        notifier=notifier,
        ledger=ledger,
        clock=clock,
        scheduler=jobs,
    )
    yield eng
    eng.close()


def test_create_workflow_on_stopped_engine(engine: AutomationEngine, notifier, clock) -> None:
    workflow = engine.create_workflow(
        owner="0xowner",
        action="stake",
        trigger={"kind": "scheduled", "frequency": "daily", "time_of_day": "09:00"},
        amount="5",
    )

    saved = engine.store.get(workflow.id)
    assert saved.next_due_at == clock.now + timedelta(hours=21)
    assert saved.retry.max_retries == 3
    assert engine.list_triggers() == []
    assert notifier.kinds() == ["entity_created"]


def test_scheduled_workflow_recurs_at_its_trigger_frequency(
    engine: AutomationEngine, clock
) -> None:
    workflow = engine.create_workflow(
        owner="0xowner",
        action="stake",
        trigger={"kind": "scheduled", "frequency": "daily", "time_of_day": "09:00"},
    )
    assert workflow.frequency.value == "daily"

    clock.advance(hours=22)
    result = engine.trigger_now(workflow.id)

    assert result.ok
    saved = engine.store.get(workflow.id)
    assert saved.status is EntityStatus.ACTIVE
    # Tuesday 10:00; the next 09:00 is on Wednesday.
    assert saved.next_due_at == clock.now + timedelta(hours=23)


def test_workflow_frequency_must_match_its_schedule(engine: AutomationEngine) -> None:
    with pytest.raises(ValidationError, match="does not match"):
        engine.create_workflow(
            owner="0xowner",
            action="stake",
            trigger={"kind": "scheduled", "frequency": "daily", "time_of_day": "09:00"},
            frequency="weekly",
        )


def test_create_rejects_invalid_input(engine: AutomationEngine, clock) -> None:
    with pytest.raises(ValueError, match="already closed"):
        engine.create_workflow(
            owner="0xowner",
            action="send",
            trigger={
                "kind": "time_window",
                "start": (clock.now - timedelta(hours=2)).isoformat(),
                "end": (clock.now - timedelta(hours=1)).isoformat(),
            },
        )
    with pytest.raises(ValidationError):
        engine.create_workflow(owner="0xowner", action="teleport", trigger=EVENT_TRIGGER)

    assert engine.store.find() == []


def test_create_subscription_defaults(engine: AutomationEngine, clock) -> None:
    sub = engine.create_subscription(
        owner="0xpayer", recipient="0xmerchant", amount_due=9.99, interval_seconds=3600,
        max_retries=1,
    )

    assert isinstance(sub, Subscription)
    assert sub.next_due_at == clock.now + timedelta(hours=1)
    assert sub.retry.max_retries == 1


def test_start_requires_a_ledger(
    settings: EngineSettings, store: JsonEntityStore, notifier
) -> None:
    engine = AutomationEngine(settings=settings, store=store, notifier=notifier)

    assert engine.payments is None
    with pytest.raises(ConfigurationError):
        engine.start(sweep=False)
    with pytest.raises(ConfigurationError):
        engine.process_due_payments()


def test_missing_ledger_names_the_setting(
    tmp_path: Path, store: JsonEntityStore, notifier, make_workflow
) -> None:
    workflow = make_workflow()
    unset = AutomationEngine(
        settings=EngineSettings(_env_file=None, ENGINE_STATE_PATH=tmp_path),
        store=store,
        notifier=notifier,
    )
    with pytest.raises(ConfigurationError, match="ENGINE_LEDGER_URL"):
        unset.trigger_now(workflow.id)

    # A URL alone is not enough: the client is wired by build_engine.
    configured = AutomationEngine(
        settings=EngineSettings(
            _env_file=None, ENGINE_STATE_PATH=tmp_path, ENGINE_LEDGER_URL="https://relay.example"
        ),
        store=store,
        notifier=notifier,
    )
    with pytest.raises(ConfigurationError, match="build_engine"):
        configured.trigger_now(workflow.id)


def test_start_skips_missed_occurrences_and_arms(
    engine: AutomationEngine, store: JsonEntityStore, clock, make_workflow
) -> None:
    late = make_workflow(next_due_at=clock.now - timedelta(days=3))
    listener = make_workflow(trigger=EVENT_TRIGGER)
    make_workflow(status="paused")

    armed = engine.start(sweep=False)

    assert armed == 2
    assert store.get(late.id).next_due_at == clock.now + timedelta(hours=21)
    assert [t.entity_id for t in engine.list_triggers()] == sorted([late.id, listener.id])
    assert engine.stats()["running"] is True

    engine.stop()
    assert engine.list_triggers() == []
    assert engine.running is False


def test_lifecycle_commands(engine: AutomationEngine, notifier) -> None:
    engine.start(sweep=False)
    workflow = engine.create_workflow(owner="0xowner", action="send", trigger=EVENT_TRIGGER)
    assert [t.entity_id for t in engine.list_triggers()] == [workflow.id]

    paused = engine.pause(workflow.id, owner="0xowner")
    assert paused.status is EntityStatus.PAUSED
    assert engine.list_triggers() == []

    resumed = engine.resume(workflow.id)
    assert resumed.status is EntityStatus.ACTIVE
    assert resumed.next_due_at is not None
    assert len(engine.list_triggers()) == 1

    with pytest.raises(IllegalTransitionError):
        engine.resume(workflow.id)

    cancelled = engine.cancel(workflow.id)
    assert cancelled.status is EntityStatus.CANCELLED
    assert engine.list_triggers() == []
    with pytest.raises(IllegalTransitionError):
        engine.pause(workflow.id)

    assert notifier.kinds().count("status_changed") == 3


def test_commands_check_ownership(engine: AutomationEngine, make_workflow) -> None:
    workflow = make_workflow()

    with pytest.raises(NotFound):
        engine.pause(workflow.id, owner="0xsomeone_else")
    with pytest.raises(NotFound):
        engine.trigger_now(workflow.id, owner="0xsomeone_else")


def test_reactivate_resets_retry(engine: AutomationEngine, make_workflow) -> None:
    failed = make_workflow(status="failed", retry={"max_retries": 2, "current_retry": 2})

    reactivated = engine.reactivate(failed.id)

    assert reactivated.status is EntityStatus.ACTIVE
    assert reactivated.retry.current_retry == 0
    assert reactivated.next_due_at is not None
    with pytest.raises(IllegalTransitionError):
        engine.reactivate(failed.id)


def test_emit_event_executes_listeners(engine: AutomationEngine, ledger) -> None:
    engine.start(sweep=False)
    workflow = engine.create_workflow(owner="0xowner", action="stake", trigger=EVENT_TRIGGER)

    assert engine.emit_event("payday") == [workflow.id]
    assert engine.emit_event("other") == []

    assert len(ledger.submissions) == 1
    assert engine.store.get(workflow.id).counters.success_count == 1


def test_trigger_now_on_stopped_engine_does_not_arm(
    engine: AutomationEngine, ledger, make_workflow
) -> None:
    workflow = make_workflow()

    result = engine.trigger_now(workflow.id, owner="0xowner")

    assert result.ok
    assert len(ledger.submissions) == 1
    assert engine.list_triggers() == []


def test_update_trigger(engine: AutomationEngine, make_workflow) -> None:
    workflow = make_workflow()

    updated = engine.update_trigger(workflow.id, EVENT_TRIGGER)
    assert updated.trigger.kind == "event"

    weekly = {"kind": "scheduled", "frequency": "weekly", "time_of_day": "09:00"}
    rescheduled = engine.update_trigger(workflow.id, weekly)
    assert rescheduled.frequency.value == "weekly"

    engine.cancel(workflow.id)
    with pytest.raises(ValueError):
        engine.update_trigger(workflow.id, EVENT_TRIGGER)


def test_sweep_once_runs_payments_and_proposals(
    engine: AutomationEngine, store: JsonEntityStore, clock, make_subscription
) -> None:
    sub = make_subscription()
    store.upsert_dao(
        Dao(id="dao_1", name="Test", members=[DaoMember(address="alice", voting_power=10)])
    )
    proposal = engine.proposals.create_proposal(
        "dao_1", proposer="alice", title="Template", type="workflow_template"
    )

    result = engine.sweep_once(clock.now + timedelta(days=8))

    assert result.payments.succeeded == 1
    assert [p.id for p in result.resolved_proposals] == [proposal.id]
    assert store.get(sub.id).counters.success_count == 1


def test_stats_counts_by_kind_and_status(
    engine: AutomationEngine,
    make_workflow: Callable[..., Workflow],
    make_subscription: Callable[..., Subscription],
) -> None:
    make_workflow()
    make_workflow(status="paused")
    make_subscription()

    stats = engine.stats()

    assert stats["workflows"] == {"active": 1, "paused": 1}
    assert stats["subscriptions"] == {"active": 1}
    assert stats["armed_triggers"] == 0
    assert stats["running"] is False


def test_build_engine_creates_http_ledger_only_when_configured(tmp_path: Path) -> None:
    without = build_engine(EngineSettings(_env_file=None, ENGINE_STATE_PATH=tmp_path))
    assert without.payments is None
    without.close()

    with_ledger = build_engine(
        EngineSettings(
            _env_file=None,
            ENGINE_STATE_PATH=tmp_path,
            ENGINE_LEDGER_URL="https://relay.example",
        )
    )
    assert with_ledger.payments is not None
    assert isinstance(with_ledger._ledger, HttpLedgerClient)
    with_ledger.close()
