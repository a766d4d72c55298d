"""Engine runtime: wires the components and owns their lifecycle.

`AutomationEngine` is the single entry point the CLI and the HTTP adapter use.
Entity lifecycle commands (create, pause, resume, cancel, reactivate) work on
a stopped engine too: they persist the change, and the trigger registry only
arms triggers (including re-arming after a manual execution) while the
engine is running. A running engine re-reads nothing from disk on its own,
so changes made by another process take effect on restart.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apscheduler.schedulers.base import BaseScheduler

from flowfi_automation.engine.conditions import ConditionEvaluator
from flowfi_automation.engine.config import EngineSettings
from flowfi_automation.engine.coordinator import ExecutionResult
from flowfi_automation.engine.errors import (
    ConfigurationError,
    Conflict,
    IllegalTransitionError,
    NotFound,
)
from flowfi_automation.engine.ledger import HttpLedgerClient, LedgerClient
from flowfi_automation.engine.models import (
    TIMED_TRIGGER_KINDS,
    AutomatableEntity,
    EntityStatus,
    Subscription,
    Workflow,
    check_status_transition,
    new_entity_id,
    utc_now,
)
from flowfi_automation.engine.notifier import (
    NotificationKind,
    Notifier,
    OutboxNotifier,
    notify_safely,
)
from flowfi_automation.engine.payments import PaymentBatchResult, SubscriptionPaymentScheduler
from flowfi_automation.engine.schedule import initial_due_at
from flowfi_automation.engine.store import EntityStore, JsonEntityStore
from flowfi_automation.engine.triggers import TriggerInfo, TriggerRegistry
from flowfi_automation.governance.dao_service import DaoService
from flowfi_automation.governance.models import Proposal
from flowfi_automation.governance.state_machine import ProposalResolutionStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SweepResult:
    payments: PaymentBatchResult = field(default_factory=PaymentBatchResult)
    resolved_proposals: tuple[Proposal, ...] = ()


class AutomationEngine:
    def __init__(
        self,
        *,
        settings: EngineSettings,
        store: EntityStore,
        notifier: Notifier,
        ledger: LedgerClient | None = None,
        condition_evaluator: ConditionEvaluator | None = None,
        clock: Callable[[], datetime] = utc_now,
        scheduler: BaseScheduler | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self._ledger = ledger
        self._clock = clock

        self.registry = TriggerRegistry(
            condition_evaluator=condition_evaluator,
            condition_poll_seconds=settings.condition_poll_seconds,
            clock=clock,
            scheduler=scheduler,
            enabled=False,
        )
        self.payments: SubscriptionPaymentScheduler | None = None
        if ledger is not None:
            self.payments = SubscriptionPaymentScheduler(
                store=store,
                ledger=ledger,
                notifier=notifier,
                registry=self.registry,
                retry_backoff_seconds=settings.retry_backoff_seconds,
                store_conflict_retries=settings.store_conflict_retries,
                condition_poll_seconds=settings.condition_poll_seconds,
                clock=clock,
                batch_workers=settings.batch_workers,
            )
        self.proposals = ProposalResolutionStateMachine(
            store=store,
            notifier=notifier,
            clock=clock,
            fan_out_workers=settings.batch_workers,
            conflict_retries=settings.store_conflict_retries,
        )
        self.daos = DaoService(
            store=store, clock=clock, conflict_retries=settings.store_conflict_retries
        )

        self._running = False
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._running

    def _scheduler(self) -> SubscriptionPaymentScheduler:
        if self.payments is None:
            self.settings.require_ledger()
            raise ConfigurationError("No ledger client is configured; use build_engine()")
        return self.payments

    # -- lifecycle --------------------------------------------------------

    def start(self, *, sweep: bool = True) -> int:
        """Arm every Active entity and (optionally) start the sweep loop.

        Past-due occurrences are skipped, not replayed: each timed entity whose
        next_due_at is already behind the clock is moved to its next
        occurrence first. Returns the number of armed triggers.
        """

        self._scheduler()
        if self._running:
            return len(self.registry)

        now = self._clock()
        for entity in self.store.find(status=EntityStatus.ACTIVE):
            self._skip_backlog(entity, now)

        self.registry.enable()
        armed = self.registry.rebuild(self.store.find(status=EntityStatus.ACTIVE))
        self._running = True

        if sweep:
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="engine-sweep", daemon=True
            )
            self._sweeper.start()

        logger.info("Engine started", extra={"armed": armed, "sweep": sweep})
        return armed

    def stop(self, *, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=timeout)
            self._sweeper = None
        self.registry.disable()
        self.registry.clear()
        self._running = False
        logger.info("Engine stopped")

    def close(self) -> None:
        """Stop the engine for good: the trigger scheduler thread is shut down too."""

        self.stop()
        self.registry.shutdown()
        close = getattr(self._ledger, "close", None)
        if callable(close):
            close()

    def _skip_backlog(self, entity: AutomatableEntity, now: datetime) -> None:
        if entity.trigger.kind not in TIMED_TRIGGER_KINDS:
            return
        if entity.next_due_at is not None and entity.next_due_at > now:
            return
        due = initial_due_at(
            entity.trigger, now=now, condition_poll_seconds=self.settings.condition_poll_seconds
        )
        if due == entity.next_due_at:
            return
        try:
            self.store.update(entity.id, {"next_due_at": due}, expected_version=entity.version)
        except Conflict:
            logger.info("Backlog skip lost a race", extra={"entity_id": entity.id})
            return
        logger.info(
            "Skipped missed occurrences",
            extra={
                "entity_id": entity.id,
                "was": entity.next_due_at.isoformat() if entity.next_due_at else None,
                "next_due_at": due.isoformat() if due else None,
            },
        )

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.settings.sweep_interval_seconds):
            self.sweep_once()

    def sweep_once(self, now: datetime | None = None) -> SweepResult:
        """Run one payment batch and one proposal sweep. Never raises."""

        payments = PaymentBatchResult()
        resolved: list[Proposal] = []
        try:
            payments = self._scheduler().process_due_payments(now)
        except Exception:
            logger.exception("Payment sweep failed")
        try:
            resolved = self.proposals.sweep_expired(now)
        except Exception:
            logger.exception("Proposal sweep failed")
        return SweepResult(payments=payments, resolved_proposals=tuple(resolved))

    # -- entity commands --------------------------------------------------

    def _max_retries(self, value: int | None) -> int:
        return self.settings.default_max_retries if value is None else value

    def _admit(self, entity: AutomatableEntity) -> AutomatableEntity:
        now = self._clock()
        due = initial_due_at(
            entity.trigger, now=now, condition_poll_seconds=self.settings.condition_poll_seconds
        )
        if due is None:
            raise ValueError("time window has already closed")

        saved = self.store.upsert(entity.model_copy(update={"next_due_at": due}))
        self.registry.register(saved)
        logger.info(
            "Automation created",
            extra={"entity_id": saved.id, "kind": saved.kind, "trigger": saved.trigger.kind},
        )
        notify_safely(
            self.notifier,
            saved.owner,
            NotificationKind.ENTITY_CREATED,
            {"entity_id": saved.id, "kind": saved.kind, "next_due_at": saved.next_due_at},
        )
        return saved

    def create_workflow(
        self,
        *,
        owner: str,
        action: str,
        trigger: Mapping[str, Any],
        name: str = "",
        token: str = "FLOW",
        amount: str = "0",
        frequency: str | None = None,
        params: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> Workflow:
        workflow = Workflow.model_validate(
            {
                "id": new_entity_id("wf"),
                "owner": owner,
                "name": name,
                "action": action,
                "trigger": dict(trigger),
                "token": token,
                "amount": amount,
                "frequency": frequency,
                "params": dict(params or {}),
                "retry": {"max_retries": self._max_retries(max_retries)},
            }
        )
        return self._admit(workflow)  # type: ignore[return-value]

    def create_subscription(
        self,
        *,
        owner: str,
        recipient: str,
        amount_due: float,
        token: str = "FLOW",
        interval_seconds: int = 86400,
        fee: float = 0.01,
        max_payments: int = 0,
        trigger: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> Subscription:
        subscription = Subscription.model_validate(
            {
                "id": new_entity_id("sub"),
                "owner": owner,
                "recipient": recipient,
                "amount_due": amount_due,
                "token": token,
                "interval_seconds": interval_seconds,
                "fee": fee,
                "max_payments": max_payments,
                "trigger": dict(trigger) if trigger is not None else None,
                "retry": {"max_retries": self._max_retries(max_retries)},
            }
        )
        return self._admit(subscription)  # type: ignore[return-value]

    def _owned(self, entity_id: str, owner: str | None) -> AutomatableEntity:
        entity = self.store.get(entity_id)
        if owner is not None and entity.owner != owner:
            # Don't reveal other owners' entities.
            raise NotFound(entity_id)
        return entity

    def _change_status(
        self,
        entity_id: str,
        *,
        owner: str | None,
        to: EntityStatus,
        from_status: EntityStatus | None = None,
    ) -> AutomatableEntity:
        self._owned(entity_id, owner)

        def build(current: AutomatableEntity) -> dict[str, Any]:
            if from_status is not None and current.status is not from_status:
                raise IllegalTransitionError(
                    f"Illegal transition: {current.status.value} -> {to.value}"
                )
            check_status_transition(current.status, to)
            patch: dict[str, Any] = {"status": to}
            if to is EntityStatus.ACTIVE:
                patch["next_due_at"] = initial_due_at(
                    current.trigger,
                    now=self._clock(),
                    condition_poll_seconds=self.settings.condition_poll_seconds,
                )
            if current.status is EntityStatus.FAILED:
                patch["retry"] = current.retry.model_copy(update={"current_retry": 0})
            return patch

        updated = self._update(entity_id, build)
        if updated.status is EntityStatus.ACTIVE:
            self.registry.register(updated)
        else:
            self.registry.unregister(entity_id)

        logger.info("Status changed", extra={"entity_id": entity_id, "status": to.value})
        notify_safely(
            self.notifier,
            updated.owner,
            NotificationKind.STATUS_CHANGED,
            {"entity_id": entity_id, "status": updated.status},
        )
        return updated

    def _update(
        self, entity_id: str, build: Callable[[AutomatableEntity], dict[str, Any]]
    ) -> AutomatableEntity:
        attempt = 0
        while True:
            attempt += 1
            current = self.store.get(entity_id)
            try:
                return self.store.update(entity_id, build(current), expected_version=current.version)
            except Conflict:
                if attempt >= self.settings.store_conflict_retries:
                    raise

    def pause(self, entity_id: str, *, owner: str | None = None) -> AutomatableEntity:
        return self._change_status(entity_id, owner=owner, to=EntityStatus.PAUSED)

    def resume(self, entity_id: str, *, owner: str | None = None) -> AutomatableEntity:
        return self._change_status(
            entity_id, owner=owner, to=EntityStatus.ACTIVE, from_status=EntityStatus.PAUSED
        )

    def cancel(self, entity_id: str, *, owner: str | None = None) -> AutomatableEntity:
        return self._change_status(entity_id, owner=owner, to=EntityStatus.CANCELLED)

    def reactivate(self, entity_id: str, *, owner: str | None = None) -> AutomatableEntity:
        """Administrative recovery: Failed -> Active with the retry counter reset."""

        return self._change_status(
            entity_id, owner=owner, to=EntityStatus.ACTIVE, from_status=EntityStatus.FAILED
        )

    def update_trigger(
        self, entity_id: str, trigger: Mapping[str, Any], *, owner: str | None = None
    ) -> AutomatableEntity:
        """Replace the trigger spec of an Active or Paused entity."""

        self._owned(entity_id, owner)

        def build(current: AutomatableEntity) -> dict[str, Any]:
            if current.status not in (EntityStatus.ACTIVE, EntityStatus.PAUSED):
                raise ValueError(f"cannot change the trigger of a {current.status.value} entity")
            data = {**current.model_dump(), "trigger": dict(trigger)}
            if isinstance(current, Workflow) and data["trigger"].get("kind") == "scheduled":
                # A new schedule brings its own frequency.
                data.pop("frequency", None)
            candidate = type(current).model_validate(data)
            patch: dict[str, Any] = {"trigger": candidate.trigger}
            if isinstance(candidate, Workflow):
                patch["frequency"] = candidate.frequency
            if current.status is EntityStatus.ACTIVE:
                due = initial_due_at(
                    candidate.trigger,
                    now=self._clock(),
                    condition_poll_seconds=self.settings.condition_poll_seconds,
                )
                if due is None:
                    raise ValueError("time window has already closed")
                patch["next_due_at"] = due
            return patch

        updated = self._update(entity_id, build)
        if updated.status is EntityStatus.ACTIVE:
            self.registry.register(updated)
        logger.info(
            "Trigger updated", extra={"entity_id": entity_id, "trigger": updated.trigger.kind}
        )
        return updated

    def trigger_now(self, entity_id: str, *, owner: str | None = None) -> ExecutionResult:
        self._owned(entity_id, owner)
        return self._scheduler().trigger_now(entity_id)

    def process_due_payments(self, now: datetime | None = None) -> PaymentBatchResult:
        return self._scheduler().process_due_payments(now)

    def emit_event(self, event_type: str) -> list[str]:
        return self.registry.emit(event_type)

    def list_triggers(self) -> list[TriggerInfo]:
        return self.registry.list()

    def stats(self) -> dict[str, Any]:
        entities = self.store.find()
        by_kind: dict[str, Counter[str]] = {"workflow": Counter(), "subscription": Counter()}
        for entity in entities:
            by_kind[entity.kind][entity.status.value] += 1
        return {
            "workflows": dict(by_kind["workflow"]),
            "subscriptions": dict(by_kind["subscription"]),
            "armed_triggers": len(self.registry),
            "running": self._running,
        }


def build_engine(
    settings: EngineSettings,
    *,
    ledger: LedgerClient | None = None,
    notifier: Notifier | None = None,
    condition_evaluator: ConditionEvaluator | None = None,
) -> AutomationEngine:
    """Construct an engine from settings.

    Without an explicit ledger, an HTTP relay client is built when
    ENGINE_LEDGER_URL is set; otherwise the engine can manage entities and
    governance but not execute.
    """

    if ledger is None and settings.ledger_url.strip():
        ledger = HttpLedgerClient(
            base_url=settings.require_ledger(),
            token=settings.ledger_token,
            timeout_seconds=settings.ledger_timeout_seconds,
            poll_interval_seconds=settings.ledger_poll_interval_seconds,
            seal_timeout_seconds=settings.ledger_seal_timeout_seconds,
        )
    return AutomationEngine(
        settings=settings,
        store=JsonEntityStore(settings.entities_state_file),
        notifier=notifier or OutboxNotifier(settings.notifications_file),
        ledger=ledger,
        condition_evaluator=condition_evaluator,
    )
