"""Execution coordinator: runs one automation per trigger fire.

The coordinator owns the per-entity execution lock. A second fire for an
entity that is already executing fails fast with :class:`AlreadyRunning`
instead of queueing, so an entity never has two ledger submissions in flight.

Outcomes are recorded against a fresh read of the entity taken after the
ledger call. That read decides whether the entity is re-armed: a pause or
cancel that lands while a submission is in flight keeps the recorded counters
but is never undone by the completion.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flowfi_automation.engine.errors import (
    AlreadyRunning,
    Conflict,
    LedgerError,
    NotActive,
    NotFound,
)
from flowfi_automation.engine.ledger import LedgerClient, LedgerResult
from flowfi_automation.engine.locks import KeyedLocks
from flowfi_automation.engine.models import (
    TIMED_TRIGGER_KINDS,
    AutomatableEntity,
    EntityStatus,
    Workflow,
    utc_now,
)
from flowfi_automation.engine.notifier import NotificationKind, Notifier, notify_safely
from flowfi_automation.engine.schedule import cadence_seconds, due_after_success, retry_backoff
from flowfi_automation.engine.store import EntityStore
from flowfi_automation.engine.triggers import TriggerRegistry

logger = logging.getLogger(__name__)

PatchBuilder = Callable[[AutomatableEntity], "dict[str, Any] | None"]


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """What one execution did to an entity."""

    entity_id: str
    ok: bool
    status: EntityStatus
    current_retry: int
    next_due_at: datetime | None = None
    reference: str = ""
    resource_used: float = 0.0
    message: str = ""


class ExecutionCoordinator:
    def __init__(
        self,
        *,
        store: EntityStore,
        ledger: LedgerClient,
        notifier: Notifier,
        registry: TriggerRegistry,
        retry_backoff_seconds: float = 60.0,
        store_conflict_retries: int = 3,
        condition_poll_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if store_conflict_retries < 1:
            raise ValueError("store_conflict_retries must be >= 1")

        self._store = store
        self._ledger = ledger
        self._notifier = notifier
        self._registry = registry
        self._retry_backoff_seconds = retry_backoff_seconds
        self._conflict_retries = store_conflict_retries
        self._condition_poll_seconds = condition_poll_seconds
        self._clock = clock

        self._locks = KeyedLocks()

        registry.subscribe(on_due=self.on_due, on_expired=self.on_expired)

    def is_running(self, entity_id: str) -> bool:
        return self._locks.locked(entity_id)

    # -- entry points -----------------------------------------------------

    def execute(self, entity_id: str) -> ExecutionResult:
        """Run one execution of `entity_id` and record its outcome.

        Raises:
            NotFound: unknown id.
            NotActive: the entity is not Active.
            AlreadyRunning: another execution holds the entity lock.
            Conflict: the outcome could not be recorded after retries.
        """

        result = self._execute(entity_id, due_by=None)
        assert result is not None
        return result

    def _execute(self, entity_id: str, *, due_by: datetime | None) -> ExecutionResult | None:
        """Execute under the entity lock.

        With `due_by`, a timed entity whose next_due_at is still in the future
        is left alone and None is returned. Fire paths use this so that a
        scheduled job and a batch racing for the same occurrence execute it once.
        """

        self._require_active(self._store.get(entity_id))

        with self._locks.hold(entity_id, blocking=False) as acquired:
            if not acquired:
                raise AlreadyRunning(entity_id)
            entity = self._store.get(entity_id)
            self._require_active(entity)
            if due_by is not None and not _due(entity, due_by):
                return None

            outcome = self._submit(entity)
            recorded = self._record_outcome(entity_id, outcome)
            self._rearm(recorded)
            self._notify_outcome(recorded, outcome)
            return self._result(recorded, outcome)

    def trigger_now(self, entity_id: str) -> ExecutionResult:
        logger.info("Manual trigger requested", extra={"entity_id": entity_id})
        return self.execute(entity_id)

    def on_due(self, entity_id: str) -> None:
        """Registry callback. Never raises."""

        try:
            if self._execute(entity_id, due_by=self._clock()) is None:
                logger.debug("Fired before due; re-arming", extra={"entity_id": entity_id})
                self._rearm(self._store.get(entity_id))
        except AlreadyRunning:
            logger.info("Skipped fire: execution in progress", extra={"entity_id": entity_id})
        except (NotFound, NotActive) as e:
            logger.info("Dropping trigger", extra={"entity_id": entity_id, "reason": str(e)})
            self._registry.unregister(entity_id)
        except Conflict:
            logger.warning("Outcome could not be recorded", extra={"entity_id": entity_id})
            self._rearm_fresh(entity_id)
        except Exception:
            logger.exception("Unexpected error during execution", extra={"entity_id": entity_id})
            self._rearm_fresh(entity_id)

    def on_expired(self, entity_id: str) -> None:
        """Registry callback for a time window that closed before it fired."""

        def expire(current: AutomatableEntity) -> dict[str, Any] | None:
            if current.status is not EntityStatus.ACTIVE:
                return None
            return {"status": EntityStatus.EXPIRED}

        try:
            updated = self.update_entity(entity_id, expire)
        except NotFound:
            return
        except Conflict:
            logger.warning("Could not mark entity expired", extra={"entity_id": entity_id})
            return
        if updated is None:
            return

        self._registry.unregister(entity_id)
        logger.info("Entity expired", extra={"entity_id": entity_id})
        notify_safely(
            self._notifier,
            updated.owner,
            NotificationKind.WINDOW_EXPIRED,
            {"entity_id": entity_id, "status": updated.status},
        )

    # -- execution steps --------------------------------------------------

    def _require_active(self, entity: AutomatableEntity) -> None:
        if entity.status is not EntityStatus.ACTIVE:
            logger.info(
                "Refusing to execute inactive entity",
                extra={"entity_id": entity.id, "status": entity.status.value},
            )
            raise NotActive(entity.id, entity.status.value)

    def _submit(self, entity: AutomatableEntity) -> LedgerResult:
        action, params = entity.ledger_request()
        logger.info(
            "Submitting ledger action",
            extra={"entity_id": entity.id, "action": action, "retry": entity.retry.current_retry},
        )
        try:
            return self._ledger.submit(action, params)
        except LedgerError as e:
            logger.warning("Ledger submission failed", extra={"entity_id": entity.id, "error": str(e)})
            return LedgerResult(success=False, reference=e.reference, error=str(e))

    def update_entity(
        self, entity_id: str, build_patch: PatchBuilder
    ) -> AutomatableEntity | None:
        """Apply `build_patch(fresh entity)` optimistically, re-reading on conflict.

        `build_patch` may return None to skip the update; then None is returned.
        """

        attempt = 0
        while True:
            attempt += 1
            current = self._store.get(entity_id)
            patch = build_patch(current)
            if patch is None:
                return None
            try:
                return self._store.update(entity_id, patch, expected_version=current.version)
            except Conflict:
                if attempt >= self._conflict_retries:
                    raise
                logger.info(
                    "Version conflict; re-reading", extra={"entity_id": entity_id, "attempt": attempt}
                )

    def _record_outcome(self, entity_id: str, outcome: LedgerResult) -> AutomatableEntity:
        now = self._clock()

        def build(current: AutomatableEntity) -> dict[str, Any]:
            if outcome.success:
                return self._success_patch(current, outcome, now)
            return self._failure_patch(current, outcome, now)

        recorded = self.update_entity(entity_id, build)
        assert recorded is not None
        logger.info(
            "Execution recorded",
            extra={
                "entity_id": entity_id,
                "ok": outcome.success,
                "status": recorded.status.value,
                "retry": recorded.retry.current_retry,
            },
        )
        return recorded

    def _completes_after_success(self, entity: AutomatableEntity) -> bool:
        if entity.trigger.kind == "time_window":
            return True
        return isinstance(entity, Workflow) and entity.runs_once

    def _success_patch(
        self, entity: AutomatableEntity, outcome: LedgerResult, now: datetime
    ) -> dict[str, Any]:
        counters = entity.counters
        patch: dict[str, Any] = {
            "counters": counters.model_copy(
                update={
                    "execution_count": counters.execution_count + 1,
                    "success_count": counters.success_count + 1,
                }
            ),
            "retry": entity.retry.model_copy(update={"current_retry": 0}),
            "last_executed_at": now,
            "last_reference": outcome.reference or None,
            "last_error": None,
            "resource_used": entity.resource_used + outcome.resource_used,
        }
        if entity.status is not EntityStatus.ACTIVE:
            return patch

        if self._completes_after_success(entity):
            patch["status"] = EntityStatus.COMPLETED
        else:
            patch["next_due_at"] = due_after_success(
                entity.trigger, now=now, condition_poll_seconds=self._condition_poll_seconds
            )
        return patch

    def _failure_patch(
        self, entity: AutomatableEntity, outcome: LedgerResult, now: datetime
    ) -> dict[str, Any]:
        counters = entity.counters
        patch: dict[str, Any] = {
            "counters": counters.model_copy(
                update={
                    "execution_count": counters.execution_count + 1,
                    "failure_count": counters.failure_count + 1,
                }
            ),
            "last_executed_at": now,
            "last_error": outcome.error or "ledger reported failure",
        }
        if outcome.reference:
            patch["last_reference"] = outcome.reference
        if entity.status is not EntityStatus.ACTIVE:
            return patch

        retry = entity.retry
        attempt = retry.current_retry + 1
        if attempt > retry.max_retries:
            patch["status"] = EntityStatus.FAILED
            patch["retry"] = retry.model_copy(update={"current_retry": retry.max_retries})
            return patch

        patch["retry"] = retry.model_copy(update={"current_retry": attempt})
        patch["next_due_at"] = now + retry_backoff(
            attempt=attempt,
            base_seconds=self._retry_backoff_seconds,
            cap_seconds=cadence_seconds(
                entity.trigger, condition_poll_seconds=self._condition_poll_seconds
            ),
        )
        return patch

    def _rearm(self, entity: AutomatableEntity) -> None:
        if entity.status is EntityStatus.ACTIVE:
            self._registry.register(entity)
        else:
            self._registry.unregister(entity.id)

    def _rearm_fresh(self, entity_id: str) -> None:
        try:
            entity = self._store.get(entity_id)
        except NotFound:
            self._registry.unregister(entity_id)
            return
        # A time window that already fired would fire again immediately.
        if entity.trigger.kind == "time_window" and entity.status is EntityStatus.ACTIVE:
            logger.warning("Time window left unarmed after error", extra={"entity_id": entity_id})
            return
        self._rearm(entity)

    # -- notification -----------------------------------------------------

    def _notification_kind(self, entity: AutomatableEntity, outcome: LedgerResult) -> NotificationKind:
        if outcome.success:
            if entity.status is EntityStatus.COMPLETED:
                return NotificationKind.EXECUTION_COMPLETED
            return NotificationKind.EXECUTION_SUCCEEDED
        if entity.status is EntityStatus.FAILED:
            return NotificationKind.EXECUTION_FAILED_TERMINAL
        return NotificationKind.EXECUTION_FAILED

    def _notify_outcome(self, entity: AutomatableEntity, outcome: LedgerResult) -> None:
        payload: dict[str, object] = {
            "entity_id": entity.id,
            "status": entity.status,
            "reference": outcome.reference,
            "current_retry": entity.retry.current_retry,
            "next_due_at": entity.next_due_at,
        }
        if not outcome.success:
            payload["error"] = entity.last_error
        notify_safely(self._notifier, entity.owner, self._notification_kind(entity, outcome), payload)

    def _result(self, entity: AutomatableEntity, outcome: LedgerResult) -> ExecutionResult:
        return ExecutionResult(
            entity_id=entity.id,
            ok=outcome.success,
            status=entity.status,
            current_retry=entity.retry.current_retry,
            next_due_at=entity.next_due_at,
            reference=outcome.reference,
            resource_used=outcome.resource_used,
            message="" if outcome.success else (outcome.error or "ledger reported failure"),
        )


def _due(entity: AutomatableEntity, now: datetime) -> bool:
    if entity.trigger.kind not in TIMED_TRIGGER_KINDS:
        return True
    return entity.next_due_at is None or entity.next_due_at <= now
