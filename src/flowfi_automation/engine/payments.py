"""Recurring subscription payments.

:class:`SubscriptionPaymentScheduler` is the execution coordinator with
subscription bookkeeping layered on top: payment totals after each successful
payment and completion once `max_payments` is reached. Workflows pass through
the base behavior unchanged, so one instance coordinates both kinds.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flowfi_automation.engine.coordinator import ExecutionCoordinator, ExecutionResult
from flowfi_automation.engine.errors import AlreadyRunning, NotActive, NotFound
from flowfi_automation.engine.ledger import LedgerResult
from flowfi_automation.engine.models import AutomatableEntity, EntityStatus, Subscription
from flowfi_automation.engine.notifier import NotificationKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PaymentBatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: tuple[ExecutionResult, ...] = ()
    errors: tuple[str, ...] = ()


class SubscriptionPaymentScheduler(ExecutionCoordinator):
    def __init__(self, *, batch_workers: int = 8, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._batch_workers = max(1, batch_workers)

    def _completes_after_success(self, entity: AutomatableEntity) -> bool:
        if isinstance(entity, Subscription) and entity.max_payments > 0:
            # Compared against the count before this payment is added.
            if entity.total_payments + 1 >= entity.max_payments:
                return True
        return super()._completes_after_success(entity)

    def _success_patch(
        self, entity: AutomatableEntity, outcome: LedgerResult, now: datetime
    ) -> dict[str, Any]:
        patch = super()._success_patch(entity, outcome, now)
        if isinstance(entity, Subscription):
            patch["total_payments"] = entity.total_payments + 1
            patch["total_volume"] = entity.total_volume + entity.amount_due
        return patch

    def _notification_kind(
        self, entity: AutomatableEntity, outcome: LedgerResult
    ) -> NotificationKind:
        if not isinstance(entity, Subscription):
            return super()._notification_kind(entity, outcome)
        if not outcome.success:
            return NotificationKind.PAYMENT_FAILED
        if entity.status is EntityStatus.COMPLETED:
            return NotificationKind.SUBSCRIPTION_COMPLETED
        return NotificationKind.PAYMENT_SUCCEEDED

    def process_due_payments(
        self, now: datetime | None = None, *, max_workers: int | None = None
    ) -> PaymentBatchResult:
        """Execute every Active subscription due at `now`, concurrently.

        Each subscription is independent: one failure (or one subscription
        already being executed elsewhere) never aborts the batch. Returns once
        every unit has finished.
        """

        now = now or self._clock()
        due = self._store.find_due(now, kind="subscription")
        if not due:
            return PaymentBatchResult()

        workers = max(1, min(max_workers or self._batch_workers, len(due)))
        succeeded = failed = skipped = 0
        results: list[ExecutionResult] = []
        errors: list[str] = []

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payments") as pool:
            futures = {pool.submit(self._execute, sub.id, due_by=now): sub.id for sub in due}
            for future in as_completed(futures):
                sub_id = futures[future]
                try:
                    result = future.result()
                except (AlreadyRunning, NotActive, NotFound) as e:
                    logger.info("Payment skipped", extra={"entity_id": sub_id, "reason": str(e)})
                    skipped += 1
                    continue
                except Exception as e:
                    logger.exception("Payment processing error", extra={"entity_id": sub_id})
                    failed += 1
                    errors.append(f"{sub_id}: {e}")
                    continue

                if result is None:
                    # Paid by its own scheduled job since the scan.
                    skipped += 1
                    continue
                results.append(result)
                if result.ok:
                    succeeded += 1
                else:
                    failed += 1
                    errors.append(f"{sub_id}: {result.message}")

        batch = PaymentBatchResult(
            processed=len(due),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            results=tuple(sorted(results, key=lambda r: r.entity_id)),
            errors=tuple(sorted(errors)),
        )
        logger.info(
            "Payment batch processed",
            extra={
                "processed": batch.processed,
                "succeeded": batch.succeeded,
                "failed": batch.failed,
                "skipped": batch.skipped,
            },
        )
        return batch
