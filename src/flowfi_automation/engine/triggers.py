"""Trigger registry: the set of currently armed triggers.

One trigger per Active workflow/subscription. Armed triggers are APScheduler
jobs keyed by entity id:

- scheduled: a one-shot date job at the next occurrence
- time_window: a date job at the window start plus an expiry job at its end
- event: a listener keyed by event type, fired by :meth:`TriggerRegistry.emit`
- condition: an interval job that re-evaluates the condition on each run

Register, unregister and fire are mutually exclusive per entity id; different
ids never contend. Registering an id always tears down its previous jobs
first, so an id is armed at most once.

When a trigger fires the registry calls the subscribed ``on_due`` callback
outside of any registry lock. Timed triggers are disarmed as they fire; the
coordinator re-arms them after execution.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowfi_automation.engine.conditions import ConditionEvaluator, OracleConditionEvaluator
from flowfi_automation.engine.locks import KeyedLocks
from flowfi_automation.engine.models import (
    Automatable,
    ConditionTrigger,
    EntityStatus,
    EventTrigger,
    ScheduledTrigger,
    TimeWindowTrigger,
    utc_now,
)
from flowfi_automation.engine.schedule import next_scheduled_fire

logger = logging.getLogger(__name__)

DueCallback = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class TriggerInfo:
    """Public view of an armed trigger."""

    entity_id: str
    kind: str
    armed_at: datetime
    fires_at: datetime | None = None
    event_type: str | None = None


@dataclass
class _ArmedTrigger:
    info: TriggerInfo
    token: int
    job_ids: list[str] = field(default_factory=list)
    not_before: datetime | None = None


class TriggerRegistry:
    def __init__(
        self,
        *,
        condition_evaluator: ConditionEvaluator | None = None,
        condition_poll_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
        scheduler: BaseScheduler | None = None,
        enabled: bool = True,
    ) -> None:
        if condition_poll_seconds <= 0:
            raise ValueError("condition_poll_seconds must be > 0")

        self._evaluate: ConditionEvaluator = condition_evaluator or OracleConditionEvaluator()
        self._poll_seconds = condition_poll_seconds
        self._clock = clock
        self._scheduler = scheduler or BackgroundScheduler(timezone=UTC)
        self._enabled = enabled

        self._lock = threading.Lock()
        self._id_locks = KeyedLocks()
        self._triggers: dict[str, _ArmedTrigger] = {}
        self._listeners: dict[str, set[str]] = {}
        self._tokens = itertools.count(1)

        self._on_due: DueCallback | None = None
        self._on_expired: DueCallback | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True
        self._ensure_started()

    def disable(self) -> None:
        """Stop arming new triggers. Already armed triggers are left as they are."""

        self._enabled = False

    def shutdown(self) -> None:
        """Disarm everything and stop the scheduler thread. The registry cannot be re-enabled."""

        self._enabled = False
        self.clear()
        with self._lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)

    def subscribe(self, *, on_due: DueCallback, on_expired: DueCallback | None = None) -> None:
        self._on_due = on_due
        self._on_expired = on_expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._triggers)

    def __contains__(self, entity_id: object) -> bool:
        with self._lock:
            return entity_id in self._triggers

    # -- public contract --------------------------------------------------

    def register(self, entity: Automatable) -> TriggerInfo | None:
        """Arm (or re-arm) the trigger for `entity`.

        Returns None when nothing was armed: the registry is disabled, the
        entity is not Active, or its time window has already closed (in which
        case ``on_expired`` fires).
        """

        window_closed = False
        info: TriggerInfo | None = None
        with self._id_locks.hold(entity.id):
            self._unregister_unlocked(entity.id)
            if not self._enabled or entity.status is not EntityStatus.ACTIVE:
                return None

            armed = self._arm(entity, token=next(self._tokens), now=self._clock())
            if armed is None:
                window_closed = True
            else:
                with self._lock:
                    self._triggers[entity.id] = armed
                    if armed.info.event_type is not None:
                        self._listeners.setdefault(armed.info.event_type, set()).add(entity.id)
                info = armed.info

        if window_closed:
            logger.info("Time window already closed", extra={"entity_id": entity.id})
            self._dispatch(self._on_expired, entity.id)
            return None

        assert info is not None
        logger.info(
            "Trigger armed",
            extra={
                "entity_id": entity.id,
                "kind": info.kind,
                "fires_at": info.fires_at.isoformat() if info.fires_at else None,
            },
        )
        return info

    def unregister(self, entity_id: str) -> bool:
        """Disarm a trigger. Unknown ids are a no-op."""

        with self._id_locks.hold(entity_id):
            removed = self._unregister_unlocked(entity_id)
        if removed:
            logger.info("Trigger disarmed", extra={"entity_id": entity_id})
        return removed

    def list(self) -> list[TriggerInfo]:
        with self._lock:
            infos = [armed.info for armed in self._triggers.values()]
        return sorted(infos, key=lambda info: info.entity_id)

    def emit(self, event_type: str) -> list[str]:
        """Deliver an external event to every listener of `event_type`.

        Returns the ids whose ``on_due`` was invoked. Listeners still inside a
        retry backoff are skipped.
        """

        now = self._clock()
        with self._lock:
            candidates = sorted(self._listeners.get(event_type, set()))

        fired: list[str] = []
        for entity_id in candidates:
            with self._id_locks.hold(entity_id):
                with self._lock:
                    armed = self._triggers.get(entity_id)
                if armed is None or armed.info.event_type != event_type:
                    continue
                if armed.not_before is not None and now < armed.not_before:
                    logger.debug(
                        "Event ignored during retry backoff",
                        extra={"entity_id": entity_id, "event_type": event_type},
                    )
                    continue
            fired.append(entity_id)

        for entity_id in fired:
            self._dispatch(self._on_due, entity_id)
        return fired

    def rebuild(self, entities: Iterable[Automatable]) -> int:
        """Drop every trigger, then arm each Active entity. Returns the armed count."""

        self.clear()
        armed = 0
        for entity in entities:
            if entity.status is EntityStatus.ACTIVE and self.register(entity) is not None:
                armed += 1
        logger.info("Trigger registry rebuilt", extra={"armed": armed})
        return armed

    def clear(self) -> None:
        with self._lock:
            ids = list(self._triggers)
        for entity_id in ids:
            self.unregister(entity_id)

    # -- arming -----------------------------------------------------------

    def _ensure_started(self) -> None:
        with self._lock:
            if not self._scheduler.running:
                self._scheduler.start()

    def _add_job(
        self, job_id: str, func: Callable[..., None], trigger: BaseTrigger, *args: object
    ) -> str:
        self._ensure_started()
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            args=list(args),
            name=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        return job_id

    def _remove_jobs(self, armed: _ArmedTrigger) -> None:
        for job_id in armed.job_ids:
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                # Date jobs leave the job store once they have run.
                logger.debug("Job already gone", extra={"job_id": job_id})

    def _arm(self, entity: Automatable, *, token: int, now: datetime) -> _ArmedTrigger | None:
        trigger = entity.trigger
        # Only a future next_due_at (e.g. a retry backoff) is honored; a past
        # one is never replayed.
        pending = (
            entity.next_due_at
            if entity.next_due_at is not None and entity.next_due_at > now
            else None
        )

        if isinstance(trigger, ScheduledTrigger):
            fires_at = pending or next_scheduled_fire(trigger, now=now)
            armed = _ArmedTrigger(
                info=TriggerInfo(entity.id, trigger.kind, armed_at=now, fires_at=fires_at),
                token=token,
            )
            armed.job_ids.append(
                self._add_job(
                    entity.id, self._fire, DateTrigger(run_date=fires_at, timezone=UTC),
                    entity.id, token,
                )
            )
            return armed

        if isinstance(trigger, TimeWindowTrigger):
            fires_at = max(pending or now, trigger.start)
            if fires_at >= trigger.end:
                return None
            armed = _ArmedTrigger(
                info=TriggerInfo(entity.id, trigger.kind, armed_at=now, fires_at=fires_at),
                token=token,
            )
            armed.job_ids.append(
                self._add_job(
                    entity.id, self._fire, DateTrigger(run_date=fires_at, timezone=UTC),
                    entity.id, token,
                )
            )
            armed.job_ids.append(
                self._add_job(
                    f"{entity.id}:expiry", self._expire,
                    DateTrigger(run_date=trigger.end, timezone=UTC), entity.id, token,
                )
            )
            return armed

        if isinstance(trigger, EventTrigger):
            return _ArmedTrigger(
                info=TriggerInfo(
                    entity.id, trigger.kind, armed_at=now, event_type=trigger.event_type
                ),
                token=token,
                not_before=pending,
            )

        assert isinstance(trigger, ConditionTrigger)
        interval = trigger.poll_seconds or self._poll_seconds
        first_poll = pending or now + timedelta(seconds=interval)
        armed = _ArmedTrigger(
            info=TriggerInfo(entity.id, trigger.kind, armed_at=now, fires_at=first_poll),
            token=token,
        )
        armed.job_ids.append(
            self._add_job(
                entity.id,
                self._poll,
                IntervalTrigger(seconds=interval, start_date=first_poll, timezone=UTC),
                entity,
                token,
            )
        )
        return armed

    def _unregister_unlocked(self, entity_id: str) -> bool:
        with self._lock:
            armed = self._triggers.pop(entity_id, None)
            if armed is not None and armed.info.event_type is not None:
                listeners = self._listeners.get(armed.info.event_type)
                if listeners is not None:
                    listeners.discard(entity_id)
                    if not listeners:
                        del self._listeners[armed.info.event_type]
        if armed is None:
            return False
        self._remove_jobs(armed)
        return True

    def _is_current(self, entity_id: str, token: int) -> bool:
        with self._lock:
            armed = self._triggers.get(entity_id)
        return armed is not None and armed.token == token

    def _take_if_current(self, entity_id: str, token: int) -> bool:
        """Disarm `entity_id` if `token` is still its live trigger."""

        with self._id_locks.hold(entity_id):
            if not self._is_current(entity_id, token):
                return False
            self._unregister_unlocked(entity_id)
            return True

    # -- firing -----------------------------------------------------------

    def _fire(self, entity_id: str, token: int) -> None:
        if not self._take_if_current(entity_id, token):
            return
        logger.info("Trigger fired", extra={"entity_id": entity_id})
        self._dispatch(self._on_due, entity_id)

    def _expire(self, entity_id: str, token: int) -> None:
        if not self._take_if_current(entity_id, token):
            return
        logger.info("Time window closed before firing", extra={"entity_id": entity_id})
        self._dispatch(self._on_expired, entity_id)

    def _poll(self, entity: Automatable, token: int) -> None:
        assert isinstance(entity.trigger, ConditionTrigger)
        if not self._is_current(entity.id, token):
            return
        try:
            met = self._evaluate(entity.trigger.condition, entity, self._clock())
        except Exception:
            logger.exception("Condition evaluation failed", extra={"entity_id": entity.id})
            return
        if not met:
            return

        with self._id_locks.hold(entity.id):
            if not self._is_current(entity.id, token):
                return
        logger.info("Condition met", extra={"entity_id": entity.id})
        self._dispatch(self._on_due, entity.id)

    def _dispatch(self, callback: DueCallback | None, entity_id: str) -> None:
        if callback is None:
            logger.warning("Trigger fired with no subscriber", extra={"entity_id": entity_id})
            return
        try:
            callback(entity_id)
        except Exception:
            logger.exception("Trigger callback failed", extra={"entity_id": entity_id})
