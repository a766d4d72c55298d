"""Owner notifications.

Delivery is best-effort: a notifier that raises is logged and ignored, and
never changes engine state. The outbox notifier persists in-app notifications
to a JSON file in the same way the entity store persists entities.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from flowfi_automation.engine.models import utc_now

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ENTITY_CREATED = "entity_created"
    STATUS_CHANGED = "status_changed"
    EXECUTION_SUCCEEDED = "execution_succeeded"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_FAILED_TERMINAL = "execution_failed_terminal"
    EXECUTION_COMPLETED = "execution_completed"
    WINDOW_EXPIRED = "window_expired"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_COMPLETED = "subscription_completed"
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_RESOLVED = "proposal_resolved"


_HIGH_PRIORITY: frozenset[str] = frozenset(
    {
        NotificationKind.EXECUTION_FAILED.value,
        NotificationKind.EXECUTION_FAILED_TERMINAL.value,
        NotificationKind.PAYMENT_FAILED.value,
    }
)


class Notifier(Protocol):
    def notify(self, owner: str, kind: str, payload: Mapping[str, object]) -> None: ...


class LoggingNotifier:
    """Emit notifications as log records only."""

    def notify(self, owner: str, kind: str, payload: Mapping[str, object]) -> None:
        logger.info("Notification", extra={"owner": owner, "kind": kind, "payload": dict(payload)})


class NotificationRecord(BaseModel):
    id: str
    owner: str
    kind: str
    priority: str = "low"
    channels: list[str] = Field(default_factory=lambda: ["in_app"])
    payload: dict[str, object] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    read: bool = False


@dataclass
class OutboxNotifier:
    """Persist in-app notifications to a JSON list."""

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[NotificationRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        return [NotificationRecord.model_validate(item) for item in raw]

    def _save_unlocked(self, records: list[NotificationRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in records]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n",
            encoding="utf-8",
        )

    def notify(self, owner: str, kind: str, payload: Mapping[str, object]) -> None:
        record = NotificationRecord(
            id=uuid.uuid4().hex,
            owner=owner,
            kind=kind,
            priority="high" if kind in _HIGH_PRIORITY else "low",
            payload=_jsonable(payload),
        )
        with self._lock:
            records = self._load_unlocked()
            records.append(record)
            self._save_unlocked(records)

    def list_for(self, owner: str) -> list[NotificationRecord]:
        with self._lock:
            records = self._load_unlocked()
        return [r for r in records if r.owner == owner]


def _jsonable(payload: Mapping[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    for key, value in payload.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


def notify_safely(
    notifier: Notifier, owner: str, kind: NotificationKind | str, payload: Mapping[str, object]
) -> bool:
    """Deliver one notification; return False (and log) if the notifier raised."""

    kind_value = kind.value if isinstance(kind, NotificationKind) else kind
    try:
        notifier.notify(owner, kind_value, payload)
    except Exception:
        logger.warning(
            "Notification delivery failed",
            extra={"owner": owner, "kind": kind_value},
            exc_info=True,
        )
        return False
    return True


def fan_out(
    notifier: Notifier,
    owners: Iterable[str],
    kind: NotificationKind | str,
    payload: Mapping[str, object],
    *,
    max_workers: int = 8,
) -> int:
    """Notify many owners concurrently; returns how many deliveries succeeded."""

    recipients = list(dict.fromkeys(owners))
    if not recipients:
        return 0
    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(recipients))), thread_name_prefix="notify"
    ) as pool:
        delivered = list(
            pool.map(lambda owner: notify_safely(notifier, owner, kind, payload), recipients)
        )
    return sum(1 for ok in delivered if ok)
