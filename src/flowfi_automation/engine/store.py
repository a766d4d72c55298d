"""Entity store contract and a JSON-file backed implementation.

All four collections (workflows, subscriptions, DAOs, proposals) live in one
JSON document so a single lock makes every operation atomic. Updates are
optimistic: callers may pass `expected_version` and receive :class:`Conflict`
if another writer got there first.

This is intentionally local-first. A multi-process deployment should put the
same contract in front of a real database.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Protocol, TypeVar

from pydantic import BaseModel

from flowfi_automation.engine.errors import Conflict, NotFound
from flowfi_automation.engine.models import (
    AutomatableEntity,
    EntityStatus,
    Subscription,
    Workflow,
    utc_now,
)
from flowfi_automation.governance.models import Dao, Proposal, ProposalStatus, Vote

logger = logging.getLogger(__name__)

EntityKind = Literal["workflow", "subscription"]

_COLLECTIONS: dict[str, type[BaseModel]] = {
    "workflows": Workflow,
    "subscriptions": Subscription,
    "daos": Dao,
    "proposals": Proposal,
}
_KIND_TO_COLLECTION: dict[str, str] = {
    "workflow": "workflows",
    "subscription": "subscriptions",
}

ModelT = TypeVar("ModelT", bound=BaseModel)


class EntityStore(Protocol):
    def get(self, entity_id: str) -> AutomatableEntity: ...

    def find(
        self,
        *,
        kind: EntityKind | None = None,
        status: EntityStatus | None = None,
        owner: str | None = None,
    ) -> list[AutomatableEntity]: ...

    def find_due(
        self, now: datetime, *, kind: EntityKind | None = None
    ) -> list[AutomatableEntity]: ...

    def update(
        self,
        entity_id: str,
        patch: Mapping[str, object],
        *,
        expected_version: int | None = None,
    ) -> AutomatableEntity: ...

    def upsert(self, entity: AutomatableEntity) -> AutomatableEntity: ...

    def get_dao(self, dao_id: str) -> Dao: ...

    def upsert_dao(self, dao: Dao) -> Dao: ...

    def update_dao(
        self, dao_id: str, patch: Mapping[str, object], *, expected_version: int | None = None
    ) -> Dao: ...

    def get_proposal(self, proposal_id: str) -> Proposal: ...

    def find_proposals(
        self, *, dao_id: str | None = None, status: ProposalStatus | None = None
    ) -> list[Proposal]: ...

    def upsert_proposal(self, proposal: Proposal) -> Proposal: ...

    def update_proposal(
        self,
        proposal_id: str,
        patch: Mapping[str, object],
        *,
        expected_version: int | None = None,
    ) -> Proposal: ...

    def append_vote(self, proposal_id: str, vote: Vote) -> Proposal: ...


@dataclass
class JsonEntityStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.RLock()

    # -- raw document -----------------------------------------------------

    def _load_unlocked(self) -> dict[str, list[dict[str, Any]]]:
        empty: dict[str, list[dict[str, Any]]] = {name: [] for name in _COLLECTIONS}
        if not self.path.exists():
            return empty
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Entity state file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return empty
        if not isinstance(raw, dict):
            logger.warning(
                "Entity state file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return empty
        for name in _COLLECTIONS:
            items = raw.get(name)
            empty[name] = [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []
        return empty

    def _save_unlocked(self, doc: dict[str, list[dict[str, Any]]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(doc, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    @staticmethod
    def _index_of(items: list[dict[str, Any]], item_id: str) -> int | None:
        for idx, item in enumerate(items):
            if item.get("id") == item_id:
                return idx
        return None

    def _get_from(self, collection: str, item_id: str, model: type[ModelT]) -> ModelT | None:
        with self._lock:
            items = self._load_unlocked()[collection]
            idx = self._index_of(items, item_id)
            return None if idx is None else model.model_validate(items[idx])

    def _put(self, collection: str, item: ModelT) -> ModelT:
        with self._lock:
            doc = self._load_unlocked()
            items = doc[collection]
            idx = self._index_of(items, getattr(item, "id"))
            stamped = item.model_copy(update={"updated_at": utc_now()})
            if idx is None:
                items.append(stamped.model_dump(mode="json"))
            else:
                items[idx] = stamped.model_dump(mode="json")
            self._save_unlocked(doc)
            return stamped

    def _patch(
        self,
        collection: str,
        item_id: str,
        patch: Mapping[str, object],
        *,
        expected_version: int | None,
        what: str,
    ) -> BaseModel:
        model = _COLLECTIONS[collection]
        with self._lock:
            doc = self._load_unlocked()
            items = doc[collection]
            idx = self._index_of(items, item_id)
            if idx is None:
                raise NotFound(item_id, what=what)
            current = model.model_validate(items[idx])
            version = getattr(current, "version")
            if expected_version is not None and version != expected_version:
                raise Conflict(item_id, expected_version=expected_version, actual_version=version)
            merged = model.model_validate(
                {
                    **current.model_dump(),
                    **dict(patch),
                    "version": version + 1,
                    "updated_at": utc_now(),
                }
            )
            items[idx] = merged.model_dump(mode="json")
            self._save_unlocked(doc)
            return merged

    # -- automatables -----------------------------------------------------

    def _automatables_unlocked(self, kind: EntityKind | None) -> list[AutomatableEntity]:
        doc = self._load_unlocked()
        out: list[AutomatableEntity] = []
        if kind in (None, "workflow"):
            out.extend(Workflow.model_validate(item) for item in doc["workflows"])
        if kind in (None, "subscription"):
            out.extend(Subscription.model_validate(item) for item in doc["subscriptions"])
        return out

    def get(self, entity_id: str) -> AutomatableEntity:
        for collection in ("workflows", "subscriptions"):
            found = self._get_from(collection, entity_id, _COLLECTIONS[collection])
            if found is not None:
                return found  # type: ignore[return-value]
        raise NotFound(entity_id)

    def find(
        self,
        *,
        kind: EntityKind | None = None,
        status: EntityStatus | None = None,
        owner: str | None = None,
    ) -> list[AutomatableEntity]:
        with self._lock:
            entities = self._automatables_unlocked(kind)
        return [
            e
            for e in entities
            if (status is None or e.status is status) and (owner is None or e.owner == owner)
        ]

    def find_due(self, now: datetime, *, kind: EntityKind | None = None) -> list[AutomatableEntity]:
        with self._lock:
            entities = self._automatables_unlocked(kind)
        due = [e for e in entities if e.is_due(now)]
        return sorted(due, key=lambda e: (e.next_due_at or now, e.id))

    def update(
        self,
        entity_id: str,
        patch: Mapping[str, object],
        *,
        expected_version: int | None = None,
    ) -> AutomatableEntity:
        with self._lock:
            for collection in ("workflows", "subscriptions"):
                items = self._load_unlocked()[collection]
                if self._index_of(items, entity_id) is not None:
                    return self._patch(  # type: ignore[return-value]
                        collection,
                        entity_id,
                        patch,
                        expected_version=expected_version,
                        what="Entity",
                    )
        raise NotFound(entity_id)

    def upsert(self, entity: AutomatableEntity) -> AutomatableEntity:
        return self._put(_KIND_TO_COLLECTION[entity.kind], entity)

    # -- governance -------------------------------------------------------

    def get_dao(self, dao_id: str) -> Dao:
        dao = self._get_from("daos", dao_id, Dao)
        if dao is None:
            raise NotFound(dao_id, what="DAO")
        return dao

    def find_daos(self, *, member: str | None = None) -> list[Dao]:
        with self._lock:
            daos = [Dao.model_validate(item) for item in self._load_unlocked()["daos"]]
        return [d for d in daos if member is None or d.is_member(member)]

    def upsert_dao(self, dao: Dao) -> Dao:
        return self._put("daos", dao)

    def update_dao(
        self, dao_id: str, patch: Mapping[str, object], *, expected_version: int | None = None
    ) -> Dao:
        return self._patch(  # type: ignore[return-value]
            "daos", dao_id, patch, expected_version=expected_version, what="DAO"
        )

    def get_proposal(self, proposal_id: str) -> Proposal:
        proposal = self._get_from("proposals", proposal_id, Proposal)
        if proposal is None:
            raise NotFound(proposal_id, what="Proposal")
        return proposal

    def find_proposals(
        self, *, dao_id: str | None = None, status: ProposalStatus | None = None
    ) -> list[Proposal]:
        with self._lock:
            proposals = [Proposal.model_validate(p) for p in self._load_unlocked()["proposals"]]
        return [
            p
            for p in proposals
            if (dao_id is None or p.dao_id == dao_id) and (status is None or p.status is status)
        ]

    def upsert_proposal(self, proposal: Proposal) -> Proposal:
        return self._put("proposals", proposal)

    def update_proposal(
        self,
        proposal_id: str,
        patch: Mapping[str, object],
        *,
        expected_version: int | None = None,
    ) -> Proposal:
        return self._patch(  # type: ignore[return-value]
            "proposals", proposal_id, patch, expected_version=expected_version, what="Proposal"
        )

    def append_vote(self, proposal_id: str, vote: Vote) -> Proposal:
        """Append a vote subdocument and update the tally in one step."""

        with self._lock:
            current = self.get_proposal(proposal_id)
            appended = current.with_vote(vote)
            return self.update_proposal(
                proposal_id,
                {"votes": appended.votes, "tally": appended.tally},
                expected_version=current.version,
            )
