"""DAO creation and membership management."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from flowfi_automation.engine.errors import Conflict, MembershipRejected, NotAMember
from flowfi_automation.engine.models import new_entity_id, utc_now
from flowfi_automation.engine.store import EntityStore
from flowfi_automation.governance.models import (
    Dao,
    DaoMember,
    DaoSettings,
    MemberRole,
    ProposalStatus,
)

logger = logging.getLogger(__name__)

CREATOR_VOTING_POWER = 100.0


class DaoService:
    def __init__(
        self,
        *,
        store: EntityStore,
        clock: Callable[[], datetime] = utc_now,
        conflict_retries: int = 3,
    ) -> None:
        self._store = store
        self._clock = clock
        self._conflict_retries = max(1, conflict_retries)

    def create_dao(
        self,
        *,
        name: str,
        creator: str,
        description: str = "",
        settings: DaoSettings | Mapping[str, Any] | None = None,
    ) -> Dao:
        """Create a DAO whose only member is `creator`, as admin."""

        now = self._clock()
        dao = Dao(
            id=new_entity_id("dao"),
            name=name,
            description=description,
            settings=DaoSettings.model_validate(settings or {}),
            members=[
                DaoMember(
                    address=creator,
                    voting_power=CREATOR_VOTING_POWER,
                    role=MemberRole.ADMIN,
                    joined_at=now,
                )
            ],
            created_at=now,
        )
        saved = self._store.upsert_dao(dao)
        logger.info("DAO created", extra={"dao_id": saved.id, "creator": creator})
        return saved

    def get_dao(self, dao_id: str) -> Dao:
        return self._store.get_dao(dao_id)

    def list_daos(self, *, member: str | None = None) -> list[Dao]:
        return self._store.find_daos(member=member)

    def join_dao(self, dao_id: str, address: str) -> Dao:
        def add_member(dao: Dao) -> dict[str, Any]:
            if dao.is_member(address):
                raise MembershipRejected(dao_id, address, "already a member")
            if len(dao.members) >= dao.settings.max_members:
                raise MembershipRejected(dao_id, address, "DAO is at maximum capacity")
            member = DaoMember(
                address=address,
                voting_power=dao.settings.min_voting_power,
                joined_at=self._clock(),
            )
            return {"members": [*dao.members, member]}

        dao = self._update(dao_id, add_member)
        logger.info("Member joined DAO", extra={"dao_id": dao_id, "address": address})
        return dao

    def set_voting_power(
        self, dao_id: str, address: str, voting_power: float, *, requested_by: str
    ) -> Dao:
        """Adjust a member's voting power. Only admins may do this."""

        if voting_power < 0:
            raise ValueError("voting_power must be >= 0")

        def adjust(dao: Dao) -> dict[str, Any]:
            admin = dao.member(requested_by)
            if admin is None or admin.role is not MemberRole.ADMIN:
                raise NotAMember(dao_id, requested_by, "only admins can change voting power")
            if not dao.is_member(address):
                raise NotAMember(dao_id, address)
            return {
                "members": [
                    m.model_copy(update={"voting_power": voting_power}) if m.address == address else m
                    for m in dao.members
                ]
            }

        dao = self._update(dao_id, adjust)
        logger.info(
            "Voting power changed",
            extra={"dao_id": dao_id, "address": address, "voting_power": voting_power},
        )
        return dao

    def stats(self, dao_id: str) -> dict[str, Any]:
        dao = self._store.get_dao(dao_id)
        active = self._store.find_proposals(dao_id=dao_id, status=ProposalStatus.ACTIVE)
        return {
            "dao_id": dao.id,
            "members": len(dao.members),
            "total_voting_power": dao.total_voting_power,
            "total_proposals": dao.stats.total_proposals,
            "active_proposals": len(active),
            "passed_proposals": dao.stats.passed_proposals,
            "total_votes": dao.stats.total_votes,
            "treasury_balance": dao.treasury.balance,
            "pending_allocations": sum(1 for a in dao.treasury.allocations if not a.executed),
        }

    def _update(self, dao_id: str, build: Callable[[Dao], dict[str, Any]]) -> Dao:
        attempt = 0
        while True:
            attempt += 1
            dao = self._store.get_dao(dao_id)
            try:
                return self._store.update_dao(dao_id, build(dao), expected_version=dao.version)
            except Conflict:
                if attempt >= self._conflict_retries:
                    raise
