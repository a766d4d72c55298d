"""Unit tests for DAO membership management."""

from __future__ import annotations

import pytest

from flowfi_automation.engine.errors import MembershipRejected, NotAMember, NotFound
from flowfi_automation.engine.store import JsonEntityStore
from flowfi_automation.governance.dao_service import CREATOR_VOTING_POWER, DaoService
from flowfi_automation.governance.models import MemberRole


@pytest.fixture
def daos(store: JsonEntityStore, clock) -> DaoService:
    return DaoService(store=store, clock=clock)


def test_creator_becomes_admin(daos: DaoService, clock) -> None:
    dao = daos.create_dao(name="Stakers", creator="alice", settings={"quorum": 0.4})

    creator = dao.member("alice")
    assert creator is not None
    assert creator.role is MemberRole.ADMIN
    assert creator.voting_power == CREATOR_VOTING_POWER
    assert creator.joined_at == clock.now
    assert dao.settings.quorum == 0.4
    assert daos.get_dao(dao.id).name == "Stakers"


def test_join_adds_member_with_minimum_power(daos: DaoService) -> None:
    dao = daos.create_dao(name="Stakers", creator="alice", settings={"min_voting_power": 2.0})

    joined = daos.join_dao(dao.id, "bob")

    bob = joined.member("bob")
    assert bob is not None
    assert bob.voting_power == 2.0
    assert bob.role is MemberRole.MEMBER
    assert joined.version == dao.version + 1


def test_join_rejects_duplicates_and_full_daos(daos: DaoService) -> None:
    dao = daos.create_dao(name="Tiny", creator="alice", settings={"max_members": 2})
    daos.join_dao(dao.id, "bob")

    with pytest.raises(MembershipRejected, match="already a member"):
        daos.join_dao(dao.id, "bob")
    with pytest.raises(MembershipRejected, match="capacity"):
        daos.join_dao(dao.id, "carol")
    with pytest.raises(NotFound):
        daos.join_dao("dao_missing", "carol")


def test_only_admins_change_voting_power(daos: DaoService) -> None:
    dao = daos.create_dao(name="Stakers", creator="alice")
    daos.join_dao(dao.id, "bob")

    updated = daos.set_voting_power(dao.id, "bob", 25.0, requested_by="alice")
    assert updated.voting_power_of("bob") == 25.0

    with pytest.raises(NotAMember):
        daos.set_voting_power(dao.id, "alice", 1.0, requested_by="bob")
    with pytest.raises(NotAMember):
        daos.set_voting_power(dao.id, "mallory", 1.0, requested_by="alice")
    with pytest.raises(ValueError):
        daos.set_voting_power(dao.id, "bob", -1.0, requested_by="alice")


def test_list_and_stats(daos: DaoService) -> None:
    first = daos.create_dao(name="First", creator="alice")
    daos.create_dao(name="Second", creator="bob")

    assert [d.id for d in daos.list_daos(member="alice")] == [first.id]
    assert len(daos.list_daos()) == 2

    stats = daos.stats(first.id)
    assert stats["members"] == 1
    assert stats["total_voting_power"] == CREATOR_VOTING_POWER
    assert stats["active_proposals"] == 0
