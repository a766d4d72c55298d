"""Proposal resolution state machine.

    Active ──► Passed ──► Executed
       │          └─────► Failed
       ├────► Rejected
       └────► Cancelled

Resolution is evaluated after every vote, on an explicit ``resolve`` call and
by the time-based sweep. All three run under a per-proposal lock and are
no-ops once the proposal has left Active, so an effect is applied at most
once no matter how many resolution attempts race.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from flowfi_automation.engine.errors import (
    AlreadyVoted,
    Conflict,
    IllegalTransitionError,
    NotAMember,
    VotingClosed,
)
from flowfi_automation.engine.locks import KeyedLocks
from flowfi_automation.engine.models import new_entity_id, utc_now
from flowfi_automation.engine.notifier import NotificationKind, Notifier, fan_out
from flowfi_automation.engine.store import EntityStore
from flowfi_automation.governance.effects import EffectDispatcher
from flowfi_automation.governance.models import (
    Dao,
    MemberRole,
    Proposal,
    ProposalStatus,
    ProposalType,
    Vote,
    VoteChoice,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[ProposalStatus, set[ProposalStatus]] = {
    ProposalStatus.ACTIVE: {
        ProposalStatus.PASSED,
        ProposalStatus.REJECTED,
        ProposalStatus.CANCELLED,
    },
    ProposalStatus.PASSED: {ProposalStatus.EXECUTED, ProposalStatus.FAILED},
    ProposalStatus.REJECTED: set(),
    ProposalStatus.EXECUTED: set(),
    ProposalStatus.FAILED: set(),
    ProposalStatus.CANCELLED: set(),
}


def transition(current: ProposalStatus, to: ProposalStatus) -> ProposalStatus:
    if to not in ALLOWED_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to


def quorum_reached(proposal: Proposal, total_voting_power: float) -> bool:
    return proposal.tally.total >= total_voting_power * proposal.quorum_fraction


def threshold_reached(proposal: Proposal) -> bool:
    """Yes weight meets the threshold share of all cast weight (inclusive).

    With no votes cast this is 0 >= 0, so a proposal nobody voted on passes
    once its voting period ends.
    """

    tally = proposal.tally
    return tally.yes >= tally.total * proposal.threshold_fraction


class ProposalResolutionStateMachine:
    def __init__(
        self,
        *,
        store: EntityStore,
        notifier: Notifier,
        effects: EffectDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
        fan_out_workers: int = 8,
        conflict_retries: int = 3,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._effects = effects or EffectDispatcher()
        self._clock = clock
        self._fan_out_workers = fan_out_workers
        self._conflict_retries = max(1, conflict_retries)

        self._locks = KeyedLocks()

    # -- queries ----------------------------------------------------------

    def get(self, proposal_id: str) -> Proposal:
        return self._store.get_proposal(proposal_id)

    def list_proposals(
        self, *, dao_id: str | None = None, status: ProposalStatus | None = None
    ) -> list[Proposal]:
        proposals = self._store.find_proposals(dao_id=dao_id, status=status)
        return sorted(proposals, key=lambda p: p.created_at, reverse=True)

    # -- commands ---------------------------------------------------------

    def create_proposal(
        self,
        dao_id: str,
        *,
        proposer: str,
        title: str,
        type: ProposalType | str,  # noqa: A002
        description: str = "",
        data: Mapping[str, Any] | None = None,
    ) -> Proposal:
        dao = self._store.get_dao(dao_id)
        if not dao.is_member(proposer):
            raise NotAMember(dao_id, proposer)
        if dao.voting_power_of(proposer) < dao.settings.min_voting_power:
            raise NotAMember(dao_id, proposer, "insufficient voting power to propose")

        now = self._clock()
        proposal = self._store.upsert_proposal(
            Proposal(
                id=new_entity_id("prop"),
                dao_id=dao_id,
                title=title,
                description=description,
                type=ProposalType(type),
                proposer=proposer,
                quorum_fraction=dao.settings.quorum,
                threshold_fraction=dao.settings.threshold,
                start_time=now,
                end_time=now + timedelta(seconds=dao.settings.voting_period_seconds),
                data=dict(data or {}),
                created_at=now,
            )
        )
        self._update_dao(
            dao_id,
            lambda d: {
                "stats": d.stats.model_copy(update={"total_proposals": d.stats.total_proposals + 1})
            },
        )
        logger.info(
            "Proposal created",
            extra={"proposal_id": proposal.id, "dao_id": dao_id, "type": proposal.type.value},
        )
        fan_out(
            self._notifier,
            [m.address for m in dao.members],
            NotificationKind.PROPOSAL_CREATED,
            {"proposal_id": proposal.id, "dao_id": dao_id, "title": proposal.title},
            max_workers=self._fan_out_workers,
        )
        return proposal

    def cast_vote(self, proposal_id: str, voter: str, choice: VoteChoice | str) -> Proposal:
        """Record one weighted vote, then try to resolve.

        Raises:
            AlreadyVoted: `voter` already has a vote on this proposal.
            VotingClosed: the proposal is not Active or its period has ended.
                An expired Active proposal is resolved before this is raised.
            NotAMember: `voter` is not a member of the proposal's DAO.
        """

        choice = VoteChoice(choice)
        with self._locks.hold(proposal_id):
            proposal = self._store.get_proposal(proposal_id)
            if proposal.has_voted(voter):
                raise AlreadyVoted(proposal_id, voter)
            if proposal.status is not ProposalStatus.ACTIVE:
                raise VotingClosed(proposal_id, f"status is {proposal.status.value}")

            now = self._clock()
            if now > proposal.end_time:
                self._resolve_locked(proposal, now)
                raise VotingClosed(proposal_id, "voting period has ended")

            dao = self._store.get_dao(proposal.dao_id)
            if not dao.is_member(voter):
                raise NotAMember(dao.id, voter)

            updated = self._store.append_vote(
                proposal_id,
                Vote(voter=voter, choice=choice, weight=dao.voting_power_of(voter), cast_at=now),
            )
            self._update_dao(
                dao.id,
                lambda d: {
                    "stats": d.stats.model_copy(update={"total_votes": d.stats.total_votes + 1})
                },
            )
            logger.info(
                "Vote recorded",
                extra={"proposal_id": proposal_id, "voter": voter, "choice": choice.value},
            )
            return self._resolve_locked(updated, now)

    def resolve(self, proposal_id: str) -> Proposal:
        """Resolve if quorum is reached or voting has ended. Idempotent."""

        with self._locks.hold(proposal_id):
            return self._resolve_locked(self._store.get_proposal(proposal_id), self._clock())

    def sweep_expired(self, now: datetime | None = None) -> list[Proposal]:
        """Resolve every Active proposal whose voting period has ended."""

        now = now or self._clock()
        resolved: list[Proposal] = []
        for candidate in self._store.find_proposals(status=ProposalStatus.ACTIVE):
            if now <= candidate.end_time:
                continue
            try:
                with self._locks.hold(candidate.id):
                    result = self._resolve_locked(self._store.get_proposal(candidate.id), now)
            except Exception:
                logger.exception("Proposal sweep failed", extra={"proposal_id": candidate.id})
                continue
            if result.status is not ProposalStatus.ACTIVE:
                resolved.append(result)
        if resolved:
            logger.info("Expired proposals resolved", extra={"count": len(resolved)})
        return resolved

    def cancel(self, proposal_id: str, *, requested_by: str) -> Proposal:
        with self._locks.hold(proposal_id):
            proposal = self._store.get_proposal(proposal_id)
            dao = self._store.get_dao(proposal.dao_id)
            member = dao.member(requested_by)
            is_admin = member is not None and member.role is MemberRole.ADMIN
            if requested_by != proposal.proposer and not is_admin:
                raise NotAMember(dao.id, requested_by, "only the proposer or an admin can cancel")

            status = transition(proposal.status, ProposalStatus.CANCELLED)
            cancelled = self._store.update_proposal(
                proposal_id,
                {"status": status, "resolved_at": self._clock()},
                expected_version=proposal.version,
            )
        logger.info("Proposal cancelled", extra={"proposal_id": proposal_id, "by": requested_by})
        self._notify_members(dao, cancelled)
        return cancelled

    # -- resolution -------------------------------------------------------

    def _resolve_locked(self, proposal: Proposal, now: datetime) -> Proposal:
        if proposal.status is not ProposalStatus.ACTIVE:
            return proposal

        dao = self._store.get_dao(proposal.dao_id)
        if not (now > proposal.end_time or quorum_reached(proposal, dao.total_voting_power)):
            return proposal

        passed = threshold_reached(proposal)
        status = transition(
            proposal.status, ProposalStatus.PASSED if passed else ProposalStatus.REJECTED
        )
        resolved = self._store.update_proposal(
            proposal.id,
            {"status": status, "resolved_at": now},
            expected_version=proposal.version,
        )
        logger.info(
            "Proposal resolved",
            extra={
                "proposal_id": proposal.id,
                "status": status.value,
                "yes": proposal.tally.yes,
                "total": proposal.tally.total,
            },
        )
        if passed:
            resolved = self._execute(resolved, now)

        self._notify_members(dao, resolved)
        return resolved

    def _execute(self, proposal: Proposal, now: datetime) -> Proposal:
        try:
            self._update_dao(proposal.dao_id, lambda d: self._effect_patch(d, proposal))
        except Exception as e:
            # No automatic retry: a failed effect is final.
            logger.warning(
                "Proposal effect failed",
                extra={"proposal_id": proposal.id, "error": str(e)},
                exc_info=True,
            )
            return self._store.update_proposal(
                proposal.id,
                {
                    "status": transition(proposal.status, ProposalStatus.FAILED),
                    "failure_reason": str(e),
                    "executed_at": now,
                },
                expected_version=proposal.version,
            )

        logger.info("Proposal executed", extra={"proposal_id": proposal.id})
        return self._store.update_proposal(
            proposal.id,
            {"status": transition(proposal.status, ProposalStatus.EXECUTED), "executed_at": now},
            expected_version=proposal.version,
        )

    def _effect_patch(self, dao: Dao, proposal: Proposal) -> dict[str, Any]:
        applied = self._effects.apply(dao, proposal)
        return {
            "settings": applied.settings,
            "treasury": applied.treasury,
            "approved_templates": applied.approved_templates,
            "approved_features": applied.approved_features,
            "stats": applied.stats.model_copy(
                update={"passed_proposals": applied.stats.passed_proposals + 1}
            ),
        }

    def _update_dao(self, dao_id: str, build: Callable[[Dao], dict[str, Any]]) -> Dao:
        attempt = 0
        while True:
            attempt += 1
            dao = self._store.get_dao(dao_id)
            try:
                return self._store.update_dao(dao_id, build(dao), expected_version=dao.version)
            except Conflict:
                if attempt >= self._conflict_retries:
                    raise
                logger.info("DAO version conflict; re-reading", extra={"dao_id": dao_id})

    def _notify_members(self, dao: Dao, proposal: Proposal) -> None:
        fan_out(
            self._notifier,
            [m.address for m in dao.members],
            NotificationKind.PROPOSAL_RESOLVED,
            {
                "proposal_id": proposal.id,
                "dao_id": dao.id,
                "title": proposal.title,
                "status": proposal.status,
                "yes": proposal.tally.yes,
                "no": proposal.tally.no,
                "total": proposal.tally.total,
            },
            max_workers=self._fan_out_workers,
        )
