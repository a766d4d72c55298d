"""DAO, member and proposal documents."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from flowfi_automation.engine.errors import AlreadyVoted
from flowfi_automation.engine.models import utc_now


class ProposalType(str, Enum):
    WORKFLOW_TEMPLATE = "workflow_template"
    PARAMETER_CHANGE = "parameter_change"
    FUND_ALLOCATION = "fund_allocation"
    FEATURE_REQUEST = "feature_request"


class ProposalStatus(str, Enum):
    ACTIVE = "active"
    PASSED = "passed"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VoteChoice(str, Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class MemberRole(str, Enum):
    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"


class DaoMember(BaseModel):
    address: str = Field(min_length=1)
    voting_power: float = Field(default=1.0, ge=0)
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime = Field(default_factory=utc_now)
    reputation: int = 0


class DaoSettings(BaseModel):
    voting_period_seconds: float = Field(default=7 * 24 * 3600.0, gt=0)
    quorum: float = Field(default=0.5, ge=0, le=1)
    threshold: float = Field(default=0.5, ge=0, le=1)
    min_voting_power: float = Field(default=1.0, ge=0)
    max_members: int = Field(default=1000, ge=1)


class TreasuryAllocation(BaseModel):
    proposal_id: str
    amount: float = Field(gt=0)
    recipient: str = Field(min_length=1)
    executed: bool = False


class Treasury(BaseModel):
    balance: float = 0.0
    allocations: list[TreasuryAllocation] = Field(default_factory=list)


class DaoStats(BaseModel):
    total_proposals: int = 0
    passed_proposals: int = 0
    total_votes: int = 0


class Dao(BaseModel):
    id: str
    name: str = Field(min_length=1)
    description: str = ""
    members: list[DaoMember] = Field(default_factory=list)
    settings: DaoSettings = Field(default_factory=DaoSettings)
    treasury: Treasury = Field(default_factory=Treasury)
    approved_templates: list[str] = Field(default_factory=list)
    approved_features: list[str] = Field(default_factory=list)
    stats: DaoStats = Field(default_factory=DaoStats)

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def total_voting_power(self) -> float:
        return sum(member.voting_power for member in self.members)

    def member(self, address: str) -> DaoMember | None:
        for member in self.members:
            if member.address == address:
                return member
        return None

    def is_member(self, address: str) -> bool:
        return self.member(address) is not None

    def voting_power_of(self, address: str) -> float:
        member = self.member(address)
        return member.voting_power if member is not None else 0.0


class Vote(BaseModel):
    voter: str
    choice: VoteChoice
    weight: float = Field(ge=0)
    cast_at: datetime = Field(default_factory=utc_now)


class Tally(BaseModel):
    total: float = 0.0
    yes: float = 0.0
    no: float = 0.0
    abstain: float = 0.0

    def add(self, choice: VoteChoice, weight: float) -> Tally:
        return self.model_copy(
            update={
                "total": self.total + weight,
                choice.value: getattr(self, choice.value) + weight,
            }
        )


class Proposal(BaseModel):
    id: str
    dao_id: str
    title: str = Field(min_length=1)
    description: str = ""
    type: ProposalType
    proposer: str
    status: ProposalStatus = ProposalStatus.ACTIVE

    votes: list[Vote] = Field(default_factory=list)
    tally: Tally = Field(default_factory=Tally)

    # Captured from DAO settings at creation; later settings changes don't apply.
    quorum_fraction: float = Field(ge=0, le=1)
    threshold_fraction: float = Field(ge=0, le=1)

    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime
    resolved_at: datetime | None = None
    executed_at: datetime | None = None
    failure_reason: str | None = None

    data: dict[str, Any] = Field(default_factory=dict)

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def has_voted(self, voter: str) -> bool:
        return any(vote.voter == voter for vote in self.votes)

    def with_vote(self, vote: Vote) -> Proposal:
        """Append a vote and fold its weight into the tally."""

        if self.has_voted(vote.voter):
            raise AlreadyVoted(self.id, vote.voter)
        return self.model_copy(
            update={
                "votes": [*self.votes, vote],
                "tally": self.tally.add(vote.choice, vote.weight),
            }
        )
