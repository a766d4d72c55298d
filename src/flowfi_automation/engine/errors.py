"""Error taxonomy shared by the engine and governance packages.

Only :class:`LedgerError` is retryable. Everything else is surfaced to the
caller (or the owner, via notification) and never retried automatically.
"""

from __future__ import annotations

from typing import ClassVar


class EngineError(Exception):
    retryable: ClassVar[bool] = False


class NotFound(EngineError):
    """Raised when an entity, DAO or proposal does not exist."""

    def __init__(self, entity_id: str, *, what: str = "Entity") -> None:
        super().__init__(f"{what} not found: {entity_id}")
        self.entity_id = entity_id


class NotActive(EngineError):
    """Raised when an entity is asked to execute while not Active."""

    def __init__(self, entity_id: str, status: str) -> None:
        super().__init__(f"Entity {entity_id} is not active (status={status})")
        self.entity_id = entity_id
        self.status = status


class AlreadyRunning(EngineError):
    """Raised when another execution of the same entity holds its lock."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Execution already in progress for {entity_id}")
        self.entity_id = entity_id


class VotingClosed(EngineError):
    def __init__(self, proposal_id: str, reason: str) -> None:
        super().__init__(f"Voting is closed for proposal {proposal_id}: {reason}")
        self.proposal_id = proposal_id
        self.reason = reason


class AlreadyVoted(EngineError):
    def __init__(self, proposal_id: str, voter: str) -> None:
        super().__init__(f"{voter} has already voted on proposal {proposal_id}")
        self.proposal_id = proposal_id
        self.voter = voter


class NotAMember(EngineError):
    def __init__(self, dao_id: str, address: str, reason: str = "not a member") -> None:
        super().__init__(f"{address} cannot act on DAO {dao_id}: {reason}")
        self.dao_id = dao_id
        self.address = address
        self.reason = reason


class LedgerError(EngineError):
    """A ledger submission failed before a terminal status was observed."""

    retryable = True

    def __init__(self, message: str, *, reference: str = "") -> None:
        super().__init__(message)
        self.reference = reference


class Conflict(EngineError):
    """Optimistic update lost a race; re-read and retry."""

    def __init__(self, entity_id: str, *, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Version conflict on {entity_id}: expected {expected_version}, found {actual_version}"
        )
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class IllegalTransitionError(EngineError, ValueError):
    pass


class ProposalExecutionError(EngineError):
    """Raised by effect handlers when a passed proposal cannot be applied."""


class MembershipRejected(EngineError):
    """Raised when a DAO membership change is refused (duplicate member, capacity)."""

    def __init__(self, dao_id: str, address: str, reason: str) -> None:
        super().__init__(f"Membership change for {address} in DAO {dao_id} refused: {reason}")
        self.dao_id = dao_id
        self.address = address
        self.reason = reason


class ConfigurationError(EngineError):
    """Raised when an operation needs configuration that is missing."""
