"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from flowfi_automation.engine.coordinator import ExecutionResult
from flowfi_automation.engine.models import AutomatableEntity
from flowfi_automation.engine.payments import PaymentBatchResult
from flowfi_automation.engine.triggers import TriggerInfo
from flowfi_automation.governance.models import Proposal, VoteChoice


class OwnerRequest(BaseModel):
    owner: str | None = None


class CreateWorkflowRequest(BaseModel):
    owner: str = Field(min_length=1)
    action: str
    trigger: dict[str, Any]
    name: str = ""
    token: str = "FLOW"
    amount: str = "0"
    frequency: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = Field(default=None, ge=0)


class CreateSubscriptionRequest(BaseModel):
    owner: str = Field(min_length=1)
    recipient: str = Field(min_length=1)
    amount_due: float = Field(gt=0)
    token: str = "FLOW"
    interval_seconds: int = Field(default=86400, ge=3600)
    fee: float = Field(default=0.01, ge=0)
    max_payments: int = Field(default=0, ge=0)
    max_retries: int | None = Field(default=None, ge=0)


class VoteRequest(BaseModel):
    voter: str = Field(min_length=1)
    choice: VoteChoice


class ApiAutomation(BaseModel):
    id: str
    kind: str
    owner: str
    status: str
    trigger_kind: str
    next_due_at: datetime | None = None
    execution_count: int
    success_count: int
    failure_count: int
    current_retry: int
    max_retries: int
    last_executed_at: datetime | None = None
    last_error: str | None = None

    @staticmethod
    def from_entity(entity: AutomatableEntity) -> ApiAutomation:
        return ApiAutomation(
            id=entity.id,
            kind=entity.kind,
            owner=entity.owner,
            status=entity.status.value,
            trigger_kind=entity.trigger.kind,
            next_due_at=entity.next_due_at,
            execution_count=entity.counters.execution_count,
            success_count=entity.counters.success_count,
            failure_count=entity.counters.failure_count,
            current_retry=entity.retry.current_retry,
            max_retries=entity.retry.max_retries,
            last_executed_at=entity.last_executed_at,
            last_error=entity.last_error,
        )


class ApiTrigger(BaseModel):
    entity_id: str
    kind: str
    armed_at: datetime
    fires_at: datetime | None = None
    event_type: str | None = None

    @staticmethod
    def from_info(info: TriggerInfo) -> ApiTrigger:
        return ApiTrigger(
            entity_id=info.entity_id,
            kind=info.kind,
            armed_at=info.armed_at,
            fires_at=info.fires_at,
            event_type=info.event_type,
        )


class ApiExecutionResult(BaseModel):
    entity_id: str
    ok: bool
    status: str
    current_retry: int
    next_due_at: datetime | None = None
    reference: str = ""
    resource_used: float = 0.0
    message: str = ""

    @staticmethod
    def from_result(result: ExecutionResult) -> ApiExecutionResult:
        return ApiExecutionResult(
            entity_id=result.entity_id,
            ok=result.ok,
            status=result.status.value,
            current_retry=result.current_retry,
            next_due_at=result.next_due_at,
            reference=result.reference,
            resource_used=result.resource_used,
            message=result.message,
        )


class ApiPaymentBatch(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int
    errors: list[str] = Field(default_factory=list)

    @staticmethod
    def from_batch(batch: PaymentBatchResult) -> ApiPaymentBatch:
        return ApiPaymentBatch(
            processed=batch.processed,
            succeeded=batch.succeeded,
            failed=batch.failed,
            skipped=batch.skipped,
            errors=list(batch.errors),
        )


class EmitResponse(BaseModel):
    event_type: str
    fired: list[str]


class ApiProposal(BaseModel):
    id: str
    dao_id: str
    title: str
    type: str
    proposer: str
    status: str
    yes: float
    no: float
    abstain: float
    total: float
    votes: int
    end_time: datetime
    resolved_at: datetime | None = None
    executed_at: datetime | None = None
    failure_reason: str | None = None

    @staticmethod
    def from_proposal(proposal: Proposal) -> ApiProposal:
        return ApiProposal(
            id=proposal.id,
            dao_id=proposal.dao_id,
            title=proposal.title,
            type=proposal.type.value,
            proposer=proposal.proposer,
            status=proposal.status.value,
            yes=proposal.tally.yes,
            no=proposal.tally.no,
            abstain=proposal.tally.abstain,
            total=proposal.tally.total,
            votes=len(proposal.votes),
            end_time=proposal.end_time,
            resolved_at=proposal.resolved_at,
            executed_at=proposal.executed_at,
            failure_reason=proposal.failure_reason,
        )
