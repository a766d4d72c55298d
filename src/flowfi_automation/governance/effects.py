"""Effects applied to a DAO when one of its proposals passes.

Each handler is a pure function ``(dao, proposal) -> dao``: it returns an
updated copy and never writes to the store. The state machine persists the
result. A handler that cannot apply its proposal raises
:class:`ProposalExecutionError` and the proposal ends Failed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import ValidationError

from flowfi_automation.engine.errors import ProposalExecutionError
from flowfi_automation.governance.models import (
    Dao,
    DaoSettings,
    Proposal,
    ProposalType,
    TreasuryAllocation,
)

logger = logging.getLogger(__name__)

EffectHandler = Callable[[Dao, Proposal], Dao]


def change_parameter(dao: Dao, proposal: Proposal) -> Dao:
    parameter = proposal.data.get("parameter")
    if not isinstance(parameter, str) or parameter not in DaoSettings.model_fields:
        raise ProposalExecutionError(f"Unknown DAO setting: {parameter!r}")
    if "value" not in proposal.data:
        raise ProposalExecutionError(f"No value given for DAO setting {parameter!r}")

    try:
        settings = DaoSettings.model_validate(
            {**dao.settings.model_dump(), parameter: proposal.data["value"]}
        )
    except ValidationError as e:
        raise ProposalExecutionError(f"Invalid value for {parameter!r}: {e}") from e

    logger.info(
        "DAO setting changed",
        extra={"dao_id": dao.id, "parameter": parameter, "proposal_id": proposal.id},
    )
    return dao.model_copy(update={"settings": settings})


def allocate_funds(dao: Dao, proposal: Proposal) -> Dao:
    try:
        allocation = TreasuryAllocation(
            proposal_id=proposal.id,
            amount=proposal.data.get("amount"),  # type: ignore[arg-type]
            recipient=proposal.data.get("recipient"),  # type: ignore[arg-type]
        )
    except ValidationError as e:
        raise ProposalExecutionError(f"Invalid fund allocation: {e}") from e

    treasury = dao.treasury.model_copy(
        update={"allocations": [*dao.treasury.allocations, allocation]}
    )
    logger.info(
        "Treasury allocation recorded",
        extra={"dao_id": dao.id, "proposal_id": proposal.id, "amount": allocation.amount},
    )
    return dao.model_copy(update={"treasury": treasury})


def approve_workflow_template(dao: Dao, proposal: Proposal) -> Dao:
    template_id = str(proposal.data.get("template_id") or proposal.id)
    if template_id in dao.approved_templates:
        return dao
    return dao.model_copy(update={"approved_templates": [*dao.approved_templates, template_id]})


def approve_feature_request(dao: Dao, proposal: Proposal) -> Dao:
    feature = str(proposal.data.get("feature") or proposal.title)
    if feature in dao.approved_features:
        return dao
    return dao.model_copy(update={"approved_features": [*dao.approved_features, feature]})


DEFAULT_HANDLERS: dict[ProposalType, EffectHandler] = {
    ProposalType.PARAMETER_CHANGE: change_parameter,
    ProposalType.FUND_ALLOCATION: allocate_funds,
    ProposalType.WORKFLOW_TEMPLATE: approve_workflow_template,
    ProposalType.FEATURE_REQUEST: approve_feature_request,
}


class EffectDispatcher:
    """Route a passed proposal to the handler for its type."""

    def __init__(self, handlers: dict[ProposalType, EffectHandler] | None = None) -> None:
        self._handlers: dict[ProposalType, EffectHandler] = dict(
            DEFAULT_HANDLERS if handlers is None else handlers
        )

    def register(self, proposal_type: ProposalType, handler: EffectHandler) -> None:
        self._handlers[proposal_type] = handler

    def apply(self, dao: Dao, proposal: Proposal) -> Dao:
        handler = self._handlers.get(proposal.type)
        if handler is None:
            raise ProposalExecutionError(f"No effect handler for {proposal.type.value}")
        return handler(dao, proposal)
