"""Unit tests for proposal effect handlers."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from flowfi_automation.engine.errors import ProposalExecutionError
from flowfi_automation.governance.effects import (
    EffectDispatcher,
    allocate_funds,
    approve_feature_request,
    approve_workflow_template,
    change_parameter,
)
from flowfi_automation.governance.models import Dao, Proposal, ProposalType


def _proposal(type_: str, data: dict[str, Any] | None = None, title: str = "Proposal") -> Proposal:
    return Proposal(
        id="prop_1",
        dao_id="dao_1",
        title=title,
        type=type_,
        proposer="alice",
        quorum_fraction=0.5,
        threshold_fraction=0.5,
        end_time=datetime(2025, 1, 13, tzinfo=UTC),
        data=data or {},
    )


def test_change_parameter_updates_settings_without_mutating_input() -> None:
    dao = Dao(id="dao_1", name="Test")
    proposal = _proposal("parameter_change", {"parameter": "quorum", "value": 0.3})

    updated = change_parameter(dao, proposal)

    assert updated.settings.quorum == 0.3
    assert dao.settings.quorum == 0.5


@pytest.mark.parametrize(
    "data",
    [
        {"parameter": "not_a_setting", "value": 1},
        {"parameter": "quorum"},
        {"parameter": "quorum", "value": 2.0},
    ],
)
def test_change_parameter_rejects_bad_input(data: dict[str, Any]) -> None:
    with pytest.raises(ProposalExecutionError):
        change_parameter(Dao(id="dao_1", name="Test"), _proposal("parameter_change", data))


def test_allocate_funds_records_an_allocation() -> None:
    dao = Dao(id="dao_1", name="Test")

    updated = allocate_funds(
        dao, _proposal("fund_allocation", {"amount": 500.0, "recipient": "0xgrantee"})
    )

    assert len(updated.treasury.allocations) == 1
    allocation = updated.treasury.allocations[0]
    assert (allocation.proposal_id, allocation.amount, allocation.recipient) == (
        "prop_1",
        500.0,
        "0xgrantee",
    )
    assert allocation.executed is False


def test_allocate_funds_requires_amount_and_recipient() -> None:
    with pytest.raises(ProposalExecutionError):
        allocate_funds(Dao(id="dao_1", name="Test"), _proposal("fund_allocation", {"amount": -1}))


def test_approvals_are_idempotent() -> None:
    dao = Dao(id="dao_1", name="Test")

    template = _proposal("workflow_template", {"template_id": "tpl-stake"})
    once = approve_workflow_template(dao, template)
    twice = approve_workflow_template(once, template)
    assert twice.approved_templates == ["tpl-stake"]

    feature = _proposal("feature_request", title="Dark mode")
    assert approve_feature_request(dao, feature).approved_features == ["Dark mode"]


def test_dispatcher_routes_by_type_and_rejects_unknown() -> None:
    dao = Dao(id="dao_1", name="Test")
    calls: list[str] = []

    def record(d: Dao, p: Proposal) -> Dao:
        calls.append(p.id)
        return d

    dispatcher = EffectDispatcher(handlers={ProposalType.FEATURE_REQUEST: record})
    dispatcher.apply(dao, _proposal("feature_request"))
    assert calls == ["prop_1"]

    with pytest.raises(ProposalExecutionError, match="No effect handler"):
        dispatcher.apply(dao, _proposal("fund_allocation"))

    dispatcher.register(ProposalType.FUND_ALLOCATION, record)
    dispatcher.apply(dao, _proposal("fund_allocation"))
    assert calls == ["prop_1", "prop_1"]
