"""Condition evaluation for condition-based triggers.

The registry calls an evaluator on every poll. Evaluators are pure with
respect to engine state: they may read side data through injected oracles but
never touch the store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from flowfi_automation.engine.models import Automatable, Condition

logger = logging.getLogger(__name__)

BalanceOracle = Callable[[str, str], float]
"""(owner, token) -> balance"""

PriceOracle = Callable[[str], float]
"""token -> price"""


class ConditionEvaluator(Protocol):
    def __call__(self, condition: Condition, entity: Automatable, now: datetime) -> bool: ...


def _compare(value: float, condition: Condition) -> bool:
    if condition.operator == "above":
        return value > condition.threshold
    return value < condition.threshold


def in_time_window(condition: Condition, now: datetime) -> bool:
    if condition.start_time is None or condition.end_time is None:
        return False
    return condition.start_time <= now <= condition.end_time


@dataclass(frozen=True, slots=True)
class OracleConditionEvaluator:
    """Evaluate balance, price and time-window conditions.

    A condition whose oracle is not configured evaluates to False.
    """

    balance_of: BalanceOracle | None = None
    price_of: PriceOracle | None = None

    def __call__(self, condition: Condition, entity: Automatable, now: datetime) -> bool:
        if condition.type == "time_window":
            return in_time_window(condition, now)

        if condition.type == "balance_threshold":
            if self.balance_of is None:
                logger.debug("No balance oracle configured", extra={"entity_id": entity.id})
                return False
            return _compare(self.balance_of(entity.owner, condition.token), condition)

        if self.price_of is None:
            logger.debug("No price oracle configured", extra={"entity_id": entity.id})
            return False
        return _compare(self.price_of(condition.token), condition)
