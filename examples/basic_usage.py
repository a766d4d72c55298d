#!/usr/bin/env python3
"""Programmatic subscription example.

This demonstrates using the engine components directly:

* load settings from `.env` (ENGINE_LEDGER_URL must point at a ledger relay)
* create a daily subscription
* run one payment batch and print the outcome

State is persisted to `engine_state/entities.json` unless ENGINE_STATE_PATH says otherwise.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from flowfi_automation.engine.config import EngineSettings
from flowfi_automation.engine.errors import ConfigurationError
from flowfi_automation.engine.logging import configure_logging
from flowfi_automation.engine.runtime import build_engine


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a subscription and pay it (example).")
    parser.add_argument("--owner", required=True, help="Payer address")
    parser.add_argument("--recipient", required=True, help="Payee address")
    parser.add_argument("--amount", type=float, required=True, help="Amount per payment")
    parser.add_argument("--token", default="FLOW", help="Token symbol (default: FLOW)")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    engine = build_engine(settings)
    try:
        subscription = engine.create_subscription(
            owner=args.owner,
            recipient=args.recipient,
            amount_due=args.amount,
            token=args.token,
        )
        print(f"Created subscription {subscription.id}")

        try:
            result = engine.trigger_now(subscription.id)
        except ConfigurationError as exc:
            print(str(exc))
            return 2

        outcome = "paid" if result.ok else f"failed ({result.message})"
        print(f"First payment {outcome}; reference={result.reference or '-'}")
        print(f"Next payment due: {result.next_due_at}")
        print(f"Persisted to: {settings.entities_state_file}")
    finally:
        engine.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
