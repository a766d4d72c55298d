"""CLI entrypoint for the automation engine.

Exit codes:
    0  success
    1  unexpected error
    2  configuration error (check your .env)
    3  precondition failed (unknown id, wrong status, not a member, invalid input)
    4  contention (execution already running, version conflict)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from typing import Any

from pydantic import ValidationError

from flowfi_automation import __version__
from flowfi_automation.engine.config import EngineSettings
from flowfi_automation.engine.errors import (
    AlreadyRunning,
    ConfigurationError,
    Conflict,
    EngineError,
)
from flowfi_automation.engine.logging import configure_logging
from flowfi_automation.engine.runtime import AutomationEngine, build_engine

logger = logging.getLogger(__name__)


def _json_object(value: str | None, *, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} must be a JSON object: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"{name} must be a JSON object")
    return parsed


def _add_owner(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--owner", default=None, help="Only act if the automation belongs to this address"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowfi-engine",
        description="FlowFi automation trigger and execution engine",
    )
    parser.add_argument("--version", action="version", version=f"flowfi-automation {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Arm all active triggers and run until interrupted")
    run.add_argument(
        "--no-sweep",
        action="store_true",
        help="Do not run the periodic payment batch and proposal sweep",
    )

    trigger_now = subparsers.add_parser("trigger-now", help="Execute one automation immediately")
    trigger_now.add_argument("entity_id")
    _add_owner(trigger_now)

    subparsers.add_parser("process-payments", help="Process every subscription payment now due")

    create_workflow = subparsers.add_parser("create-workflow", help="Create a workflow")
    create_workflow.add_argument("--owner", required=True)
    create_workflow.add_argument(
        "--action",
        required=True,
        help="stake | swap | send | mint_nft | dao_vote | subscription",
    )
    create_workflow.add_argument(
        "--trigger",
        required=True,
        help='Trigger spec as JSON, e.g. \'{"kind": "scheduled", "frequency": "daily"}\'',
    )
    create_workflow.add_argument("--name", default="")
    create_workflow.add_argument("--token", default="FLOW")
    create_workflow.add_argument("--amount", default="0")
    create_workflow.add_argument(
        "--frequency",
        default=None,
        help="once | daily | weekly | monthly | custom (default: the schedule's)",
    )
    create_workflow.add_argument("--params", default=None, help="Extra action params as JSON")
    create_workflow.add_argument("--max-retries", type=int, default=None)

    create_subscription = subparsers.add_parser(
        "create-subscription", help="Create a recurring payment"
    )
    create_subscription.add_argument("--owner", required=True, help="Payer address")
    create_subscription.add_argument("--recipient", required=True)
    create_subscription.add_argument("--amount", type=float, required=True)
    create_subscription.add_argument("--token", default="FLOW")
    create_subscription.add_argument("--interval-seconds", type=int, default=86400)
    create_subscription.add_argument("--fee", type=float, default=0.01)
    create_subscription.add_argument(
        "--max-payments", type=int, default=0, help="Stop after this many payments (0 = never)"
    )
    create_subscription.add_argument("--max-retries", type=int, default=None)

    for name, help_text in (
        ("pause", "Pause an active automation"),
        ("resume", "Resume a paused automation"),
        ("cancel", "Cancel an automation"),
        ("reactivate", "Return a failed automation to active"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("entity_id")
        _add_owner(sub)

    create_dao = subparsers.add_parser("create-dao", help="Create a DAO")
    create_dao.add_argument("--name", required=True)
    create_dao.add_argument("--creator", required=True)
    create_dao.add_argument("--description", default="")
    create_dao.add_argument("--settings", default=None, help="DAO settings overrides as JSON")

    join_dao = subparsers.add_parser("join-dao", help="Join a DAO")
    join_dao.add_argument("dao_id")
    join_dao.add_argument("--address", required=True)

    create_proposal = subparsers.add_parser("create-proposal", help="Open a proposal for voting")
    create_proposal.add_argument("dao_id")
    create_proposal.add_argument("--proposer", required=True)
    create_proposal.add_argument("--title", required=True)
    create_proposal.add_argument(
        "--type",
        required=True,
        dest="proposal_type",
        help="workflow_template | parameter_change | fund_allocation | feature_request",
    )
    create_proposal.add_argument("--description", default="")
    create_proposal.add_argument("--data", default=None, help="Proposal data as JSON")

    vote = subparsers.add_parser("vote", help="Cast a vote on a proposal")
    vote.add_argument("proposal_id")
    vote.add_argument("--voter", required=True)
    vote.add_argument("--choice", required=True, choices=["yes", "no", "abstain"])

    resolve = subparsers.add_parser("resolve", help="Resolve a proposal if it can be resolved")
    resolve.add_argument("proposal_id")

    subparsers.add_parser("sweep-proposals", help="Resolve every proposal whose voting ended")
    subparsers.add_parser("stats", help="Show automation counts and armed triggers")

    return parser


def _run_forever(engine: AutomationEngine, *, sweep: bool) -> int:
    armed = engine.start(sweep=sweep)
    print(f"Engine running with {armed} armed trigger(s). Press Ctrl+C to stop.")
    idle = threading.Event()
    try:
        while not idle.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    return 0


def _dispatch(args: argparse.Namespace, engine: AutomationEngine) -> int:
    if args.command == "run":
        return _run_forever(engine, sweep=not args.no_sweep)

    if args.command == "trigger-now":
        result = engine.trigger_now(args.entity_id, owner=args.owner)
        outcome = "succeeded" if result.ok else f"failed: {result.message}"
        print(f"{result.entity_id} {outcome} (status={result.status.value})")
        return 0

    if args.command == "process-payments":
        batch = engine.process_due_payments()
        print(
            f"Processed {batch.processed}: {batch.succeeded} succeeded, "
            f"{batch.failed} failed, {batch.skipped} skipped"
        )
        for line in batch.errors:
            print(f"  {line}", file=sys.stderr)
        return 0

    if args.command == "create-workflow":
        workflow = engine.create_workflow(
            owner=args.owner,
            action=args.action,
            trigger=_json_object(args.trigger, name="--trigger"),
            name=args.name,
            token=args.token,
            amount=args.amount,
            frequency=args.frequency,
            params=_json_object(args.params, name="--params"),
            max_retries=args.max_retries,
        )
        print(f"Created workflow {workflow.id} (next due {workflow.next_due_at})")
        return 0

    if args.command == "create-subscription":
        subscription = engine.create_subscription(
            owner=args.owner,
            recipient=args.recipient,
            amount_due=args.amount,
            token=args.token,
            interval_seconds=args.interval_seconds,
            fee=args.fee,
            max_payments=args.max_payments,
            max_retries=args.max_retries,
        )
        print(f"Created subscription {subscription.id} (next due {subscription.next_due_at})")
        return 0

    if args.command in ("pause", "resume", "cancel", "reactivate"):
        entity = getattr(engine, args.command)(args.entity_id, owner=args.owner)
        print(f"{entity.id} is now {entity.status.value}")
        return 0

    if args.command == "create-dao":
        dao = engine.daos.create_dao(
            name=args.name,
            creator=args.creator,
            description=args.description,
            settings=_json_object(args.settings, name="--settings"),
        )
        print(f"Created DAO {dao.id}")
        return 0

    if args.command == "join-dao":
        dao = engine.daos.join_dao(args.dao_id, args.address)
        print(f"{args.address} joined {dao.id} ({len(dao.members)} members)")
        return 0

    if args.command == "create-proposal":
        proposal = engine.proposals.create_proposal(
            args.dao_id,
            proposer=args.proposer,
            title=args.title,
            type=args.proposal_type,
            description=args.description,
            data=_json_object(args.data, name="--data"),
        )
        print(f"Created proposal {proposal.id} (voting ends {proposal.end_time.isoformat()})")
        return 0

    if args.command == "vote":
        proposal = engine.proposals.cast_vote(args.proposal_id, args.voter, args.choice)
        print(f"Vote recorded; proposal {proposal.id} is {proposal.status.value}")
        return 0

    if args.command == "resolve":
        proposal = engine.proposals.resolve(args.proposal_id)
        print(f"Proposal {proposal.id} is {proposal.status.value}")
        return 0

    if args.command == "sweep-proposals":
        resolved = engine.proposals.sweep_expired()
        print(f"Resolved {len(resolved)} expired proposal(s)")
        for proposal in resolved:
            print(f"  {proposal.id}: {proposal.status.value}")
        return 0

    if args.command == "stats":
        print(json.dumps(engine.stats(), indent=2, sort_keys=True))
        return 0

    logger.error("Unknown command", extra={"command": args.command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    engine = build_engine(settings)
    try:
        return _dispatch(args, engine)

    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    except (AlreadyRunning, Conflict) as e:
        logger.warning(str(e))
        print(str(e), file=sys.stderr)
        return 4

    except (EngineError, ValueError) as e:
        logger.warning(str(e), extra={"error_type": type(e).__name__})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
