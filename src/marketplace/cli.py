"""Marketplace CLI — operator commands for the marketplace core.

Usage:
    python -m marketplace.cli quote --amount 180
    python -m marketplace.cli verify-audit-log --path data/audit.jsonl
    python -m marketplace.cli audit-report --start 2026-01-01 --end 2026-01-31
    python -m marketplace.cli check-invariants

MARKETPLACE_CONFIG_DIR and MARKETPLACE_DATA_DIR (environment or a .env
file in the working directory) override the default config/ and data/
directories.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, time, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

import structlog
from dotenv import load_dotenv

from marketplace.audit.recorder import summarise
from marketplace.compensation.commission import compute_commission
from marketplace.defaults import new_id
from marketplace.logging import setup_logging
from marketplace.models.audit import Category
from marketplace.persistence.audit_log import AuditLog, read_jsonl, verify_events
from marketplace.policy.invariants import check_params
from marketplace.policy.resolver import PolicyResolver, load_json

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _config_dir(args: argparse.Namespace) -> Path:
    if args.config is not None:
        return args.config
    return Path(os.getenv("MARKETPLACE_CONFIG_DIR", DEFAULT_CONFIG))


def _audit_path(args: argparse.Namespace) -> Path:
    if args.path is not None:
        return args.path
    return Path(os.getenv("MARKETPLACE_DATA_DIR", DEFAULT_DATA)) / "audit.jsonl"


def _parse_date(value: str, end_of_day: bool = False) -> datetime:
    parsed = datetime.fromisoformat(value)
    if len(value) == 10 and end_of_day:
        parsed = datetime.combine(parsed.date(), time.max)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cmd_quote(args: argparse.Namespace) -> int:
    """Print the commission breakdown for an amount."""
    resolver = PolicyResolver.from_config_dir(_config_dir(args))
    try:
        breakdown = compute_commission(Decimal(args.amount), resolver.commission_rate())
    except (InvalidOperation, ValueError) as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1
    print(json.dumps({
        "amount": str(breakdown.amount),
        "rate": str(breakdown.rate),
        "commission": str(breakdown.commission),
        "payout": str(breakdown.payout),
    }, indent=2))
    return 0


def cmd_verify_audit_log(args: argparse.Namespace) -> int:
    """Recompute every hash and chain link of a JSONL audit file."""
    path = _audit_path(args)
    if not path.exists():
        print(f"Failed: audit log not found: {path}", file=sys.stderr)
        return 1
    events = read_jsonl(path)
    errors = verify_events(events)
    if errors:
        print("Audit log verification failed:")
        for err in errors:
            print(f"- {err}")
        return 1
    print(f"Audit log intact: {len(events)} events.")
    return 0


def cmd_audit_report(args: argparse.Namespace) -> int:
    """Summarise an audit file over a date range. Read-only."""
    path = _audit_path(args)
    if not path.exists():
        print(f"Failed: audit log not found: {path}", file=sys.stderr)
        return 1
    try:
        audit_log = AuditLog(storage_path=path)
    except ValueError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1
    start = _parse_date(args.start)
    end = _parse_date(args.end, end_of_day=True)
    if end < start:
        print("Failed: --end precedes --start", file=sys.stderr)
        return 1
    categories = [Category(c) for c in args.category] if args.category else None
    events = audit_log.query(categories=categories, since=start, until=end)
    report = summarise(events, start, end, new_id("report"), datetime.now(timezone.utc))
    logger.info("audit_report_generated", path=str(path), total_events=report.total_events)
    print(json.dumps({
        "report_id": report.report_id,
        "period": report.period,
        "total_events": report.total_events,
        "events_by_category": report.events_by_category,
        "events_by_severity": report.events_by_severity,
        "top_actors": report.top_actors,
        "security_events": report.security_events,
        "trends": report.trends,
        "recommendations": report.recommendations,
    }, indent=2, default=str))
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run marketplace invariant checks against the config."""
    path = _config_dir(args) / "marketplace_params.json"
    errors = check_params(load_json(path))
    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1
    print("Invariant check passed.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketplace",
        description="Escrowed specialist marketplace — operator CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config directory (default: $MARKETPLACE_CONFIG_DIR or config/)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")
    sub = parser.add_subparsers(dest="command")

    # quote
    p_quote = sub.add_parser("quote", help="Show commission and payout for an amount")
    p_quote.add_argument("--amount", required=True, help="Contract amount (Decimal)")

    # verify-audit-log
    p_verify = sub.add_parser("verify-audit-log", help="Verify the audit hash chain")
    p_verify.add_argument("--path", type=Path, default=None, help="Audit JSONL file")

    # audit-report
    p_report = sub.add_parser("audit-report", help="Summarise audit activity for a period")
    p_report.add_argument("--path", type=Path, default=None, help="Audit JSONL file")
    p_report.add_argument("--start", required=True, help="Start date (ISO 8601)")
    p_report.add_argument("--end", required=True, help="End date (ISO 8601, inclusive)")
    p_report.add_argument(
        "--category", action="append",
        choices=[c.value for c in Category],
        help="Restrict to a category (repeatable)",
    )

    # check-invariants
    sub.add_parser("check-invariants", help="Run marketplace invariant checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, json_output=args.json_logs)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "quote": cmd_quote,
        "verify-audit-log": cmd_verify_audit_log,
        "audit-report": cmd_audit_report,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
