#!/usr/bin/env python3
"""
Calibra — Calibration Manager: Operator CLI

Management script for calibration sessions.  Provides four subcommands:

  list          — List the account's sessions with their counts.
  evidence      — Show the distribution and financial-impact figures.
  close         — Walk the three-phase closing protocol and close a session.
  verify-audit  — Recompute the account's audit hash chain.

``list``, ``evidence`` and ``close`` talk to a running server over HTTP;
``verify-audit`` reads the database directly.

Usage examples
--------------
  # List sessions in progress
  python scripts/calibration_manager.py --account <uuid> --email hr@acme.com list --status IN_PROGRESS

  # Review the evidence for one session
  python scripts/calibration_manager.py --account <uuid> --email hr@acme.com evidence <session-id>

  # Close a session interactively
  python scripts/calibration_manager.py --account <uuid> --email hr@acme.com close <session-id>

  # Verify the audit chain
  python scripts/calibration_manager.py --account <uuid> verify-audit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from typing import Callable

# Ensure the project root is importable
sys.path.insert(0, ".")

from app.clients.calibration_api import (
    ApiError,
    CalibrationApiClient,
    CloseOutcomeUnknownError,
    CloseRejectedError,
)
from app.config import get_settings
from app.services.closing_protocol import ClosingProtocol, ProtocolError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABANDONED = 2
EXIT_UNKNOWN = 3


# ──────────────────────────────────────────────────────────────────────────────
# Rendering helpers
# ──────────────────────────────────────────────────────────────────────────────

def _bar(pct: int, width: int = 40) -> str:
    return "#" * round(width * pct / 100)


def render_evidence(protocol: ClosingProtocol, out: Callable[[str], None] = print) -> None:
    dist = protocol.distribution
    out(f"\n{'=' * 60}")
    out("  Phase 1 — Evidence")
    out(f"{'=' * 60}")
    out(f"  Population: {dist.population}")
    out(f"  {'Bucket':<12} {'Before':>7} {'After':>7}")
    for label, before, after in zip(dist.labels, dist.original, dist.calibrated):
        out(f"  {label:<12} {before:>6}% {after:>6}%  {_bar(after)}")
    out(f"  Deviation correction: {dist.deviation_correction}%")


def render_cost(protocol: ClosingProtocol, out: Callable[[str], None] = print) -> None:
    fin = protocol.financial
    out(f"\n{'=' * 60}")
    out("  Phase 2 — Cost")
    out(f"{'=' * 60}")
    out(f"  Bonus factor before: {fin.original_bonus_factor:.4f}")
    out(f"  Bonus factor after:  {fin.calibrated_bonus_factor:.4f}")
    out(f"  Delta:               {fin.delta:+.4f} ({fin.delta_pct:+.2f}%)")
    if protocol.requires_cfo_warning:
        out(
            f"  WARNING: variance exceeds {fin.threshold_pct}% "
            "and requires CFO approval."
        )


# ──────────────────────────────────────────────────────────────────────────────
# Closing protocol driver
# ──────────────────────────────────────────────────────────────────────────────

async def run_close_protocol(
    client: CalibrationApiClient,
    session_id: uuid.UUID,
    prompt: Callable[[str], str] = input,
    out: Callable[[str], None] = print,
) -> int:
    """Drive evidence → cost → verdict, then send the close once.

    Any answer other than the expected one abandons the protocol without
    contacting the server.  Returns a process exit code.
    """
    try:
        protocol = await client.start_protocol(session_id)
    except ApiError as exc:
        out(f"  Could not load evidence: {exc.reason}")
        return EXIT_FAILED

    render_evidence(protocol, out)
    if prompt("  Continue to the cost review? [y/N] ").strip().lower() != "y":
        protocol = protocol.abandon()
        out("  Abandoned. Nothing was changed.")
        return EXIT_ABANDONED
    protocol = protocol.advance_to_cost()

    render_cost(protocol, out)
    if prompt("  Authorize the budgetary impact? [y/N] ").strip().lower() != "y":
        protocol = protocol.abandon()
        out("  Abandoned. Nothing was changed.")
        return EXIT_ABANDONED
    protocol = protocol.authorize_budget().advance_to_verdict()

    out(f"\n{'=' * 60}")
    out("  Phase 3 — Verdict")
    out(f"{'=' * 60}")
    out("  Closing applies every pending adjustment and cannot be undone.")
    protocol = protocol.type_confirmation(
        prompt(f"  Type {protocol.confirmation_literal} to close: ")
    )
    if not protocol.can_commit:
        protocol = protocol.abandon()
        out("  Confirmation did not match. Abandoned; nothing was changed.")
        return EXIT_ABANDONED

    try:
        protocol, result = await protocol.commit(client.close_session)
    except CloseRejectedError as exc:
        out(f"  Close rejected ({exc.status_code}): {exc.reason}")
        return EXIT_FAILED
    except CloseOutcomeUnknownError as exc:
        out(f"  {exc}")
        return EXIT_UNKNOWN
    except ProtocolError as exc:
        out(f"  {exc}")
        return EXIT_FAILED

    out(
        f"  Session closed ({protocol.phase.value}). "
        f"{result['adjustments_applied']} adjustment(s) applied."
    )
    out("  Review it with: calibration_manager.py list --status CLOSED")
    return EXIT_OK


# ──────────────────────────────────────────────────────────────────────────────
# Subcommands
# ──────────────────────────────────────────────────────────────────────────────

def _client(args: argparse.Namespace) -> CalibrationApiClient:
    settings = get_settings()
    return CalibrationApiClient(
        base_url=args.api_url or settings.API_BASE_URL,
        account_id=args.account,
        user_email=args.email,
        user_role=args.role,
        timeout=settings.API_CLIENT_TIMEOUT_SECONDS,
    )


async def cmd_list(args: argparse.Namespace) -> int:
    async with _client(args) as client:
        try:
            sessions = await client.list_sessions(status=args.status)
        except ApiError as exc:
            print(f"  Error: {exc.reason}")
            return EXIT_FAILED

    if args.json:
        print(json.dumps(sessions, indent=2, default=str))
        return EXIT_OK

    print(f"\n  {'ID':<38} {'Status':<12} {'Adj':>4} {'Emp':>5}  Name")
    for item in sessions:
        s = item["session"]
        print(
            f"  {s['id']:<38} {s['status']:<12} "
            f"{item['adjustments_count']:>4} {item['employee_count']:>5}  {s['name']}"
        )
    print()
    return EXIT_OK


async def cmd_evidence(args: argparse.Namespace) -> int:
    async with _client(args) as client:
        try:
            protocol = await client.start_protocol(args.session_id)
        except ApiError as exc:
            print(f"  Error: {exc.reason}")
            return EXIT_FAILED

    render_evidence(protocol)
    render_cost(protocol)
    print()
    return EXIT_OK


async def cmd_close(args: argparse.Namespace) -> int:
    async with _client(args) as client:
        return await run_close_protocol(client, args.session_id)


async def cmd_verify_audit(args: argparse.Namespace) -> int:
    from app.services.audit_service import AuditService

    report = await AuditService().verify_chain(args.account)
    print(json.dumps(report, indent=2))
    return EXIT_OK if report["chain_intact"] else EXIT_FAILED


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry point
# ──────────────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Calibra Calibration Manager — sessions, closing protocol and audit.",
    )
    parser.add_argument("--account", type=uuid.UUID, required=True, help="Account UUID.")
    parser.add_argument("--email", default="operator@calibra.local", help="Operator email.")
    parser.add_argument("--role", default="HR_ADMIN", help="Operator role (default: HR_ADMIN).")
    parser.add_argument(
        "--api-url",
        type=str,
        default=None,
        help="API root (default: API_BASE_URL setting).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available subcommands",
    )

    # ── list ──────────────────────────────────────────────────────────
    list_parser = subparsers.add_parser("list", help="List calibration sessions.")
    list_parser.add_argument("--status", default=None, help="DRAFT, IN_PROGRESS or CLOSED.")
    list_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Output raw JSON.",
    )

    # ── evidence ──────────────────────────────────────────────────────
    evidence_parser = subparsers.add_parser(
        "evidence",
        help="Show the distribution and financial-impact figures.",
    )
    evidence_parser.add_argument("session_id", type=uuid.UUID)

    # ── close ─────────────────────────────────────────────────────────
    close_parser = subparsers.add_parser(
        "close",
        help="Walk the closing protocol and close a session.",
    )
    close_parser.add_argument("session_id", type=uuid.UUID)

    # ── verify-audit ──────────────────────────────────────────────────
    subparsers.add_parser(
        "verify-audit",
        help="Recompute the account's audit hash chain.",
    )

    args = parser.parse_args()

    commands = {
        "list": cmd_list,
        "evidence": cmd_evidence,
        "close": cmd_close,
        "verify-audit": cmd_verify_audit,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(command(args)))


if __name__ == "__main__":
    main()
