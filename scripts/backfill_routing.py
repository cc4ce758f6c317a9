#!/usr/bin/env python3
"""Re-route PENDING_REVIEW reports that have no resolvable approver (idempotent).

Run after role assignments or workflows are fixed so that stalled reports
reach a real approver. Reports keep their current step; earlier approvals
remain valid.

Usage:
    python scripts/backfill_routing.py              # dry-run
    python scripts/backfill_routing.py --apply
"""

import argparse
import sys

sys.path.insert(0, ".")

from app import create_app
from app.services.routing_engine import reroute_stalled_reports


def backfill_routing(*, apply: bool = False, at=None) -> dict:
    """Run the stalled-report sweep and print one line per report."""
    summary = reroute_stalled_reports(at=at, apply=apply)

    print(f"[INFO] mode={summary['mode']} stalled_reports={summary['processed']}")
    tags = {"routed": "ROUTE" if apply else "PLAN", "still_stalled": "STALLED", "finalized": "FINAL"}
    for item in summary["items"]:
        line = f"[{tags[item['outcome']]}] report_id={item['report_id']}"
        if item.get("step_order") is not None:
            line += f" step={item['step_order']} approver={item.get('approver_user_id') or '-'}"
        print(line)
    for err in summary["error_details"]:
        print(f"[ERROR] report_id={err['report_id']} error={err['error']}")

    print(
        "[SUMMARY] "
        f"mode={summary['mode']} "
        f"processed={summary['processed']} "
        f"routed={summary['routed']} "
        f"still_stalled={summary['still_stalled']} "
        f"finalized={summary['finalized']} "
        f"errors={summary['errors']}"
    )
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Re-route stalled PENDING_REVIEW NPT reports (idempotent)."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only; do not write data")
    mode.add_argument("--apply", action="store_true", help="Persist routing changes")
    parser.add_argument("--env", default=None, help="Config name (default: APP_ENV or development)")
    args = parser.parse_args()

    apply = bool(args.apply)
    if not args.dry_run and not args.apply:
        print("[INFO] No mode specified; defaulting to --dry-run")

    app = create_app(args.env)
    with app.app_context():
        result = backfill_routing(apply=apply)

    if apply and result["errors"] > 0:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
