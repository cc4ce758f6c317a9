#!/usr/bin/env python3
"""Seed the global NPT approval workflow plus demo role holders (idempotent).

Creates:
  - "Global NPT Approval Workflow": toolpusher → e_maintenance → ds → ose
  - Role assignments for one rig (default: the demo users below)
  - Optionally a 7-day delegation toolpusher → e_maintenance holder

Usage:
    python scripts/seed_workflow_data.py --rig-id 2
    python scripts/seed_workflow_data.py --rig-id 2 --with-delegation
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, ".")

from app import create_app
from app.services.workflow_admin_service import seed_default_workflow

DEMO_ROLE_HOLDERS = {
    "toolpusher": "john-toolpusher",
    "e_maintenance": "sarah-emaintenance",
    "ds": "haitham-supervisor",
    "ose": "pme-103",
}

DELEGATION_DAYS = 7


def build_demo_delegation(now: datetime | None = None) -> dict:
    """Tool pusher hands over to the E-Maintenance holder for a week."""
    start = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    return {
        "delegator_user_id": DEMO_ROLE_HOLDERS["toolpusher"],
        "delegate_user_id": DEMO_ROLE_HOLDERS["e_maintenance"],
        "starts_at": start,
        "ends_at": start + timedelta(days=DELEGATION_DAYS),
        "role_key": "toolpusher",
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed NPT approval workflow data (idempotent).")
    parser.add_argument("--rig-id", type=int, default=None, help="Rig receiving demo role holders")
    parser.add_argument(
        "--with-delegation", action="store_true",
        help=f"Also create a {DELEGATION_DAYS}-day toolpusher delegation",
    )
    parser.add_argument("--env", default=None, help="Config name (default: APP_ENV or development)")
    args = parser.parse_args()

    if args.with_delegation and args.rig_id is None:
        print("[ERROR] --with-delegation requires --rig-id")
        return 2

    app = create_app(args.env)
    with app.app_context():
        summary = seed_default_workflow(
            rig_id=args.rig_id,
            role_holders=DEMO_ROLE_HOLDERS if args.rig_id is not None else None,
            delegation=build_demo_delegation() if args.with_delegation else None,
        )

    for key, value in summary.items():
        print(f"[SEED] {key}={value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
