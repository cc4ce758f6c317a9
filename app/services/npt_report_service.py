"""
NPT report intake: draft creation and lookup.

Reports are created in DRAFT and only enter the approval chain through
routing_engine.route_first_approver(). Workflow fields are never accepted
from the caller.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.npt import NPT_TYPES, STATUS_DRAFT, NptReport
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("system", "department", "immediate_cause", "root_cause")


def create_draft_report(data: dict, submitted_by: str) -> dict:
    """Create a DRAFT NPT report.

    Args:
        data: {rig_id, report_date?, hours?, npt_type?, system?, department?,
               immediate_cause?, root_cause?}
        submitted_by: Reporting user id.

    Raises:
        ValidationError: missing rig_id / user, bad date, hours, or npt_type.
    """
    errors = {}
    try:
        rig_id = int(data.get("rig_id"))
    except (TypeError, ValueError):
        rig_id = None
        errors["rig_id"] = "required"
    if not (submitted_by or "").strip():
        errors["submitted_by"] = "required"

    report_date = None
    if data.get("report_date"):
        report_date = parse_date(data["report_date"])
        if report_date is None:
            errors["report_date"] = "invalid"

    hours = None
    if data.get("hours") is not None:
        try:
            hours = Decimal(str(data["hours"]))
        except InvalidOperation:
            errors["hours"] = "invalid"
        else:
            if hours < 0:
                errors["hours"] = "negative"

    npt_type = data.get("npt_type") or None
    if npt_type is not None and npt_type not in NPT_TYPES:
        errors["npt_type"] = "invalid"

    if errors:
        raise ValidationError("Invalid NPT report", details=errors)

    report = NptReport(
        rig_id=rig_id,
        submitted_by=submitted_by.strip(),
        report_date=report_date,
        hours=hours,
        npt_type=npt_type,
        status=STATUS_DRAFT,
        **{f: (data.get(f) or None) for f in _TEXT_FIELDS},
    )
    db.session.add(report)
    db.session.commit()

    logger.info(
        "NPT report %s drafted on rig %s by %s", report.id, rig_id, submitted_by,
        extra={"report_id": report.id, "rig_id": rig_id, "user_id": submitted_by},
    )
    return report.to_dict()


def get_report(report_id: int) -> dict:
    report = db.session.get(NptReport, report_id)
    if not report:
        raise NotFoundError(resource="NptReport", resource_id=report_id)
    return report.to_dict()
