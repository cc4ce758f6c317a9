"""
Approval state machine: records decisions against NPT reports.

Business rules enforced here (never in blueprints):
    - Only the report's currently routed approver may act (403 otherwise).
      No NptApproval row is written for a refused decision.
    - APPROVED and REJECTED are terminal; decisions against them are refused.
    - APPROVE advances the report (routing_engine), REJECT terminates it,
      REQUEST_CHANGES is recorded without touching the routing pointers.
    - NptApproval rows are APPEND-ONLY. delegated_from_user_id is the
      nominal approver whenever the acting user is a delegate.

Concurrency:
    The report row is read FOR UPDATE and carries an optimistic version.
    Of two racing decisions for the same step exactly one commits; the other
    fails authorization (the step moved on) or gets a ConflictError. The
    read, the audit row and the pointer move share one report_transaction,
    so a conflict rolls back the audit row too.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.core.exceptions import ConflictError, ForbiddenError, ValidationError
from app.models.npt import (
    ACTION_APPROVE,
    ACTION_REJECT,
    DECISION_ACTIONS,
    STATUS_REJECTED,
)
from app.services.routing_engine import (
    RoutingResult,
    advance_report,
    load_report,
    report_transaction,
)
from app.services.workflow_repository import WorkflowRepository, default_repository
from app.utils.helpers import to_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DecisionOutcome:
    report_id: int
    action: str
    status: str
    record: dict = field(default_factory=dict)
    routing: RoutingResult | None = None

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "action": self.action,
            "status": self.status,
            "record": self.record,
            "routing": self.routing.to_dict() if self.routing else None,
        }


def normalize_action(action: str | None) -> str:
    """Accept 'approve', 'APPROVE', 'request-changes', ... and return the canonical code."""
    code = (action or "").strip().upper().replace("-", "_")
    if code not in DECISION_ACTIONS:
        raise ValidationError(
            f"Invalid action {action!r}. Must be one of: {', '.join(sorted(DECISION_ACTIONS))}",
            details={"action": "invalid"},
        )
    return code


def record_decision(
    report_id: int,
    acting_user_id: str,
    action: str,
    comment: str | None = None,
    expected_step_order: int | None = None,
    at: datetime | None = None,
    repo: WorkflowRepository | None = None,
) -> DecisionOutcome:
    """Record an APPROVE / REJECT / REQUEST_CHANGES decision and apply its effect.

    Args:
        report_id:           Report being decided.
        acting_user_id:      Authenticated user taking the decision.
        action:              Decision code (case-insensitive).
        comment:             Optional note; becomes rejection_reason on REJECT.
        expected_step_order: Step the caller saw when deciding. A mismatch
                             means the report moved on and raises ConflictError.
        at:                  Evaluation instant for delegation checks and the
                             record timestamp. Defaults to now (UTC).

    Raises:
        ValidationError: unknown action, missing user, or terminal report.
        NotFoundError:   report does not exist.
        ForbiddenError:  acting user is not the current approver.
        ConflictError:   stale expected_step_order or concurrent update.
    """
    repo = repo or default_repository
    at = to_utc(at) if at else _utcnow()
    code = normalize_action(action)
    if not (acting_user_id or "").strip():
        raise ValidationError("acting_user_id is required", details={"acting_user_id": "required"})

    with report_transaction(repo, report_id):
        report = load_report(repo, report_id)

        if report.is_terminal:
            raise ValidationError(
                f"Report {report_id} is already {report.status}; no further decisions are accepted",
                details={"status": report.status},
            )

        if report.current_approver_user_id is None or report.current_approver_user_id != acting_user_id:
            logger.warning(
                "User %s attempted %s on report %s routed to %s",
                acting_user_id, code, report_id, report.current_approver_user_id,
                extra={"report_id": report_id, "user_id": acting_user_id, "action": code},
            )
            raise ForbiddenError(
                "You are not authorized to act on this report at its current step",
                user_id=acting_user_id,
            )

        if expected_step_order is not None and expected_step_order != report.current_step_order:
            raise ConflictError("NptReport", "current_step_order", expected_step_order)

        step_order = report.current_step_order
        nominal = report.current_nominal_user_id
        delegated_from = nominal if nominal and nominal != acting_user_id else None
        note = (comment or "").strip() or None

        record = repo.add_approval(
            report_id=report.id,
            step_order=step_order,
            approver_user_id=acting_user_id,
            action=code,
            comment=note,
            delegated_from_user_id=delegated_from,
            created_at=at,
        )

        routing = None
        if code == ACTION_REJECT:
            report.status = STATUS_REJECTED
            report.rejection_reason = note
            report.clear_routing()
        elif code == ACTION_APPROVE:
            routing = advance_report(report, at, repo)
        # REQUEST_CHANGES: recorded only; the same approver stays current.

        repo.flush()
        record_dict = record.to_dict()
        status = report.status

    logger.info(
        "Decision %s on report %s step %s by %s%s",
        code, report_id, step_order, acting_user_id,
        f" (on behalf of {delegated_from})" if delegated_from else "",
        extra={
            "report_id": report_id,
            "step_order": step_order,
            "user_id": acting_user_id,
            "action": code,
        },
    )
    return DecisionOutcome(
        report_id=report_id,
        action=code,
        status=status,
        record=record_dict,
        routing=routing,
    )


def get_approval_history(report_id: int, repo: WorkflowRepository | None = None) -> list[dict]:
    """Full immutable decision log for a report, oldest first.

    Raises:
        NotFoundError: report does not exist.
    """
    repo = repo or default_repository
    load_report(repo, report_id, for_update=False)
    return [r.to_dict() for r in repo.list_approvals(report_id)]


def get_pending_approvals(user_id: str, repo: WorkflowRepository | None = None) -> list[dict]:
    """Reports currently routed to ``user_id``, flagged when held on someone's behalf."""
    repo = repo or default_repository
    items = []
    for report in repo.list_reports_pending_for(user_id):
        d = report.to_dict()
        is_delegated = bool(
            report.current_nominal_user_id and report.current_nominal_user_id != user_id
        )
        d["is_delegated"] = is_delegated
        d["delegated_from"] = report.current_nominal_user_id if is_delegated else None
        items.append(d)
    return items


def get_user_decision_history(user_id: str, repo: WorkflowRepository | None = None) -> list[dict]:
    """Decisions taken by ``user_id``, newest first, with a report summary."""
    repo = repo or default_repository
    actions = []
    for record in repo.list_approvals_by_user(user_id):
        d = record.to_dict()
        report = record.report
        d["report"] = {
            "id": report.id,
            "rig_id": report.rig_id,
            "report_date": report.report_date.isoformat() if report.report_date else None,
            "npt_type": report.npt_type,
            "status": report.status,
        }
        actions.append(d)
    return actions
