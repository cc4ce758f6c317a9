"""
NPT Approval Blueprint.

Routes:
  POST   /npt-reports                              – create a DRAFT report
  GET    /npt-reports/<rid>                        – report with routing state
  POST   /npt-reports/<rid>/submit                 – route to the first approver
  GET    /npt-reports/<rid>/approval-history       – immutable decision log
  POST   /approvals/<rid>/approve                  – approve current step
  POST   /approvals/<rid>/reject                   – reject (terminal)
  POST   /approvals/<rid>/request-changes          – record a change request
  POST   /approvals/<rid>/decide                   – { action, comment?, step_order? }
  GET    /my-approvals/pending                     – reports routed to me
  GET    /my-approvals/history                     – decisions I have taken

The acting user comes from the X-User header; authentication happens
upstream. Service layer owns all business rules and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from app.models import db
from app.models.npt import ACTION_APPROVE, ACTION_REJECT, ACTION_REQUEST_CHANGES
from app.services import approval_service, npt_report_service
from app.services.routing_engine import route_first_approver
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1")


# ── helpers ──────────────────────────────────────────────────────────────

def _current_user():
    """Acting user id forwarded by the authenticating proxy, or None."""
    return (
        request.headers.get("X-User", "").strip()
        or request.headers.get("X-Forwarded-User", "").strip()
        or None
    )


def _require_user():
    user_id = _current_user()
    if not user_id:
        return None, api_error(E.VALIDATION_REQUIRED, "X-User header is required", status=401)
    return user_id, None


def _optional_int(value, field):
    if value is None or value == "":
        return None, None
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")


# ── error handlers ───────────────────────────────────────────────────────

@approval_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@approval_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@approval_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@approval_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details={"field": error.field})


@approval_bp.errorhandler(WorkflowStateError)
def _handle_workflow_state(error: WorkflowStateError):
    logger.error("Workflow precondition violated on %s: %s", request.path, error)
    return api_error(E.WORKFLOW_STATE, str(error))


@approval_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error on %s", request.path)
    return api_error(E.DATABASE, "Database error")


# ═════════════════════════════════════════════════════════════════════════════
# REPORTS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/npt-reports", methods=["POST"])
def create_report():
    """Create a DRAFT NPT report.

    Body: { rig_id, report_date?, hours?, npt_type?, system?, department?,
            immediate_cause?, root_cause? }
    """
    user_id, err = _require_user()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return jsonify(npt_report_service.create_draft_report(data, submitted_by=user_id)), 201


@approval_bp.route("/npt-reports/<int:rid>", methods=["GET"])
def get_report(rid):
    return jsonify(npt_report_service.get_report(rid))


@approval_bp.route("/npt-reports/<int:rid>/submit", methods=["POST"])
def submit_report(rid):
    """Route a DRAFT report to the approver of its first required step.

    Only the report's author may submit it. The response carries the routing
    outcome; ``stalled: true`` means no approver could be resolved and the
    report is parked for re-routing.
    """
    user_id, err = _require_user()
    if err:
        return err
    result = route_first_approver(rid, submitted_by=user_id)
    return jsonify(result.to_dict())


@approval_bp.route("/npt-reports/<int:rid>/approval-history", methods=["GET"])
def approval_history(rid):
    return jsonify({"report_id": rid, "items": approval_service.get_approval_history(rid)})


# ═════════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════════

def _decide(rid, action):
    user_id, err = _require_user()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    step_order, err = _optional_int(data.get("step_order"), "step_order")
    if err:
        return err

    outcome = approval_service.record_decision(
        rid,
        acting_user_id=user_id,
        action=action or data.get("action"),
        comment=data.get("comment"),
        expected_step_order=step_order,
    )
    return jsonify(outcome.to_dict())


@approval_bp.route("/approvals/<int:rid>/approve", methods=["POST"])
def approve(rid):
    return _decide(rid, ACTION_APPROVE)


@approval_bp.route("/approvals/<int:rid>/reject", methods=["POST"])
def reject(rid):
    return _decide(rid, ACTION_REJECT)


@approval_bp.route("/approvals/<int:rid>/request-changes", methods=["POST"])
def request_changes(rid):
    return _decide(rid, ACTION_REQUEST_CHANGES)


@approval_bp.route("/approvals/<int:rid>/decide", methods=["POST"])
def decide(rid):
    """Record a decision given in the body.

    Body: { action: "approve"|"reject"|"request_changes", comment?, step_order? }
    """
    return _decide(rid, None)


# ═════════════════════════════════════════════════════════════════════════════
# MY APPROVALS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/my-approvals/pending", methods=["GET"])
def my_pending():
    user_id, err = _require_user()
    if err:
        return err
    items = approval_service.get_pending_approvals(user_id)
    return jsonify({"user_id": user_id, "items": items, "total": len(items)})


@approval_bp.route("/my-approvals/history", methods=["GET"])
def my_history():
    user_id, err = _require_user()
    if err:
        return err
    items = approval_service.get_user_decision_history(user_id)
    return jsonify({"user_id": user_id, "items": items, "total": len(items)})
