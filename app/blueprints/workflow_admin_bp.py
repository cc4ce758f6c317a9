"""
Workflow administration blueprint: approval chains, role holders, delegations.

Routes:
  GET    /workflows?rig_id=                      – list (global when rig_id absent)
  POST   /workflows                              – { name, rig_id?, is_active? }
  PATCH  /workflows/<wid>                        – { is_active }
  PUT    /workflows/<wid>/steps                  – replace all steps
  GET    /rigs/<rig_id>/role-assignments         – active role holders
  PUT    /rigs/<rig_id>/role-assignments/<role>  – { user_id }
  GET    /delegations?active=true                – list
  POST   /delegations                            – create window
  POST   /delegations/<did>/deactivate           – end a delegation early

Service layer owns validation and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import app.services.workflow_admin_service as was
from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.utils.errors import E, api_error
from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

workflow_admin_bp = Blueprint("workflow_admin", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_admin_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_admin_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@workflow_admin_bp.errorhandler(IntegrityError)
def _handle_integrity(error: IntegrityError):
    db.session.rollback()
    logger.warning("Integrity error on %s: %s", request.path, error.orig)
    return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")


@workflow_admin_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error on %s", request.path)
    return api_error(E.DATABASE, "Database error")


# ═════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/workflows", methods=["GET"])
def list_workflows():
    rig_id = request.args.get("rig_id", type=int)
    return jsonify({"rig_id": rig_id, "items": was.list_workflows(rig_id)})


@workflow_admin_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Create a workflow; omit rig_id for the global default.

    Body: { name, rig_id?, is_active?, steps? }
    """
    data = request.get_json(silent=True) or {}
    rig_id = data.get("rig_id")
    if rig_id is not None and not isinstance(rig_id, int):
        return api_error(E.VALIDATION_INVALID, "rig_id must be an integer")

    wf = was.create_workflow(data.get("name"), rig_id=rig_id, is_active=data.get("is_active", True))
    if data.get("steps"):
        wf = was.replace_steps(wf["id"], data["steps"])
    return jsonify(wf), 201


@workflow_admin_bp.route("/workflows/<int:wid>", methods=["PATCH"])
def update_workflow(wid):
    data = request.get_json(silent=True) or {}
    if "is_active" not in data:
        return api_error(E.VALIDATION_REQUIRED, "is_active is required")
    return jsonify(was.set_workflow_active(wid, data["is_active"]))


@workflow_admin_bp.route("/workflows/<int:wid>/steps", methods=["PUT"])
def replace_steps(wid):
    """Body: { steps: [{step_order, approver_type, role_key?, user_id?, is_required?}] }"""
    data = request.get_json(silent=True) or {}
    return jsonify(was.replace_steps(wid, data.get("steps")))


# ═════════════════════════════════════════════════════════════════════════
# Role assignments
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/rigs/<int:rig_id>/role-assignments", methods=["GET"])
def list_role_assignments(rig_id):
    return jsonify(was.list_role_assignments(rig_id))


@workflow_admin_bp.route("/rigs/<int:rig_id>/role-assignments/<role_key>", methods=["PUT"])
def assign_role(rig_id, role_key):
    data = request.get_json(silent=True) or {}
    return jsonify(was.assign_role(rig_id, role_key, data.get("user_id")))


# ═════════════════════════════════════════════════════════════════════════
# Delegations
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/delegations", methods=["GET"])
def list_delegations():
    active_only = request.args.get("active") == "true"
    return jsonify({"items": was.list_delegations(active_only=active_only)})


@workflow_admin_bp.route("/delegations", methods=["POST"])
def create_delegation():
    """Body: { delegator_user_id, delegate_user_id, starts_at, ends_at, rig_id?, role_key? }

    NULL rig_id / role_key make the delegation apply to every rig / role.
    """
    data = request.get_json(silent=True) or {}
    try:
        starts_at = parse_datetime(data.get("starts_at"))
        ends_at = parse_datetime(data.get("ends_at"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    delegation = was.create_delegation(
        delegator_user_id=data.get("delegator_user_id"),
        delegate_user_id=data.get("delegate_user_id"),
        starts_at=starts_at,
        ends_at=ends_at,
        rig_id=data.get("rig_id"),
        role_key=data.get("role_key"),
        is_active=data.get("is_active", True),
    )
    return jsonify(delegation), 201


@workflow_admin_bp.route("/delegations/<int:did>/deactivate", methods=["POST"])
def deactivate_delegation(did):
    return jsonify(was.deactivate_delegation(did))
