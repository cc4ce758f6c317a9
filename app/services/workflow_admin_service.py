"""
Workflow administration: management of the reference data the router reads.

Rules:
    - db.session.commit() happens only in this file (never in the blueprint).
    - replace_steps() swaps a workflow's full step list atomically.
    - assign_role() deactivates the previous holder instead of deleting it,
      so historical assignments stay inspectable.
    - Delegations are deactivated, never deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.workflow import (
    APPROVER_TYPE_ROLE,
    APPROVER_TYPES,
    ROLE_KEYS,
    ROLE_LABELS,
    Delegation,
    RoleAssignment,
    WorkflowDefinition,
    WorkflowStep,
)
from app.utils.helpers import to_utc

logger = logging.getLogger(__name__)


# ── Workflows ─────────────────────────────────────────────────────────────────


def list_workflows(rig_id: int | None = None) -> list[dict]:
    """Workflows for a rig, or the global ones when ``rig_id`` is None."""
    stmt = select(WorkflowDefinition)
    if rig_id is None:
        stmt = stmt.where(WorkflowDefinition.rig_id.is_(None))
    else:
        stmt = stmt.where(WorkflowDefinition.rig_id == rig_id)
    stmt = stmt.order_by(WorkflowDefinition.id)
    workflows = db.session.execute(stmt).scalars().all()
    return [w.to_dict(include_steps=True) for w in workflows]


def create_workflow(name: str, rig_id: int | None = None, is_active: bool = True) -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    wf = WorkflowDefinition(name=name, rig_id=rig_id, is_active=bool(is_active))
    db.session.add(wf)
    db.session.commit()
    logger.info("Workflow %s created (rig=%s)", wf.id, rig_id, extra={"rig_id": rig_id})
    return wf.to_dict(include_steps=True)


def set_workflow_active(workflow_id: int, is_active: bool) -> dict:
    wf = db.session.get(WorkflowDefinition, workflow_id)
    if not wf:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=workflow_id)
    wf.is_active = bool(is_active)
    db.session.commit()
    return wf.to_dict(include_steps=True)


def _validate_step(raw: dict, index: int) -> dict:
    """Normalise one step payload; raises ValidationError with a field path."""
    prefix = f"steps[{index}]"
    try:
        step_order = int(raw.get("step_order"))
    except (TypeError, ValueError):
        raise ValidationError(
            f"{prefix}.step_order must be a positive integer",
            details={f"{prefix}.step_order": "invalid"},
        ) from None
    if step_order <= 0:
        raise ValidationError(
            f"{prefix}.step_order must be a positive integer",
            details={f"{prefix}.step_order": "invalid"},
        )

    approver_type = (raw.get("approver_type") or "").strip().lower()
    if approver_type not in APPROVER_TYPES:
        raise ValidationError(
            f"{prefix}.approver_type must be one of {sorted(APPROVER_TYPES)}",
            details={f"{prefix}.approver_type": "invalid"},
        )

    role_key = (raw.get("role_key") or "").strip() or None
    user_id = (raw.get("user_id") or "").strip() or None
    if approver_type == APPROVER_TYPE_ROLE:
        if not role_key:
            raise ValidationError(
                f"{prefix}.role_key is required for role steps",
                details={f"{prefix}.role_key": "required"},
            )
        user_id = None
    else:
        if not user_id:
            raise ValidationError(
                f"{prefix}.user_id is required for user steps",
                details={f"{prefix}.user_id": "required"},
            )
        role_key = None

    is_required = raw.get("is_required", True)
    return {
        "step_order": step_order,
        "approver_type": approver_type,
        "role_key": role_key,
        "user_id": user_id,
        "is_required": bool(is_required),
    }


def replace_steps(workflow_id: int, steps: list[dict]) -> dict:
    """Replace every step of a workflow in one transaction.

    Raises:
        NotFoundError: workflow does not exist.
        ValidationError: malformed step or duplicate step_order.
    """
    wf = db.session.get(WorkflowDefinition, workflow_id)
    if not wf:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=workflow_id)
    if not isinstance(steps, list):
        raise ValidationError("steps must be a list", details={"steps": "invalid"})

    normalised = [_validate_step(raw or {}, i) for i, raw in enumerate(steps)]
    orders = [s["step_order"] for s in normalised]
    if len(orders) != len(set(orders)):
        raise ValidationError("step_order values must be unique", details={"steps": "duplicate"})

    wf.steps.clear()
    db.session.flush()
    for s in sorted(normalised, key=lambda s: s["step_order"]):
        wf.steps.append(WorkflowStep(**s))
    db.session.commit()

    logger.info(
        "Workflow %s steps replaced (%d steps)", workflow_id, len(normalised),
        extra={"rig_id": wf.rig_id},
    )
    return wf.to_dict(include_steps=True)


# ── Role assignments ──────────────────────────────────────────────────────────


def list_role_assignments(rig_id: int) -> dict:
    stmt = (
        select(RoleAssignment)
        .where(RoleAssignment.rig_id == rig_id, RoleAssignment.is_active.is_(True))
        .order_by(RoleAssignment.role_key)
    )
    rows = db.session.execute(stmt).scalars().all()
    return {
        "items": [r.to_dict() for r in rows],
        "role_keys": list(ROLE_KEYS),
        "role_labels": ROLE_LABELS,
    }


def assign_role(rig_id: int, role_key: str, user_id: str) -> dict:
    """Make ``user_id`` the active holder of ``role_key`` on ``rig_id``."""
    role_key = (role_key or "").strip()
    user_id = (user_id or "").strip()
    if rig_id is None:
        raise ValidationError("rig_id is required", details={"rig_id": "required"})
    if not role_key:
        raise ValidationError("role_key is required", details={"role_key": "required"})
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})

    previous = db.session.execute(
        select(RoleAssignment).where(
            RoleAssignment.rig_id == rig_id,
            RoleAssignment.role_key == role_key,
            RoleAssignment.is_active.is_(True),
        )
    ).scalars().all()
    for row in previous:
        row.is_active = False
    db.session.flush()

    assignment = RoleAssignment(rig_id=rig_id, role_key=role_key, user_id=user_id, is_active=True)
    db.session.add(assignment)
    db.session.commit()

    logger.info(
        "Role %s on rig %s assigned to %s (replaced %d)",
        role_key, rig_id, user_id, len(previous),
        extra={"rig_id": rig_id, "user_id": user_id},
    )
    return assignment.to_dict()


# ── Delegations ───────────────────────────────────────────────────────────────


def list_delegations(active_only: bool = False) -> list[dict]:
    stmt = select(Delegation)
    if active_only:
        stmt = stmt.where(Delegation.is_active.is_(True))
    stmt = stmt.order_by(Delegation.created_at.desc(), Delegation.id.desc())
    return [d.to_dict() for d in db.session.execute(stmt).scalars().all()]


def create_delegation(
    delegator_user_id: str,
    delegate_user_id: str,
    starts_at: datetime,
    ends_at: datetime,
    rig_id: int | None = None,
    role_key: str | None = None,
    is_active: bool = True,
) -> dict:
    """Create a delegation window. NULL rig_id / role_key act as wildcards.

    Raises:
        ValidationError: missing users, same user on both sides, or
                         starts_at after ends_at.
    """
    delegator_user_id = (delegator_user_id or "").strip()
    delegate_user_id = (delegate_user_id or "").strip()
    errors = {}
    if not delegator_user_id:
        errors["delegator_user_id"] = "required"
    if not delegate_user_id:
        errors["delegate_user_id"] = "required"
    if starts_at is None:
        errors["starts_at"] = "required"
    if ends_at is None:
        errors["ends_at"] = "required"
    if errors:
        raise ValidationError("Missing required delegation fields", details=errors)
    if delegator_user_id == delegate_user_id:
        raise ValidationError(
            "A user cannot delegate to themselves",
            details={"delegate_user_id": "same_as_delegator"},
        )
    starts_at, ends_at = to_utc(starts_at), to_utc(ends_at)
    if starts_at > ends_at:
        raise ValidationError("starts_at must not be after ends_at", details={"ends_at": "before_start"})

    delegation = Delegation(
        delegator_user_id=delegator_user_id,
        delegate_user_id=delegate_user_id,
        starts_at=starts_at,
        ends_at=ends_at,
        rig_id=rig_id,
        role_key=(role_key or "").strip() or None,
        is_active=bool(is_active),
    )
    db.session.add(delegation)
    db.session.commit()

    logger.info(
        "Delegation %s created: %s -> %s", delegation.id, delegator_user_id, delegate_user_id,
        extra={"rig_id": rig_id, "user_id": delegator_user_id},
    )
    return delegation.to_dict()


def deactivate_delegation(delegation_id: int) -> dict:
    delegation = db.session.get(Delegation, delegation_id)
    if not delegation:
        raise NotFoundError(resource="Delegation", resource_id=delegation_id)
    delegation.is_active = False
    db.session.commit()
    logger.info("Delegation %s deactivated", delegation_id)
    return delegation.to_dict()


# ── Seeding ───────────────────────────────────────────────────────────────────

GLOBAL_WORKFLOW_NAME = "Global NPT Approval Workflow"


def seed_default_workflow(
    rig_id: int | None = None,
    role_holders: dict[str, str] | None = None,
    delegation: dict | None = None,
) -> dict:
    """Idempotently seed the global workflow, and optionally a rig's role holders.

    Args:
        rig_id:       Rig to receive role assignments. Skipped when None.
        role_holders: {role_key: user_id}; a role already held by the same
                      user is left untouched.
        delegation:   Optional {delegator_user_id, delegate_user_id, starts_at,
                      ends_at, role_key?}; skipped while an unexpired one exists.

    Returns:
        Summary counts of what was created.
    """
    summary = {
        "global_workflow_created": False,
        "steps_created": 0,
        "role_assignments_created": 0,
        "delegation_created": False,
    }

    wf = db.session.execute(
        select(WorkflowDefinition).where(
            WorkflowDefinition.rig_id.is_(None),
            WorkflowDefinition.name == GLOBAL_WORKFLOW_NAME,
        )
    ).scalars().first()
    if wf is None:
        wf = WorkflowDefinition(name=GLOBAL_WORKFLOW_NAME, rig_id=None, is_active=True)
        db.session.add(wf)
        db.session.flush()
        summary["global_workflow_created"] = True

    if not wf.steps:
        for order, role_key in enumerate(ROLE_KEYS, start=1):
            wf.steps.append(WorkflowStep(
                step_order=order,
                approver_type=APPROVER_TYPE_ROLE,
                role_key=role_key,
                is_required=True,
            ))
        summary["steps_created"] = len(ROLE_KEYS)
    db.session.commit()

    if rig_id is not None:
        for role_key, user_id in (role_holders or {}).items():
            current = db.session.execute(
                select(RoleAssignment).where(
                    RoleAssignment.rig_id == rig_id,
                    RoleAssignment.role_key == role_key,
                    RoleAssignment.is_active.is_(True),
                )
            ).scalars().first()
            if current is not None and current.user_id == user_id:
                continue
            assign_role(rig_id, role_key, user_id)
            summary["role_assignments_created"] += 1

    if delegation:
        # An active, unexpired delegation between the same pair counts as seeded
        existing = db.session.execute(
            select(Delegation).where(
                Delegation.delegator_user_id == delegation["delegator_user_id"],
                Delegation.delegate_user_id == delegation["delegate_user_id"],
                Delegation.is_active.is_(True),
                Delegation.ends_at >= delegation["starts_at"],
            )
        ).scalars().first()
        if existing is None:
            create_delegation(rig_id=rig_id, **delegation)
            summary["delegation_created"] = True

    logger.info("Workflow seed completed: %s", summary)
    return summary
