"""
Approval workflow reference data: definitions, steps, role assignments, delegations.

These tables are managed by administrators and are read-only from the
routing engine's point of view.

Scoping rules:
    - WorkflowDefinition.rig_id NULL marks the global default workflow.
    - Delegation.rig_id NULL means "all rigs"; Delegation.role_key NULL
      means "all roles" of the delegator.
    - RoleAssignment rows are never deleted on reassignment; the previous
      row is deactivated so the history is preserved.

User ids are opaque strings issued by the authentication layer; rig ids
are integers owned by the rig registry.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from app.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

APPROVER_TYPE_ROLE = "role"
APPROVER_TYPE_USER = "user"
APPROVER_TYPES = frozenset({APPROVER_TYPE_ROLE, APPROVER_TYPE_USER})

ROLE_KEYS = ("toolpusher", "e_maintenance", "ds", "ose")

ROLE_LABELS = {
    "toolpusher": "Tool Pusher",
    "e_maintenance": "E-Maintenance",
    "ds": "Drilling Supervisor",
    "ose": "Operations Support Engineer",
}

# Fallback step lists used when no workflow rows are configured for a rig.
DEFAULT_WORKFLOWS = {
    "standard": ("toolpusher", "ds", "ose"),
    "e_maintenance": ("toolpusher", "e_maintenance", "ds", "ose"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Approver sum type ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleApprover:
    """Step approved by whoever holds ``role_key`` on the report's rig."""

    role_key: str

    @property
    def approver_type(self) -> str:
        return APPROVER_TYPE_ROLE


@dataclass(frozen=True)
class UserApprover:
    """Step approved by one named user."""

    user_id: str

    @property
    def approver_type(self) -> str:
        return APPROVER_TYPE_USER


# ── Models ────────────────────────────────────────────────────────────────────


class WorkflowDefinition(db.Model):
    """Named, ordered approval chain for one rig or (rig_id NULL) for all rigs."""

    __tablename__ = "workflow_definitions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    rig_id = db.Column(
        db.Integer,
        nullable=True,
        index=True,
        comment="NULL = global default workflow",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    steps = db.relationship(
        "WorkflowStep",
        backref="workflow",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.step_order",
    )

    @property
    def is_global(self) -> bool:
        return self.rig_id is None

    def to_dict(self, include_steps: bool = False) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "rig_id": self.rig_id,
            "is_global": self.is_global,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self) -> str:
        scope = "global" if self.rig_id is None else f"rig={self.rig_id}"
        return f"<WorkflowDefinition #{self.id} {self.name!r} {scope}>"


class WorkflowStep(db.Model):
    """
    One position in a workflow.

    Invariants (enforced by CHECK constraints):
    - approver_type 'role' carries role_key only; 'user' carries user_id only.
    - step_order is positive and unique within its workflow. Orders need not
      be contiguous; they are consumed in ascending order.
    """

    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    approver_type = db.Column(db.String(10), nullable=False, comment="role | user")
    role_key = db.Column(db.String(50), nullable=True, comment="Set when approver_type='role'")
    user_id = db.Column(db.String(100), nullable=True, comment="Set when approver_type='user'")
    is_required = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
        db.CheckConstraint("step_order > 0", name="ck_workflow_step_order_positive"),
        db.CheckConstraint(
            "(approver_type = 'role' AND role_key IS NOT NULL AND user_id IS NULL) OR "
            "(approver_type = 'user' AND user_id IS NOT NULL AND role_key IS NULL)",
            name="ck_workflow_step_approver",
        ),
    )

    @property
    def approver(self) -> RoleApprover | UserApprover:
        if self.approver_type == APPROVER_TYPE_ROLE:
            return RoleApprover(self.role_key)
        return UserApprover(self.user_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_order": self.step_order,
            "approver_type": self.approver_type,
            "role_key": self.role_key,
            "role_label": ROLE_LABELS.get(self.role_key) if self.role_key else None,
            "user_id": self.user_id,
            "is_required": self.is_required,
        }

    def __repr__(self) -> str:
        who = self.role_key or self.user_id
        return f"<WorkflowStep wf={self.workflow_id} #{self.step_order} {self.approver_type}:{who}>"


class RoleAssignment(db.Model):
    """Maps a role on a rig to the user currently responsible for it."""

    __tablename__ = "role_assignments"

    id = db.Column(db.Integer, primary_key=True)
    rig_id = db.Column(db.Integer, nullable=False)
    role_key = db.Column(db.String(50), nullable=False)
    user_id = db.Column(db.String(100), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.Index("ix_role_assignment_rig_role", "rig_id", "role_key"),
        # One active holder per (rig, role). Historical rows stay inactive.
        db.Index(
            "ux_role_assignment_active",
            "rig_id",
            "role_key",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rig_id": self.rig_id,
            "role_key": self.role_key,
            "role_label": ROLE_LABELS.get(self.role_key),
            "user_id": self.user_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<RoleAssignment rig={self.rig_id} {self.role_key}={self.user_id} active={self.is_active}>"


class Delegation(db.Model):
    """
    Time-boxed substitution: while the delegator is the nominal approver,
    route to the delegate instead.

    Active only when is_active is true and the evaluation instant falls
    inside the closed window [starts_at, ends_at].
    """

    __tablename__ = "delegations"

    id = db.Column(db.Integer, primary_key=True)
    delegator_user_id = db.Column(db.String(100), nullable=False, index=True)
    delegate_user_id = db.Column(db.String(100), nullable=False, index=True)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    rig_id = db.Column(db.Integer, nullable=True, comment="NULL = all rigs")
    role_key = db.Column(db.String(50), nullable=True, comment="NULL = all roles")
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("starts_at <= ends_at", name="ck_delegation_window"),
        db.CheckConstraint(
            "delegator_user_id <> delegate_user_id", name="ck_delegation_distinct_users"
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delegator_user_id": self.delegator_user_id,
            "delegate_user_id": self.delegate_user_id,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "rig_id": self.rig_id,
            "role_key": self.role_key,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Delegation #{self.id} {self.delegator_user_id}->{self.delegate_user_id}>"
