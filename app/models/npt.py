"""
NPT report and its approval trail.

NptReport is the aggregate root for workflow state. Routing pointers
(current_step_order, current_nominal_user_id, current_approver_user_id)
are populated only while the report is PENDING_REVIEW; they are NULL in
DRAFT, APPROVED and REJECTED.

NptApproval is APPEND-ONLY: one row per decision, never updated or
deleted. It is the audit trail of who acted on which step, and on whose
behalf when a delegation was in force.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

STATUS_DRAFT = "DRAFT"
STATUS_PENDING_REVIEW = "PENDING_REVIEW"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"

REPORT_STATUSES = frozenset({
    STATUS_DRAFT,
    STATUS_PENDING_REVIEW,
    STATUS_APPROVED,
    STATUS_REJECTED,
})
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})

ACTION_APPROVE = "APPROVE"
ACTION_REJECT = "REJECT"
ACTION_REQUEST_CHANGES = "REQUEST_CHANGES"

DECISION_ACTIONS = frozenset({ACTION_APPROVE, ACTION_REJECT, ACTION_REQUEST_CHANGES})

NPT_TYPES = frozenset({"Contractual", "Abraj"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NptReport(db.Model):
    """Daily Non-Productive-Time entry for a rig, routed through approval."""

    __tablename__ = "npt_reports"

    id = db.Column(db.Integer, primary_key=True)
    rig_id = db.Column(db.Integer, nullable=False, index=True)
    submitted_by = db.Column(db.String(100), nullable=False, comment="Reporting user id")

    # NPT payload
    report_date = db.Column(db.Date, nullable=True)
    hours = db.Column(db.Numeric(10, 2), nullable=True)
    npt_type = db.Column(db.String(30), nullable=True, comment="Contractual | Abraj")
    system = db.Column(db.String(100), nullable=True)
    department = db.Column(db.String(100), nullable=True)
    immediate_cause = db.Column(db.Text, nullable=True)
    root_cause = db.Column(db.Text, nullable=True)

    # Workflow state
    status = db.Column(db.String(20), nullable=False, default=STATUS_DRAFT, index=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    current_step_order = db.Column(db.Integer, nullable=True)
    current_nominal_user_id = db.Column(
        db.String(100),
        nullable=True,
        comment="Approver named by the step/role assignment before delegation",
    )
    current_approver_user_id = db.Column(
        db.String(100),
        nullable=True,
        index=True,
        comment="Approver actually routed to, after delegation",
    )

    # Optimistic lock: concurrent writers against the same row fail on flush.
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    approvals = db.relationship(
        "NptApproval",
        backref="report",
        lazy="dynamic",
        cascade="all, delete-orphan",
        order_by="NptApproval.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_stalled(self) -> bool:
        """Pending, but no approver could be resolved for the current step."""
        return self.status == STATUS_PENDING_REVIEW and self.current_approver_user_id is None

    def clear_routing(self) -> None:
        self.current_step_order = None
        self.current_nominal_user_id = None
        self.current_approver_user_id = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rig_id": self.rig_id,
            "submitted_by": self.submitted_by,
            "report_date": self.report_date.isoformat() if self.report_date else None,
            "hours": float(self.hours) if self.hours is not None else None,
            "npt_type": self.npt_type,
            "system": self.system,
            "department": self.department,
            "immediate_cause": self.immediate_cause,
            "root_cause": self.root_cause,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "current_step_order": self.current_step_order,
            "current_nominal_user_id": self.current_nominal_user_id,
            "current_approver_user_id": self.current_approver_user_id,
            "is_stalled": self.is_stalled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<NptReport #{self.id} rig={self.rig_id} {self.status} step={self.current_step_order}>"


class NptApproval(db.Model):
    """Immutable decision record against one step of one report."""

    __tablename__ = "npt_approvals"

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer,
        db.ForeignKey("npt_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    approver_user_id = db.Column(db.String(100), nullable=False, index=True)
    delegated_from_user_id = db.Column(
        db.String(100),
        nullable=True,
        comment="Nominal approver when the decision was taken by a delegate",
    )
    action = db.Column(db.String(20), nullable=False, comment="APPROVE | REJECT | REQUEST_CHANGES")
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "step_order": self.step_order,
            "approver_user_id": self.approver_user_id,
            "delegated_from_user_id": self.delegated_from_user_id,
            "action": self.action,
            "comment": self.comment,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<NptApproval #{self.id} report={self.report_id} step={self.step_order} {self.action}>"
