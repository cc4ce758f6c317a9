"""npt_approval_workflow

Creates the NPT approval workflow tables:
  - workflow_definitions : rig-specific or global (rig_id NULL) approval chains
  - workflow_steps       : ordered role/user steps per chain
  - role_assignments     : active role holder per (rig, role)
  - delegations          : time-boxed approver substitution
  - npt_reports          : NPT entries with routing pointers + version lock
  - npt_approvals        : append-only decision log

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1f0a7c2d31
Revises:
Create Date: 2026-10-19 09:12:44.301552
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1f0a7c2d31'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── WorkflowDefinition ────────────────────────────────────────────────
    if "workflow_definitions" not in existing:
        op.create_table(
            "workflow_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column(
                "rig_id", sa.Integer(), nullable=True,
                comment="NULL = global default workflow",
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_definitions_rig_id", "workflow_definitions", ["rig_id"])

    # ── WorkflowStep ──────────────────────────────────────────────────────
    if "workflow_steps" not in existing:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("approver_type", sa.String(length=10), nullable=False, comment="role | user"),
            sa.Column("role_key", sa.String(length=50), nullable=True),
            sa.Column("user_id", sa.String(length=100), nullable=True),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.ForeignKeyConstraint(
                ["workflow_id"], ["workflow_definitions.id"], ondelete="CASCADE"
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
            sa.CheckConstraint("step_order > 0", name="ck_workflow_step_order_positive"),
            sa.CheckConstraint(
                "(approver_type = 'role' AND role_key IS NOT NULL AND user_id IS NULL) OR "
                "(approver_type = 'user' AND user_id IS NOT NULL AND role_key IS NULL)",
                name="ck_workflow_step_approver",
            ),
        )
        op.create_index("ix_workflow_steps_workflow_id", "workflow_steps", ["workflow_id"])

    # ── RoleAssignment ────────────────────────────────────────────────────
    if "role_assignments" not in existing:
        op.create_table(
            "role_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("rig_id", sa.Integer(), nullable=False),
            sa.Column("role_key", sa.String(length=50), nullable=False),
            sa.Column("user_id", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_role_assignment_rig_role", "role_assignments", ["rig_id", "role_key"])
        op.create_index("ix_role_assignments_user_id", "role_assignments", ["user_id"])
        op.create_index(
            "ux_role_assignment_active", "role_assignments", ["rig_id", "role_key"],
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active"),
        )

    # ── Delegation ────────────────────────────────────────────────────────
    if "delegations" not in existing:
        op.create_table(
            "delegations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("delegator_user_id", sa.String(length=100), nullable=False),
            sa.Column("delegate_user_id", sa.String(length=100), nullable=False),
            sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("rig_id", sa.Integer(), nullable=True, comment="NULL = all rigs"),
            sa.Column("role_key", sa.String(length=50), nullable=True, comment="NULL = all roles"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("starts_at <= ends_at", name="ck_delegation_window"),
            sa.CheckConstraint(
                "delegator_user_id <> delegate_user_id", name="ck_delegation_distinct_users"
            ),
        )
        op.create_index("ix_delegations_delegator_user_id", "delegations", ["delegator_user_id"])
        op.create_index("ix_delegations_delegate_user_id", "delegations", ["delegate_user_id"])
        op.create_index("ix_delegations_is_active", "delegations", ["is_active"])

    # ── NptReport ─────────────────────────────────────────────────────────
    if "npt_reports" not in existing:
        op.create_table(
            "npt_reports",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("rig_id", sa.Integer(), nullable=False),
            sa.Column("submitted_by", sa.String(length=100), nullable=False),
            sa.Column("report_date", sa.Date(), nullable=True),
            sa.Column("hours", sa.Numeric(precision=10, scale=2), nullable=True),
            sa.Column("npt_type", sa.String(length=30), nullable=True, comment="Contractual | Abraj"),
            sa.Column("system", sa.String(length=100), nullable=True),
            sa.Column("department", sa.String(length=100), nullable=True),
            sa.Column("immediate_cause", sa.Text(), nullable=True),
            sa.Column("root_cause", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("current_step_order", sa.Integer(), nullable=True),
            sa.Column("current_nominal_user_id", sa.String(length=100), nullable=True),
            sa.Column("current_approver_user_id", sa.String(length=100), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_npt_reports_rig_id", "npt_reports", ["rig_id"])
        op.create_index("ix_npt_reports_status", "npt_reports", ["status"])
        op.create_index(
            "ix_npt_reports_current_approver_user_id", "npt_reports", ["current_approver_user_id"]
        )

    # ── NptApproval ───────────────────────────────────────────────────────
    if "npt_approvals" not in existing:
        op.create_table(
            "npt_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("report_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("approver_user_id", sa.String(length=100), nullable=False),
            sa.Column("delegated_from_user_id", sa.String(length=100), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["report_id"], ["npt_reports.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_npt_approvals_report_id", "npt_approvals", ["report_id"])
        op.create_index("ix_npt_approvals_approver_user_id", "npt_approvals", ["approver_user_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    for table in (
        "npt_approvals",
        "npt_reports",
        "delegations",
        "role_assignments",
        "workflow_steps",
        "workflow_definitions",
    ):
        if table in existing:
            op.drop_table(table)
