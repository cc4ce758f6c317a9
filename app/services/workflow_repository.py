"""
Workflow repository: the storage collaborator of the routing engine.

Every read and write the engine performs goes through WorkflowRepository
so that selector, resolver, router and decision code never touch
db.session directly. The default instance is backed by Flask-SQLAlchemy;
tests and scripts may pass their own instance to the engine functions.

Tie-break rule for all "pick one" queries: the most recently created row
wins (created_at DESC, id DESC). This makes duplicate active rows resolve
deterministically instead of depending on physical row order.

Transactions:
    Repository methods never commit. The public engine operations own the
    commit so that read-check-act sequences land in one transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select

from app.models import db
from app.models.npt import STATUS_PENDING_REVIEW, NptApproval, NptReport
from app.models.workflow import Delegation, RoleAssignment, WorkflowDefinition, WorkflowStep

logger = logging.getLogger(__name__)


class WorkflowRepository:
    """SQLAlchemy-backed reads/writes over workflow reference data and reports."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # ── Reports ──────────────────────────────────────────────────────────

    def get_report(self, report_id: int, for_update: bool = False) -> NptReport | None:
        """Load a report; ``for_update`` takes a row lock where the backend supports it."""
        stmt = select(NptReport).where(NptReport.id == report_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def list_reports_pending_for(self, user_id: str) -> list[NptReport]:
        stmt = (
            select(NptReport)
            .where(
                NptReport.status == STATUS_PENDING_REVIEW,
                NptReport.current_approver_user_id == user_id,
            )
            .order_by(NptReport.report_date.desc(), NptReport.id.desc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_stalled_reports(self) -> list[NptReport]:
        """PENDING_REVIEW reports with no routed approver, oldest first."""
        stmt = (
            select(NptReport)
            .where(
                NptReport.status == STATUS_PENDING_REVIEW,
                NptReport.current_approver_user_id.is_(None),
            )
            .order_by(NptReport.id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    # ── Workflow definitions & steps ─────────────────────────────────────

    def find_active_workflow(self, rig_id: int | None) -> WorkflowDefinition | None:
        """Active definition scoped exactly to ``rig_id`` (None = global default)."""
        if rig_id is None:
            scope = WorkflowDefinition.rig_id.is_(None)
        else:
            scope = WorkflowDefinition.rig_id == rig_id
        stmt = (
            select(WorkflowDefinition)
            .where(WorkflowDefinition.is_active.is_(True), scope)
            .order_by(WorkflowDefinition.created_at.desc(), WorkflowDefinition.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def list_steps(self, workflow_id: int) -> list[WorkflowStep]:
        stmt = (
            select(WorkflowStep)
            .where(WorkflowStep.workflow_id == workflow_id)
            .order_by(WorkflowStep.step_order.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    # ── Role assignments & delegations ───────────────────────────────────

    def find_active_role_assignment(self, rig_id: int, role_key: str) -> RoleAssignment | None:
        stmt = (
            select(RoleAssignment)
            .where(
                RoleAssignment.rig_id == rig_id,
                RoleAssignment.role_key == role_key,
                RoleAssignment.is_active.is_(True),
            )
            .order_by(RoleAssignment.created_at.desc(), RoleAssignment.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def find_active_delegation(
        self,
        delegator_user_id: str,
        rig_id: int,
        role_key: str | None,
        at: datetime,
    ) -> Delegation | None:
        """Delegation in force for ``delegator_user_id`` at instant ``at``.

        NULL rig_id / role_key on the delegation are wildcards. A step with
        no role (a named-user step) only matches role-wildcard delegations.
        """
        if role_key is None:
            role_scope = Delegation.role_key.is_(None)
        else:
            role_scope = or_(Delegation.role_key.is_(None), Delegation.role_key == role_key)

        stmt = (
            select(Delegation)
            .where(
                Delegation.delegator_user_id == delegator_user_id,
                Delegation.is_active.is_(True),
                Delegation.starts_at <= at,
                Delegation.ends_at >= at,
                or_(Delegation.rig_id.is_(None), Delegation.rig_id == rig_id),
                role_scope,
            )
            .order_by(Delegation.created_at.desc(), Delegation.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    # ── Approval trail ───────────────────────────────────────────────────

    def add_approval(
        self,
        report_id: int,
        step_order: int,
        approver_user_id: str,
        action: str,
        comment: str | None = None,
        delegated_from_user_id: str | None = None,
        created_at: datetime | None = None,
    ) -> NptApproval:
        record = NptApproval(
            report_id=report_id,
            step_order=step_order,
            approver_user_id=approver_user_id,
            delegated_from_user_id=delegated_from_user_id,
            action=action,
            comment=comment,
        )
        if created_at is not None:
            record.created_at = created_at
        self.session.add(record)
        self.session.flush()
        return record

    def list_approvals(self, report_id: int) -> list[NptApproval]:
        stmt = (
            select(NptApproval)
            .where(NptApproval.report_id == report_id)
            .order_by(NptApproval.created_at.asc(), NptApproval.id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_approvals_by_user(self, user_id: str) -> list[NptApproval]:
        stmt = (
            select(NptApproval)
            .where(NptApproval.approver_user_id == user_id)
            .order_by(NptApproval.created_at.desc(), NptApproval.id.desc())
        )
        return list(self.session.execute(stmt).scalars().all())

    # ── Unit of work ─────────────────────────────────────────────────────

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


default_repository = WorkflowRepository()
