"""
Approver resolution: who must act on a step, after delegation.

Two stages:
    nominal    the user named by the step (user step) or by the active role
               assignment on the rig (role step)
    effective  the nominal user, or the delegate of a delegation in force
               at ``at`` for the (rig, role) being routed

An unresolvable nominal user is not an error: the result carries no ids
and the routing engine parks the report as stalled.

``at`` is always passed in by the caller and evaluated once per
operation, so a delegation expiring mid-call cannot split the result. It is
normalized to UTC before it meets the stored windows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from app.models.workflow import RoleApprover, UserApprover
from app.services.workflow_repository import WorkflowRepository, default_repository
from app.services.workflow_selector import StepSpec
from app.utils.helpers import to_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedApprover:
    nominal_user_id: str | None = None
    effective_user_id: str | None = None
    delegated_from: str | None = None
    delegation_id: int | None = None

    @property
    def resolved(self) -> bool:
        return self.effective_user_id is not None

    @property
    def is_delegated(self) -> bool:
        return self.delegated_from is not None


UNRESOLVED = ResolvedApprover()


def resolve_nominal_user(
    step: StepSpec, rig_id: int, repo: WorkflowRepository | None = None
) -> str | None:
    repo = repo or default_repository
    approver = step.approver
    if isinstance(approver, UserApprover):
        return approver.user_id or None
    if isinstance(approver, RoleApprover):
        assignment = repo.find_active_role_assignment(rig_id, approver.role_key)
        return assignment.user_id if assignment else None
    raise TypeError(f"Unsupported approver type: {type(approver).__name__}")


def resolve_approver(
    step: StepSpec,
    rig_id: int,
    at: datetime,
    repo: WorkflowRepository | None = None,
) -> ResolvedApprover:
    """Resolve the nominal and effective approver for ``step`` on ``rig_id`` at ``at``."""
    repo = repo or default_repository

    nominal = resolve_nominal_user(step, rig_id, repo=repo)
    if nominal is None:
        logger.debug(
            "No nominal approver for step %s on rig %s",
            step.step_order, rig_id,
            extra={"rig_id": rig_id, "step_order": step.step_order},
        )
        return UNRESOLVED

    delegation = repo.find_active_delegation(nominal, rig_id, step.role_key, to_utc(at))
    if delegation is None:
        return ResolvedApprover(nominal_user_id=nominal, effective_user_id=nominal)

    return ResolvedApprover(
        nominal_user_id=nominal,
        effective_user_id=delegation.delegate_user_id,
        delegated_from=nominal,
        delegation_id=delegation.id,
    )
