"""
Workflow selection: which ordered step list applies to a rig.

Selection order:
    1. Active workflow scoped to the rig.
    2. Active global default workflow (rig_id NULL).
    3. None: the caller substitutes the hard-coded default step list.

A selected workflow with zero steps counts as "no workflow".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app, has_app_context

from app.models.workflow import DEFAULT_WORKFLOWS, RoleApprover, UserApprover, WorkflowStep
from app.services.workflow_repository import WorkflowRepository, default_repository

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_VARIANT = "standard"


@dataclass(frozen=True)
class StepSpec:
    """Immutable view of one workflow step as the engine consumes it."""

    step_order: int
    approver: RoleApprover | UserApprover
    is_required: bool = True

    @property
    def role_key(self) -> str | None:
        return self.approver.role_key if isinstance(self.approver, RoleApprover) else None

    @classmethod
    def from_model(cls, step: WorkflowStep) -> "StepSpec":
        return cls(step_order=step.step_order, approver=step.approver, is_required=step.is_required)


@dataclass(frozen=True)
class SelectedWorkflow:
    workflow_id: int | None
    name: str
    steps: tuple[StepSpec, ...]
    is_fallback: bool = False


def select_workflow(rig_id: int, repo: WorkflowRepository | None = None) -> SelectedWorkflow | None:
    """Pick the applicable workflow for ``rig_id`` with its steps in ascending order.

    Returns None when neither a rig-specific nor a global workflow with at
    least one step is configured.
    """
    repo = repo or default_repository

    definition = repo.find_active_workflow(rig_id)
    if definition is None:
        definition = repo.find_active_workflow(None)
    if definition is None:
        return None

    steps = repo.list_steps(definition.id)
    if not steps:
        logger.warning(
            "Workflow %s selected for rig %s has no steps; treating as unconfigured",
            definition.id, rig_id,
            extra={"rig_id": rig_id},
        )
        return None

    return SelectedWorkflow(
        workflow_id=definition.id,
        name=definition.name,
        steps=tuple(StepSpec.from_model(s) for s in steps),
    )


def default_steps(variant: str | None = None) -> tuple[StepSpec, ...]:
    """Hard-coded role chain used when no workflow rows are configured.

    ``variant`` defaults to the APPROVAL_FALLBACK_WORKFLOW config value.
    """
    if variant is None:
        variant = DEFAULT_FALLBACK_VARIANT
        if has_app_context():
            variant = current_app.config.get("APPROVAL_FALLBACK_WORKFLOW", DEFAULT_FALLBACK_VARIANT)
    try:
        role_keys = DEFAULT_WORKFLOWS[variant]
    except KeyError:
        raise ValueError(
            f"Unknown fallback workflow {variant!r}; expected one of {sorted(DEFAULT_WORKFLOWS)}"
        ) from None
    return tuple(
        StepSpec(step_order=i, approver=RoleApprover(role_key), is_required=True)
        for i, role_key in enumerate(role_keys, start=1)
    )


def steps_for_rig(rig_id: int, repo: WorkflowRepository | None = None) -> SelectedWorkflow:
    """Selected workflow for the rig, or the default step list when none applies.

    A workflow whose steps are all optional routes nowhere, so it is also
    replaced by the default list.
    """
    selected = select_workflow(rig_id, repo=repo)
    if selected is not None and any(s.is_required for s in selected.steps):
        return selected

    if selected is not None:
        logger.warning(
            "Workflow %s for rig %s has no required steps; using default step list",
            selected.workflow_id, rig_id,
            extra={"rig_id": rig_id},
        )
    else:
        logger.warning(
            "No workflow configured for rig %s; using default step list",
            rig_id,
            extra={"rig_id": rig_id},
        )
    return SelectedWorkflow(
        workflow_id=None,
        name="Default approval chain",
        steps=default_steps(),
        is_fallback=True,
    )
