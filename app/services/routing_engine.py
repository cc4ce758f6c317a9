"""
Routing engine: moves an NPT report through its approval chain.

State machine over NptReport.status:

    DRAFT ──route_first_approver──▶ PENDING_REVIEW ──advance (no step left)──▶ APPROVED
                                         │
                                         └──reject (approval_service)──▶ REJECTED

While PENDING_REVIEW, current_step_order names the outstanding step.

Policies:
    - Only required steps are routed to. Optional steps are skipped by both
      the first-step and the next-step search.
    - A step whose approver cannot be resolved still becomes the current
      step, with both user pointers NULL ("stalled"). Reports are never
      dropped; ops re-route them with reroute_stalled_reports().
    - route_first_approver only accepts DRAFT reports, so the step order of a
      report in the chain never goes backwards.
    - advance on an APPROVED report is a no-op returning the final state;
      advance on a REJECTED report is refused.
    - Public operations run inside report_transaction(), which commits and maps
      a version conflict to ConflictError. _route_first and advance_report only
      flush so that approval_service can fold them into the decision's
      transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from app.models.npt import (
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_PENDING_REVIEW,
    STATUS_REJECTED,
    NptReport,
)
from app.models.workflow import UserApprover
from app.services.approver_resolver import ResolvedApprover, resolve_approver
from app.services.workflow_repository import WorkflowRepository, default_repository
from app.services.workflow_selector import SelectedWorkflow, StepSpec, steps_for_rig
from app.utils.helpers import to_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RoutingResult:
    """Outcome of a routing operation, as persisted on the report."""

    report_id: int
    status: str
    step_order: int | None = None
    role_key: str | None = None
    step_user_id: str | None = None
    nominal_user_id: str | None = None
    effective_user_id: str | None = None
    delegated_from: str | None = None
    used_fallback: bool = False

    @property
    def assigned(self) -> bool:
        return self.status == STATUS_PENDING_REVIEW and self.effective_user_id is not None

    @property
    def stalled(self) -> bool:
        return self.status == STATUS_PENDING_REVIEW and self.effective_user_id is None

    @property
    def finalized(self) -> bool:
        return self.status == STATUS_APPROVED

    def to_dict(self) -> dict:
        d = asdict(self)
        d.update(assigned=self.assigned, stalled=self.stalled, finalized=self.finalized)
        return d


# ── Transaction helpers ───────────────────────────────────────────────────────


@contextmanager
def report_transaction(repo: WorkflowRepository, report_id: int):
    """Run one report mutation from load to commit.

    The version check fires on any flush inside the block as well as on the
    final commit; either way a concurrent writer surfaces as ConflictError.
    Any other failure rolls the session back and propagates.
    """
    try:
        yield
        repo.commit()
    except StaleDataError:
        repo.rollback()
        logger.warning(
            "Concurrent update on report %s; change not applied",
            report_id,
            extra={"report_id": report_id},
        )
        raise ConflictError("NptReport", "version", report_id) from None
    except Exception:
        repo.rollback()
        raise


def load_report(repo: WorkflowRepository, report_id: int, for_update: bool = True) -> NptReport:
    report = repo.get_report(report_id, for_update=for_update)
    if report is None:
        raise NotFoundError(resource="NptReport", resource_id=report_id)
    return report


# ── Private routing primitives ───────────────────────────────────────────────


def _required_steps(workflow: SelectedWorkflow) -> list[StepSpec]:
    return sorted((s for s in workflow.steps if s.is_required), key=lambda s: s.step_order)


def _result_for(report: NptReport, step: StepSpec | None, used_fallback: bool,
                resolved: ResolvedApprover | None = None) -> RoutingResult:
    step_user_id = None
    if step is not None and isinstance(step.approver, UserApprover):
        step_user_id = step.approver.user_id
    return RoutingResult(
        report_id=report.id,
        status=report.status,
        step_order=report.current_step_order,
        role_key=step.role_key if step is not None else None,
        step_user_id=step_user_id,
        nominal_user_id=report.current_nominal_user_id,
        effective_user_id=report.current_approver_user_id,
        delegated_from=resolved.delegated_from if resolved is not None else None,
        used_fallback=used_fallback,
    )


def _assign_step(
    report: NptReport,
    step: StepSpec,
    at: datetime,
    repo: WorkflowRepository,
    used_fallback: bool,
) -> RoutingResult:
    """Resolve ``step`` and point the report at it (stalled if unresolved)."""
    resolved = resolve_approver(step, report.rig_id, at, repo=repo)

    report.status = STATUS_PENDING_REVIEW
    report.current_step_order = step.step_order
    report.current_nominal_user_id = resolved.nominal_user_id
    report.current_approver_user_id = resolved.effective_user_id
    repo.flush()

    extra = {
        "report_id": report.id,
        "rig_id": report.rig_id,
        "step_order": step.step_order,
        "user_id": resolved.effective_user_id,
    }
    if resolved.resolved:
        logger.info(
            "Report %s routed to %s at step %s%s",
            report.id, resolved.effective_user_id, step.step_order,
            f" (delegated from {resolved.delegated_from})" if resolved.is_delegated else "",
            extra=extra,
        )
    else:
        logger.warning(
            "Report %s stalled at step %s; no approver resolvable on rig %s",
            report.id, step.step_order, report.rig_id,
            extra=extra,
        )
    return _result_for(report, step, used_fallback, resolved)


def _finalize(report: NptReport, repo: WorkflowRepository, used_fallback: bool) -> RoutingResult:
    report.status = STATUS_APPROVED
    report.clear_routing()
    repo.flush()
    logger.info(
        "Report %s approved; no steps remaining",
        report.id,
        extra={"report_id": report.id, "rig_id": report.rig_id},
    )
    return _result_for(report, None, used_fallback)


def _route_first(report: NptReport, at: datetime, repo: WorkflowRepository) -> RoutingResult:
    if report.status != STATUS_DRAFT:
        raise ValidationError(
            f"Only draft reports can be submitted; report {report.id} is {report.status}",
            details={"status": report.status},
        )

    workflow = steps_for_rig(report.rig_id, repo=repo)
    first = _required_steps(workflow)[0]
    return _assign_step(report, first, at, repo, workflow.is_fallback)


def advance_report(report: NptReport, at: datetime, repo: WorkflowRepository) -> RoutingResult:
    if report.status == STATUS_APPROVED:
        return _result_for(report, None, used_fallback=False)
    if report.status == STATUS_REJECTED:
        raise ValidationError(
            f"Report {report.id} is REJECTED and cannot advance",
            details={"status": report.status},
        )
    if report.status == STATUS_DRAFT or report.current_step_order is None:
        raise WorkflowStateError(
            f"Report {report.id} has no current step (status={report.status}); "
            "route_first_approver must run before advance_to_next_step"
        )

    workflow = steps_for_rig(report.rig_id, repo=repo)
    remaining = [s for s in _required_steps(workflow) if s.step_order > report.current_step_order]
    if not remaining:
        return _finalize(report, repo, workflow.is_fallback)
    return _assign_step(report, remaining[0], at, repo, workflow.is_fallback)


def _reroute_one(report: NptReport, at: datetime, repo: WorkflowRepository, apply: bool) -> dict:
    """Re-resolve a stalled report at its current step; returns the sweep item."""
    workflow = steps_for_rig(report.rig_id, repo=repo)
    required = _required_steps(workflow)
    if report.current_step_order is None:
        candidates = required
    else:
        candidates = [s for s in required if s.step_order >= report.current_step_order]

    if not candidates:
        if apply:
            _finalize(report, repo, workflow.is_fallback)
        return {"report_id": report.id, "outcome": "finalized"}

    step = candidates[0]
    if apply:
        result = _assign_step(report, step, at, repo, workflow.is_fallback)
        approver = result.effective_user_id
    else:
        approver = resolve_approver(step, report.rig_id, at, repo=repo).effective_user_id
    return {
        "report_id": report.id,
        "outcome": "routed" if approver else "still_stalled",
        "step_order": step.step_order,
        "approver_user_id": approver,
    }


# ── Public API ────────────────────────────────────────────────────────────────


def route_first_approver(
    report_id: int,
    at: datetime | None = None,
    repo: WorkflowRepository | None = None,
    submitted_by: str | None = None,
) -> RoutingResult:
    """Route a submitted report to the approver of its first required step.

    Only DRAFT reports are accepted, so a report already in the chain never
    moves back to step one; stalled reports go through reroute_stalled_reports.
    Falls back to the default step list when the rig has no usable workflow.
    When ``submitted_by`` is given it must be the report's author.

    Raises:
        NotFoundError: report does not exist.
        ForbiddenError: ``submitted_by`` is not the report's author.
        ValidationError: report is not a DRAFT.
        ConflictError: the report was changed concurrently.
    """
    repo = repo or default_repository
    at = to_utc(at) if at else _utcnow()

    with report_transaction(repo, report_id):
        report = load_report(repo, report_id)
        if submitted_by is not None and submitted_by != report.submitted_by:
            raise ForbiddenError("You can only submit your own reports", user_id=submitted_by)
        result = _route_first(report, at, repo)
    return result


def advance_to_next_step(
    report_id: int,
    at: datetime | None = None,
    repo: WorkflowRepository | None = None,
) -> RoutingResult:
    """Move a pending report to its next required step, or finalize it as APPROVED.

    Raises:
        NotFoundError: report does not exist.
        ValidationError: report is REJECTED.
        WorkflowStateError: report is pending without a current step.
        ConflictError: the report was changed concurrently.
    """
    repo = repo or default_repository
    at = to_utc(at) if at else _utcnow()

    with report_transaction(repo, report_id):
        report = load_report(repo, report_id)
        result = advance_report(report, at, repo)
    return result


def reroute_stalled_reports(
    at: datetime | None = None,
    repo: WorkflowRepository | None = None,
    apply: bool = True,
) -> dict:
    """Retry approver resolution for every stalled PENDING_REVIEW report.

    The report keeps its current step; earlier approvals stay valid. When the
    current step no longer exists in the rig's workflow, the next required
    step at or after it is used, or the report is finalized if none remains.
    A report with no current step restarts at the first required step.

    With ``apply=False`` nothing is written; the summary reports what would
    be routed.
    """
    repo = repo or default_repository
    at = to_utc(at) if at else _utcnow()

    summary = {
        "mode": "apply" if apply else "dry-run",
        "processed": 0,
        "routed": 0,
        "still_stalled": 0,
        "finalized": 0,
        "errors": 0,
        "error_details": [],
        "items": [],
    }

    report_ids = [r.id for r in repo.list_stalled_reports()]
    for report_id in report_ids:
        summary["processed"] += 1
        try:
            if apply:
                with report_transaction(repo, report_id):
                    item = _reroute_one(load_report(repo, report_id), at, repo, apply=True)
            else:
                item = _reroute_one(load_report(repo, report_id, for_update=False), at, repo, apply=False)
            summary[item["outcome"]] += 1
            summary["items"].append(item)
        except (ConflictError, SQLAlchemyError) as exc:
            repo.rollback()
            summary["errors"] += 1
            summary["error_details"].append({"report_id": report_id, "error": str(exc)})
            logger.error(
                "Re-routing report %s failed: %s",
                report_id, exc,
                extra={"report_id": report_id},
            )

    logger.info(
        "Stalled report sweep (%s): processed=%d routed=%d still_stalled=%d finalized=%d errors=%d",
        summary["mode"], summary["processed"], summary["routed"],
        summary["still_stalled"], summary["finalized"], summary["errors"],
    )
    return summary
