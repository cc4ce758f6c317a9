"""
Routing engine tests.

Covers:
  - submit routes to the first required step (scenario 1), DRAFT only, author only
  - delegation applied on routing (scenario 2)
  - unresolvable role stalls instead of failing (scenario 3)
  - default step list used without any workflow (scenario 4)
  - optional steps skipped, non-contiguous step orders
  - strictly increasing step order over a lifecycle
  - advance at end is idempotent, rejected reports refused
  - stalled report sweep (dry-run / apply)
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import ForbiddenError, NotFoundError, ValidationError, WorkflowStateError
from app.models import db
from app.models.npt import (
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_PENDING_REVIEW,
    STATUS_REJECTED,
    NptReport,
)
from app.services.routing_engine import (
    advance_to_next_step,
    reroute_stalled_reports,
    route_first_approver,
)

from conftest import NOW, RIG, ROLE_HOLDERS

DAY = timedelta(days=1)


@pytest.fixture()
def three_step(make_workflow):
    return make_workflow(["toolpusher", "ds", "ose"], rig_id=RIG, name="Rig 104 chain")


def _reload(report_id):
    db.session.expire_all()
    return db.session.get(NptReport, report_id)


class TestRouteFirstApprover:
    def test_routes_to_first_step(self, three_step, rig_roles, make_report):
        report = make_report()
        result = route_first_approver(report.id, at=NOW)

        assert result.assigned
        assert result.step_order == 1
        assert result.role_key == "toolpusher"
        assert result.effective_user_id == ROLE_HOLDERS["toolpusher"]

        stored = _reload(report.id)
        assert stored.status == STATUS_PENDING_REVIEW
        assert stored.current_step_order == 1
        assert stored.current_nominal_user_id == ROLE_HOLDERS["toolpusher"]
        assert stored.current_approver_user_id == ROLE_HOLDERS["toolpusher"]

    def test_delegation_applied_on_routing(self, three_step, rig_roles, make_report, delegate):
        delegate(ROLE_HOLDERS["toolpusher"], "backup-user", NOW - DAY, NOW + DAY)
        report = make_report()

        result = route_first_approver(report.id, at=NOW)
        assert result.nominal_user_id == ROLE_HOLDERS["toolpusher"]
        assert result.effective_user_id == "backup-user"
        assert result.delegated_from == ROLE_HOLDERS["toolpusher"]

        stored = _reload(report.id)
        assert stored.current_nominal_user_id == ROLE_HOLDERS["toolpusher"]
        assert stored.current_approver_user_id == "backup-user"

    def test_falls_back_to_default_chain(self, rig_roles, make_report):
        report = make_report()
        result = route_first_approver(report.id, at=NOW)

        assert result.used_fallback is True
        assert result.role_key == "toolpusher"
        assert result.effective_user_id == ROLE_HOLDERS["toolpusher"]

    def test_first_step_unresolved_is_stalled(self, three_step, make_report):
        report = make_report()
        result = route_first_approver(report.id, at=NOW)

        assert result.stalled
        stored = _reload(report.id)
        assert stored.status == STATUS_PENDING_REVIEW
        assert stored.current_step_order == 1
        assert stored.current_approver_user_id is None
        assert stored.is_stalled

    def test_optional_first_step_skipped(self, make_workflow, rig_roles, make_report):
        make_workflow(
            [
                {"approver_type": "role", "role_key": "e_maintenance", "is_required": False},
                {"approver_type": "role", "role_key": "ds"},
            ],
            rig_id=RIG,
        )
        report = make_report()
        result = route_first_approver(report.id, at=NOW)
        assert result.step_order == 2
        assert result.effective_user_id == ROLE_HOLDERS["ds"]

    def test_user_step(self, make_workflow, make_report):
        make_workflow([("user", "rig-manager")], rig_id=RIG)
        report = make_report()
        result = route_first_approver(report.id, at=NOW)
        assert result.effective_user_id == "rig-manager"
        assert result.step_user_id == "rig-manager"

    def test_unknown_report(self):
        with pytest.raises(NotFoundError):
            route_first_approver(424242, at=NOW)

    @pytest.mark.parametrize("status", [STATUS_APPROVED, STATUS_REJECTED])
    def test_terminal_report_refused(self, make_report, status):
        report = make_report(status=status)
        with pytest.raises(ValidationError):
            route_first_approver(report.id, at=NOW)
        assert _reload(report.id).status == status

    def test_pending_report_not_sent_back_to_first_step(self, three_step, rig_roles, make_report):
        report = make_report()
        route_first_approver(report.id, at=NOW)
        advance_to_next_step(report.id, at=NOW)

        with pytest.raises(ValidationError):
            route_first_approver(report.id, at=NOW)

        stored = _reload(report.id)
        assert stored.status == STATUS_PENDING_REVIEW
        assert stored.current_step_order == 2
        assert stored.current_approver_user_id == ROLE_HOLDERS["ds"]

    def test_only_author_may_submit(self, three_step, rig_roles, make_report):
        report = make_report(submitted_by="driller-1")
        with pytest.raises(ForbiddenError):
            route_first_approver(report.id, at=NOW, submitted_by="driller-2")
        assert _reload(report.id).status == STATUS_DRAFT

        result = route_first_approver(report.id, at=NOW, submitted_by="driller-1")
        assert result.step_order == 1

    def test_non_utc_instant_matches_delegation_window(self, three_step, rig_roles, make_report, delegate):
        # Window opens at NOW; 10:00+03:00 is 07:00 UTC, one hour before it.
        delegate(ROLE_HOLDERS["toolpusher"], "relief-toolpusher", NOW, NOW + DAY)
        riyadh = timezone(timedelta(hours=3))
        report = make_report()

        result = route_first_approver(report.id, at=datetime(2024, 3, 15, 10, 0, tzinfo=riyadh))
        assert result.effective_user_id == ROLE_HOLDERS["toolpusher"]

    def test_non_utc_instant_inside_window_delegates(self, three_step, rig_roles, make_report, delegate):
        delegate(ROLE_HOLDERS["toolpusher"], "relief-toolpusher", NOW, NOW + DAY)
        riyadh = timezone(timedelta(hours=3))
        report = make_report()

        # 12:00+03:00 is 09:00 UTC, inside the window.
        result = route_first_approver(report.id, at=datetime(2024, 3, 15, 12, 0, tzinfo=riyadh))
        assert result.effective_user_id == "relief-toolpusher"
        assert result.delegated_from == ROLE_HOLDERS["toolpusher"]


class TestAdvanceToNextStep:
    def test_advances_to_second_step(self, three_step, rig_roles, make_report):
        report = make_report()
        route_first_approver(report.id, at=NOW)

        result = advance_to_next_step(report.id, at=NOW)
        assert result.step_order == 2
        assert result.effective_user_id == ROLE_HOLDERS["ds"]

    def test_missing_role_stalls_next_step(self, three_step, assign, make_report):
        assign("toolpusher", ROLE_HOLDERS["toolpusher"])
        assign("ose", ROLE_HOLDERS["ose"])
        report = make_report()
        route_first_approver(report.id, at=NOW)

        result = advance_to_next_step(report.id, at=NOW)
        assert result.stalled
        stored = _reload(report.id)
        assert stored.status == STATUS_PENDING_REVIEW
        assert stored.current_step_order == 2
        assert stored.current_nominal_user_id is None
        assert stored.current_approver_user_id is None

    def test_step_order_strictly_increases(self, make_workflow, rig_roles, make_report):
        make_workflow(
            [
                {"step_order": 10, "approver_type": "role", "role_key": "toolpusher"},
                {"step_order": 20, "approver_type": "role", "role_key": "e_maintenance",
                 "is_required": False},
                {"step_order": 35, "approver_type": "role", "role_key": "ds"},
                {"step_order": 40, "approver_type": "role", "role_key": "ose"},
            ],
            rig_id=RIG,
        )
        report = make_report()
        seen = [route_first_approver(report.id, at=NOW).step_order]
        while True:
            result = advance_to_next_step(report.id, at=NOW)
            if result.finalized:
                break
            seen.append(result.step_order)

        assert seen == [10, 35, 40]
        assert all(a < b for a, b in zip(seen, seen[1:]))

    def test_finalizes_after_last_step(self, make_workflow, rig_roles, make_report):
        make_workflow(["toolpusher"], rig_id=RIG)
        report = make_report()
        route_first_approver(report.id, at=NOW)

        result = advance_to_next_step(report.id, at=NOW)
        assert result.finalized
        stored = _reload(report.id)
        assert stored.status == STATUS_APPROVED
        assert stored.current_step_order is None
        assert stored.current_nominal_user_id is None
        assert stored.current_approver_user_id is None

    def test_advance_at_end_is_idempotent(self, make_workflow, rig_roles, make_report):
        make_workflow(["toolpusher"], rig_id=RIG)
        report = make_report()
        route_first_approver(report.id, at=NOW)
        advance_to_next_step(report.id, at=NOW)

        for _ in range(3):
            result = advance_to_next_step(report.id, at=NOW)
            assert result.status == STATUS_APPROVED
            assert result.step_order is None
            assert result.effective_user_id is None

    def test_rejected_report_refused(self, make_report):
        report = make_report(status=STATUS_REJECTED)
        with pytest.raises(ValidationError):
            advance_to_next_step(report.id, at=NOW)

    def test_draft_report_is_precondition_error(self, make_report):
        report = make_report()
        with pytest.raises(WorkflowStateError):
            advance_to_next_step(report.id, at=NOW)

    def test_delegation_evaluated_at_given_instant(self, three_step, rig_roles, make_report,
                                                   delegate):
        delegate(ROLE_HOLDERS["ds"], "ds-backup", NOW + DAY, NOW + 2 * DAY)
        report = make_report()
        route_first_approver(report.id, at=NOW)

        result = advance_to_next_step(report.id, at=NOW + DAY)
        assert result.effective_user_id == "ds-backup"
        assert result.nominal_user_id == ROLE_HOLDERS["ds"]


class TestRerouteStalledReports:
    def _stalled_at_step_two(self, three_step, assign, make_report):
        assign("toolpusher", ROLE_HOLDERS["toolpusher"])
        report = make_report()
        route_first_approver(report.id, at=NOW)
        advance_to_next_step(report.id, at=NOW)
        assert _reload(report.id).is_stalled
        return report.id

    def test_dry_run_writes_nothing(self, three_step, assign, make_report):
        report_id = self._stalled_at_step_two(three_step, assign, make_report)
        assign("ds", ROLE_HOLDERS["ds"])

        summary = reroute_stalled_reports(at=NOW, apply=False)
        assert summary["mode"] == "dry-run"
        assert summary["processed"] == 1
        assert summary["routed"] == 1
        assert _reload(report_id).current_approver_user_id is None

    def test_apply_routes_at_current_step(self, three_step, assign, make_report):
        report_id = self._stalled_at_step_two(three_step, assign, make_report)
        assign("ds", ROLE_HOLDERS["ds"])

        summary = reroute_stalled_reports(at=NOW, apply=True)
        assert summary["routed"] == 1
        assert summary["errors"] == 0
        stored = _reload(report_id)
        assert stored.current_step_order == 2
        assert stored.current_approver_user_id == ROLE_HOLDERS["ds"]

    def test_still_stalled_counted(self, three_step, assign, make_report):
        self._stalled_at_step_two(three_step, assign, make_report)
        summary = reroute_stalled_reports(at=NOW, apply=True)
        assert summary["still_stalled"] == 1
        assert summary["routed"] == 0

    def test_assigned_reports_untouched(self, three_step, rig_roles, make_report):
        report = make_report()
        route_first_approver(report.id, at=NOW)
        summary = reroute_stalled_reports(at=NOW, apply=True)
        assert summary["processed"] == 0
