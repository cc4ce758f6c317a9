"""
Approver resolution tests.

Covers:
  - role steps resolve through the active role assignment
  - user steps resolve to the named user
  - inactive / missing assignments leave the step unresolved
  - delegation window boundaries (inclusive), is_active, rig/role wildcards
  - most recently created delegation wins on overlap
  - delegation is a single hop
"""
from datetime import datetime, timedelta, timezone

from app.models.workflow import RoleApprover, UserApprover
from app.services.approver_resolver import UNRESOLVED, resolve_approver, resolve_nominal_user
from app.services.workflow_selector import StepSpec

from conftest import NOW, RIG

TOOLPUSHER_STEP = StepSpec(step_order=1, approver=RoleApprover("toolpusher"))
DS_STEP = StepSpec(step_order=2, approver=RoleApprover("ds"))
USER_STEP = StepSpec(step_order=3, approver=UserApprover("alice"))

DAY = timedelta(days=1)


class TestNominal:
    def test_role_step_uses_active_assignment(self, assign):
        assign("toolpusher", "john")
        assert resolve_nominal_user(TOOLPUSHER_STEP, RIG) == "john"

    def test_role_step_ignores_inactive_assignment(self, assign):
        assign("toolpusher", "old-john", is_active=False)
        assert resolve_nominal_user(TOOLPUSHER_STEP, RIG) is None

    def test_role_step_scoped_to_rig(self, assign):
        assign("toolpusher", "john", rig_id=7)
        assert resolve_nominal_user(TOOLPUSHER_STEP, RIG) is None

    def test_user_step_names_user_directly(self):
        assert resolve_nominal_user(USER_STEP, RIG) == "alice"


class TestResolveApprover:
    def test_no_delegation(self, assign):
        assign("toolpusher", "john")
        resolved = resolve_approver(TOOLPUSHER_STEP, RIG, NOW)
        assert resolved.nominal_user_id == "john"
        assert resolved.effective_user_id == "john"
        assert resolved.is_delegated is False

    def test_unresolved_when_no_assignment(self):
        resolved = resolve_approver(DS_STEP, RIG, NOW)
        assert resolved == UNRESOLVED
        assert resolved.resolved is False

    def test_active_delegation_applies(self, assign, delegate):
        assign("toolpusher", "john")
        d = delegate("john", "sarah", NOW - DAY, NOW + DAY, rig_id=RIG, role_key="toolpusher")

        resolved = resolve_approver(TOOLPUSHER_STEP, RIG, NOW)
        assert resolved.nominal_user_id == "john"
        assert resolved.effective_user_id == "sarah"
        assert resolved.delegated_from == "john"
        assert resolved.delegation_id == d.id

    def test_window_bounds_are_inclusive(self, assign, delegate):
        assign("toolpusher", "john")
        start, end = NOW, NOW + DAY
        delegate("john", "sarah", start, end)

        assert resolve_approver(TOOLPUSHER_STEP, RIG, start).effective_user_id == "sarah"
        assert resolve_approver(TOOLPUSHER_STEP, RIG, end).effective_user_id == "sarah"

    def test_outside_window_ignored(self, assign, delegate):
        assign("toolpusher", "john")
        delegate("john", "sarah", NOW + DAY, NOW + 2 * DAY)

        assert resolve_approver(TOOLPUSHER_STEP, RIG, NOW).effective_user_id == "john"
        after = NOW + 3 * DAY
        assert resolve_approver(TOOLPUSHER_STEP, RIG, after).effective_user_id == "john"

    def test_inactive_delegation_ignored(self, assign, delegate):
        assign("toolpusher", "john")
        delegate("john", "sarah", NOW - DAY, NOW + DAY, is_active=False)
        assert resolve_approver(TOOLPUSHER_STEP, RIG, NOW).effective_user_id == "john"

    def test_wildcard_rig_and_role(self, assign, delegate):
        assign("ds", "haitham")
        delegate("haitham", "omar", NOW - DAY, NOW + DAY, rig_id=None, role_key=None)
        assert resolve_approver(DS_STEP, RIG, NOW).effective_user_id == "omar"

    def test_delegation_for_other_rig_ignored(self, assign, delegate):
        assign("ds", "haitham")
        delegate("haitham", "omar", NOW - DAY, NOW + DAY, rig_id=RIG + 1)
        assert resolve_approver(DS_STEP, RIG, NOW).effective_user_id == "haitham"

    def test_delegation_for_other_role_ignored(self, assign, delegate):
        assign("ds", "haitham")
        delegate("haitham", "omar", NOW - DAY, NOW + DAY, role_key="toolpusher")
        assert resolve_approver(DS_STEP, RIG, NOW).effective_user_id == "haitham"

    def test_user_step_only_matches_role_wildcard(self, delegate):
        delegate("alice", "bob", NOW - DAY, NOW + DAY, role_key="ds")
        assert resolve_approver(USER_STEP, RIG, NOW).effective_user_id == "alice"

        delegate("alice", "carol", NOW - DAY, NOW + DAY, role_key=None)
        assert resolve_approver(USER_STEP, RIG, NOW).effective_user_id == "carol"

    def test_most_recent_overlapping_delegation_wins(self, assign, delegate):
        assign("toolpusher", "john")
        delegate("john", "sarah", NOW - DAY, NOW + DAY,
                 created_at=datetime(2024, 3, 1, tzinfo=timezone.utc))
        delegate("john", "mike", NOW - DAY, NOW + DAY,
                 created_at=datetime(2024, 3, 10, tzinfo=timezone.utc))

        assert resolve_approver(TOOLPUSHER_STEP, RIG, NOW).effective_user_id == "mike"

    def test_delegation_is_single_hop(self, assign, delegate):
        assign("toolpusher", "john")
        delegate("john", "sarah", NOW - DAY, NOW + DAY)
        delegate("sarah", "mike", NOW - DAY, NOW + DAY)

        resolved = resolve_approver(TOOLPUSHER_STEP, RIG, NOW)
        assert resolved.effective_user_id == "sarah"
        assert resolved.delegated_from == "john"

    def test_same_instant_gives_same_answer(self, assign, delegate):
        assign("toolpusher", "john")
        delegate("john", "sarah", NOW - DAY, NOW)

        first = resolve_approver(TOOLPUSHER_STEP, RIG, NOW)
        second = resolve_approver(TOOLPUSHER_STEP, RIG, NOW)
        assert first == second
