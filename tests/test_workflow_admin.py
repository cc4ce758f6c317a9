"""
Workflow administration service tests.

Covers:
  - workflow creation and active toggle
  - bulk step replacement and its validation
  - role assignment hand-over keeps one active holder
  - delegation validation and deactivation
  - idempotent seeding of the global workflow
"""
from datetime import timedelta

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models.workflow import Delegation, RoleApprover, RoleAssignment, WorkflowDefinition
from app.services import workflow_admin_service as was
from app.services.approver_resolver import resolve_nominal_user
from app.services.workflow_selector import StepSpec, select_workflow

from conftest import NOW, RIG

DAY = timedelta(days=1)


class TestWorkflows:
    def test_create_and_list(self):
        wf = was.create_workflow("Rig chain", rig_id=RIG)
        assert wf["rig_id"] == RIG
        assert wf["is_global"] is False
        assert wf["steps"] == []

        assert [w["id"] for w in was.list_workflows(RIG)] == [wf["id"]]
        assert was.list_workflows(None) == []

    def test_name_required(self):
        with pytest.raises(ValidationError):
            was.create_workflow("   ")

    def test_deactivate(self):
        wf = was.create_workflow("Global chain")
        updated = was.set_workflow_active(wf["id"], False)
        assert updated["is_active"] is False

    def test_deactivate_unknown(self):
        with pytest.raises(NotFoundError):
            was.set_workflow_active(123, False)


class TestReplaceSteps:
    def test_replace_sorts_and_persists(self):
        wf = was.create_workflow("Rig chain", rig_id=RIG)
        result = was.replace_steps(wf["id"], [
            {"step_order": 2, "approver_type": "user", "user_id": "rig-manager"},
            {"step_order": 1, "approver_type": "role", "role_key": "toolpusher"},
        ])
        assert [s["step_order"] for s in result["steps"]] == [1, 2]
        assert result["steps"][0]["role_label"] == "Tool Pusher"

        selected = select_workflow(RIG)
        assert [s.step_order for s in selected.steps] == [1, 2]

    def test_replace_swaps_existing_steps(self):
        wf = was.create_workflow("Rig chain", rig_id=RIG)
        was.replace_steps(wf["id"], [{"step_order": 1, "approver_type": "role", "role_key": "ds"}])
        result = was.replace_steps(wf["id"], [
            {"step_order": 1, "approver_type": "role", "role_key": "ose"},
        ])
        assert [s["role_key"] for s in result["steps"]] == ["ose"]

    @pytest.mark.parametrize("step", [
        {"step_order": 0, "approver_type": "role", "role_key": "ds"},
        {"step_order": "x", "approver_type": "role", "role_key": "ds"},
        {"step_order": 1, "approver_type": "group", "role_key": "ds"},
        {"step_order": 1, "approver_type": "role"},
        {"step_order": 1, "approver_type": "user"},
    ])
    def test_invalid_step(self, step):
        wf = was.create_workflow("Rig chain", rig_id=RIG)
        with pytest.raises(ValidationError):
            was.replace_steps(wf["id"], [step])

    def test_duplicate_orders_rejected(self):
        wf = was.create_workflow("Rig chain", rig_id=RIG)
        with pytest.raises(ValidationError):
            was.replace_steps(wf["id"], [
                {"step_order": 1, "approver_type": "role", "role_key": "ds"},
                {"step_order": 1, "approver_type": "role", "role_key": "ose"},
            ])

    def test_role_step_drops_stray_user(self):
        wf = was.create_workflow("Rig chain", rig_id=RIG)
        result = was.replace_steps(wf["id"], [
            {"step_order": 1, "approver_type": "role", "role_key": "ds", "user_id": "someone"},
        ])
        assert result["steps"][0]["user_id"] is None


class TestRoleAssignments:
    def test_assign_replaces_previous_holder(self):
        was.assign_role(RIG, "toolpusher", "john")
        was.assign_role(RIG, "toolpusher", "mike")

        rows = RoleAssignment.query.filter_by(rig_id=RIG, role_key="toolpusher").all()
        assert len(rows) == 2
        assert [r.user_id for r in rows if r.is_active] == ["mike"]

        step = StepSpec(step_order=1, approver=RoleApprover("toolpusher"))
        assert resolve_nominal_user(step, RIG) == "mike"

    def test_listing(self):
        was.assign_role(RIG, "ds", "haitham")
        listing = was.list_role_assignments(RIG)
        assert [i["user_id"] for i in listing["items"]] == ["haitham"]
        assert "ose" in listing["role_keys"]

    def test_user_required(self):
        with pytest.raises(ValidationError):
            was.assign_role(RIG, "ds", " ")


class TestDelegations:
    def test_create_and_deactivate(self):
        d = was.create_delegation("john", "sarah", NOW, NOW + DAY, role_key="toolpusher")
        assert d["is_active"] is True
        assert d["rig_id"] is None

        assert len(was.list_delegations(active_only=True)) == 1
        was.deactivate_delegation(d["id"])
        assert was.list_delegations(active_only=True) == []
        assert len(was.list_delegations()) == 1

    def test_self_delegation_rejected(self):
        with pytest.raises(ValidationError):
            was.create_delegation("john", "john", NOW, NOW + DAY)

    def test_inverted_window_rejected(self):
        with pytest.raises(ValidationError):
            was.create_delegation("john", "sarah", NOW + DAY, NOW)

    def test_missing_fields_rejected(self):
        with pytest.raises(ValidationError) as exc:
            was.create_delegation("", "sarah", None, NOW)
        assert "delegator_user_id" in exc.value.details
        assert "starts_at" in exc.value.details

    def test_deactivate_unknown(self):
        with pytest.raises(NotFoundError):
            was.deactivate_delegation(77)


class TestSeed:
    HOLDERS = {"toolpusher": "john", "e_maintenance": "sarah", "ds": "haitham", "ose": "pme"}

    def test_seed_is_idempotent(self):
        delegation = {
            "delegator_user_id": "john",
            "delegate_user_id": "sarah",
            "starts_at": NOW,
            "ends_at": NOW + 7 * DAY,
            "role_key": "toolpusher",
        }
        first = was.seed_default_workflow(RIG, self.HOLDERS, delegation)
        assert first["global_workflow_created"] is True
        assert first["steps_created"] == 4
        assert first["role_assignments_created"] == 4
        assert first["delegation_created"] is True

        second = was.seed_default_workflow(RIG, self.HOLDERS, delegation)
        assert second == {
            "global_workflow_created": False,
            "steps_created": 0,
            "role_assignments_created": 0,
            "delegation_created": False,
        }
        assert WorkflowDefinition.query.count() == 1
        assert Delegation.query.count() == 1

    def test_seeded_workflow_is_global_four_step(self):
        was.seed_default_workflow()
        selected = select_workflow(RIG)
        assert [s.role_key for s in selected.steps] == ["toolpusher", "e_maintenance", "ds", "ose"]
