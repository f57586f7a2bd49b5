"""
Approval flow instantiation tests.

Tests cover:
  - create_flow: matrix selection, steps per (level, org, role), level 1 active
  - Unresolved levels are flagged and stall the flow
  - Alternate vs. parallel vs. required level semantics on the created steps
  - Duplicate transactions, missing matrix
  - preview_flow and reresolve_step
  - StepPendingApproval notifications for activated candidates
"""
from datetime import datetime, timedelta, timezone

import pytest

import app.services.approval_flow_service as flow_svc
import app.services.matrix_service as matrix_svc
import app.services.role_inheritance_service as role_svc
from app.core.exceptions import ConflictError, NoApplicableMatrix
from app.models.notification import Notification

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _create(tenant_id, routing, tx="TX-1", amount=300_000, category="EQUIPMENT", **kw):
    return flow_svc.create_flow(
        tenant_id, tx, routing["orgs"]["department"]["id"], amount, category,
        requester_user_id=routing["users"]["requester"], now=T0, **kw,
    )


class TestCreateFlow:
    def test_two_level_equipment_flow(self, tenant_id, routing):
        flow = _create(tenant_id, routing)

        assert flow["status"] == "IN_PROGRESS"
        assert flow["matrix_id"] == routing["matrix"]["id"]
        assert flow["current_level_order"] == 1
        assert flow["unresolved_levels"] == []
        assert [s["level_order"] for s in flow["steps"]] == [1, 2]

        level1, level2 = flow["steps"]
        assert level1["resolved_organization_id"] == routing["orgs"]["department"]["id"]
        assert level1["candidate_user_ids"] == [routing["users"]["dept_head"]]
        assert level2["resolved_organization_id"] == routing["orgs"]["parish"]["id"]
        assert level2["candidate_user_ids"] == [routing["users"]["parish_head"]]

    def test_only_first_level_is_activated(self, tenant_id, routing):
        flow = _create(tenant_id, routing)
        level1, level2 = flow["steps"]
        assert level1["activated_at"] is not None
        assert datetime.fromisoformat(level1["due_at"]).replace(tzinfo=timezone.utc) == (
            T0 + timedelta(hours=24))
        assert level2["activated_at"] is None
        assert level2["due_at"] is None

    def test_candidates_notified_on_activation(self, tenant_id, routing):
        flow = _create(tenant_id, routing)
        notes = Notification.query.filter_by(event_type="step_pending").all()
        assert [n.recipient_user_id for n in notes] == [routing["users"]["dept_head"]]
        assert notes[0].entity_id == flow["steps"][0]["id"]

    def test_duplicate_transaction_conflicts(self, tenant_id, routing):
        _create(tenant_id, routing)
        with pytest.raises(ConflictError):
            _create(tenant_id, routing)

    def test_no_matrix_for_amount(self, tenant_id, routing):
        with pytest.raises(NoApplicableMatrix):
            _create(tenant_id, routing, amount=50)

    def test_resolution_frozen_at_creation(self, tenant_id, routing, make_user):
        flow = _create(tenant_id, routing)
        late = make_user("Late Parish Head")
        role_svc.add_membership(tenant_id, routing["orgs"]["parish"]["id"], late,
                                routing["roles"]["Parish Head"]["id"])
        status = flow_svc.get_flow_status(tenant_id, flow["id"], now=T0)
        assert status["steps"][1]["candidate_user_ids"] == [routing["users"]["parish_head"]]


class TestLevelSemantics:
    def _matrix(self, tenant_id, **level):
        base = {"required_roles": ["Department Head", "Deputy Head"],
                "organization_level_mode": "SAME"}
        base.update(level)
        matrix_svc.create_matrix(tenant_id, {
            "name": "Supplies", "category": "SUPPLIES", "max_amount": 1000, "levels": [base],
        })

    def test_alternates(self, tenant_id, routing):
        self._matrix(tenant_id, is_required=False)
        flow = _create(tenant_id, routing, amount=100, category="SUPPLIES")
        assert len(flow["steps"]) == 2
        assert all(not s["is_required"] for s in flow["steps"])
        assert {s["required_role_name"] for s in flow["steps"]} == {"Department Head", "Deputy Head"}

    def test_required_roles_each_mandatory(self, tenant_id, routing):
        self._matrix(tenant_id, is_required=True)
        flow = _create(tenant_id, routing, amount=100, category="SUPPLIES")
        assert all(s["is_required"] for s in flow["steps"])
        assert all(not s["is_parallel_group"] for s in flow["steps"])

    def test_parallel_group(self, tenant_id, routing):
        self._matrix(tenant_id, is_required=True, is_parallel=True)
        flow = _create(tenant_id, routing, amount=100, category="SUPPLIES")
        assert all(s["is_parallel_group"] and s["is_required"] for s in flow["steps"])


class TestUnresolved:
    def test_missing_holder_flags_level(self, tenant_id, routing):
        matrix_svc.create_matrix(tenant_id, {
            "name": "Large", "category": "EQUIPMENT", "min_amount": 500001, "levels": [
                {"required_roles": ["Department Head"]},
                {"required_roles": ["Facilities Chair"], "organization_level_mode": "ROOT"},
            ],
        })
        flow = _create(tenant_id, routing, amount=600_000)
        assert flow["unresolved_levels"] == [2]
        step = flow["steps"][1]
        assert step["is_unresolved"] is True
        assert step["candidate_user_ids"] == []
        assert step["resolved_organization_id"] == routing["orgs"]["church"]["id"]

    def test_leadership_only_approvers(self, app, monkeypatch, tenant_id, routing):
        from app.models import db
        from app.models.organization import OrganizationRole

        monkeypatch.setitem(app.config, "APPROVAL_LEADERSHIP_ONLY", True)
        flow = _create(tenant_id, routing)
        assert flow["unresolved_levels"] == [1, 2]

        role = db.session.get(OrganizationRole, routing["roles"]["Department Head"]["id"])
        role.is_leadership = True
        db.session.commit()
        step = flow_svc.reresolve_step(tenant_id, flow["steps"][0]["id"], now=T0)
        assert step["candidate_user_ids"] == [routing["users"]["dept_head"]]

    def test_reresolve_after_membership_fix(self, tenant_id, routing, make_user):
        role = role_svc.create_role(tenant_id, {"name": "Facilities Chair"})
        matrix_svc.create_matrix(tenant_id, {
            "name": "Facilities", "category": "FACILITIES", "levels": [
                {"required_roles": ["Facilities Chair"], "organization_level_mode": "ROOT"},
            ],
        })
        flow = _create(tenant_id, routing, category="FACILITIES")
        step_id = flow["steps"][0]["id"]
        assert flow["unresolved_levels"] == [1]

        chair = make_user("Chair")
        church_id = routing["orgs"]["church"]["id"]
        role_svc.assign_role(tenant_id, church_id, role["id"])
        role_svc.add_membership(tenant_id, church_id, chair, role["id"])

        step = flow_svc.reresolve_step(tenant_id, step_id, now=T0)
        assert step["candidate_user_ids"] == [chair]
        assert step["is_unresolved"] is False
        status = flow_svc.get_flow_status(tenant_id, flow["id"], now=T0)
        assert status["unresolved_levels"] == []
        notes = Notification.query.filter_by(recipient_user_id=chair).all()
        assert len(notes) == 1


class TestPreview:
    def test_preview_does_not_persist(self, tenant_id, routing):
        preview = flow_svc.preview_flow(
            tenant_id, routing["orgs"]["department"]["id"], 300_000, "EQUIPMENT")
        assert preview["matrix"]["id"] == routing["matrix"]["id"]
        assert [lvl["level_order"] for lvl in preview["levels"]] == [1, 2]
        assert preview["estimated_days"] == 3
        assert preview["warnings"] == []
        assert flow_svc.get_my_requests(tenant_id, routing["users"]["requester"]) == []

    def test_preview_warnings(self, tenant_id, routing):
        matrix_svc.create_matrix(tenant_id, {
            "name": "Event", "category": "EVENT", "levels": [
                {"required_roles": ["Department Head"], "timeout_hours": 100},
                {"required_roles": ["Department Head"], "timeout_hours": 100},
                {"required_roles": ["Treasurer"], "timeout_hours": 24},
            ],
        })
        preview = flow_svc.preview_flow(
            tenant_id, routing["orgs"]["department"]["id"], 10, "EVENT")
        assert preview["unresolved_levels"] == [3]
        assert preview["estimated_days"] == 10
        assert preview["duplicate_approver_ids"] == [routing["users"]["dept_head"]]
        assert len(preview["warnings"]) == 3
