"""
Approval step state machine tests.

Tests cover:
  - The EQUIPMENT scenario: approve level 1 → level 2 active; reject level 2 → flow REJECTED
  - Full approval, FlowApproved / FlowRejected notifications
  - Alternates (one approval skips siblings) and parallel groups
  - Guards: unknown action, inactive level, non-candidate, unresolved step
  - Terminal immutability and cancel
  - Concurrent decisions: exactly one winner, the loser gets StepAlreadyDecided
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import update

import app.services.approval_flow_service as flow_svc
import app.services.matrix_service as matrix_svc
from app.core.exceptions import (
    FlowAlreadyTerminal,
    PermissionDeniedError,
    StepAlreadyDecided,
    UnresolvedApprover,
    ValidationError,
)
from app.models import db
from app.models.approval import (
    ApprovalStep,
    validate_flow_transition,
    validate_step_transition,
)
from app.models.notification import Notification
from app.services import approval_events

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def flow(tenant_id, routing):
    return flow_svc.create_flow(
        tenant_id, "TX-EQ-1", routing["orgs"]["department"]["id"], 300_000, "EQUIPMENT",
        requester_user_id=routing["users"]["requester"], now=T0,
    )


def _decide(tenant_id, step, user_id, action="APPROVE", comments=None):
    return flow_svc.process_decision(tenant_id, step["id"], user_id, action, comments, now=T0)


class TestTransitionMaps:
    def test_step_transitions(self):
        assert validate_step_transition("PENDING", "APPROVED")
        assert validate_step_transition("PENDING", "TIMED_OUT")
        assert not validate_step_transition("APPROVED", "REJECTED")
        assert not validate_step_transition("SKIPPED", "PENDING")

    def test_flow_transitions(self):
        assert validate_flow_transition("IN_PROGRESS", "CANCELLED")
        assert not validate_flow_transition("APPROVED", "IN_PROGRESS")
        assert not validate_flow_transition("REJECTED", "APPROVED")


# ═════════════════════════════════════════════════════════════════════════
# EQUIPMENT SCENARIO
# ═════════════════════════════════════════════════════════════════════════

class TestEquipmentScenario:
    def test_approve_level_one_advances(self, tenant_id, routing, flow):
        after = _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"], comments="ok")

        assert after["status"] == "IN_PROGRESS"
        assert after["current_level_order"] == 2
        level1, level2 = after["steps"]
        assert level1["status"] == "APPROVED"
        assert level1["approver_user_id"] == routing["users"]["dept_head"]
        assert level1["comments"] == "ok"
        assert level2["activated_at"] is not None

    def test_reject_level_two_rejects_flow(self, tenant_id, routing, flow):
        _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"])
        after = _decide(tenant_id, flow["steps"][1], routing["users"]["parish_head"],
                        "REJECT", "Over budget")

        assert after["status"] == "REJECTED"
        assert after["rejection_reason"] == "Over budget"
        assert after["completed_at"] is not None
        assert len(after["steps"]) == 2
        assert ApprovalStep.query.filter_by(flow_id=flow["id"]).count() == 2

        note = Notification.query.filter_by(event_type="flow_rejected").one()
        assert note.recipient_user_id == routing["users"]["requester"]

    def test_full_approval(self, tenant_id, routing, flow):
        _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"])
        after = _decide(tenant_id, flow["steps"][1], routing["users"]["parish_head"], "approve")

        assert after["status"] == "APPROVED"
        assert after["current_level_order"] == 2
        assert Notification.query.filter_by(event_type="flow_approved").count() == 1

    def test_reject_without_comments_uses_default_reason(self, tenant_id, routing, flow):
        after = _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"], "REJECT")
        assert after["rejection_reason"] == "Rejected"
        assert after["steps"][1]["status"] == "SKIPPED"


# ═════════════════════════════════════════════════════════════════════════
# GUARDS
# ═════════════════════════════════════════════════════════════════════════

class TestGuards:
    def test_unknown_action(self, tenant_id, routing, flow):
        with pytest.raises(ValidationError):
            _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"], "MAYBE")

    def test_non_candidate_denied(self, tenant_id, routing, flow):
        with pytest.raises(PermissionDeniedError):
            _decide(tenant_id, flow["steps"][0], routing["users"]["outsider"])

    def test_inactive_level_rejected(self, tenant_id, routing, flow):
        with pytest.raises(ValidationError):
            _decide(tenant_id, flow["steps"][1], routing["users"]["parish_head"])

    def test_unresolved_step(self, tenant_id, routing):
        matrix_svc.create_matrix(tenant_id, {
            "name": "Facilities", "category": "FACILITIES",
            "levels": [{"required_roles": ["Facilities Chair"]}],
        })
        created = flow_svc.create_flow(
            tenant_id, "TX-F", routing["orgs"]["department"]["id"], 10, "FACILITIES", now=T0)
        with pytest.raises(UnresolvedApprover) as exc:
            _decide(tenant_id, created["steps"][0], routing["users"]["dept_head"])
        assert exc.value.role_name == "Facilities Chair"

    def test_other_tenant_cannot_see_step(self, routing, flow):
        from app.core.exceptions import NotFoundError
        from app.models.auth import Tenant
        other = Tenant(name="Other", slug="other")
        db.session.add(other)
        db.session.commit()
        with pytest.raises(NotFoundError):
            _decide(other.id, flow["steps"][0], routing["users"]["dept_head"])


# ═════════════════════════════════════════════════════════════════════════
# TERMINAL STATES
# ═════════════════════════════════════════════════════════════════════════

class TestTerminal:
    def test_decided_step_rejects_second_decision(self, tenant_id, routing, flow):
        _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"])
        with pytest.raises(StepAlreadyDecided) as exc:
            _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"], "REJECT", "late")
        assert exc.value.current_status == "APPROVED"
        assert exc.value.comments == "late"

    def test_terminal_flow_is_immutable(self, tenant_id, routing, flow):
        _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"], "REJECT")
        with pytest.raises(FlowAlreadyTerminal) as exc:
            _decide(tenant_id, flow["steps"][1], routing["users"]["parish_head"], comments="keep me")
        assert exc.value.current_status == "REJECTED"
        assert exc.value.comments == "keep me"
        with pytest.raises(FlowAlreadyTerminal):
            flow_svc.cancel_flow(tenant_id, flow["id"], now=T0)

    def test_cancel_skips_pending_steps(self, tenant_id, flow):
        after = flow_svc.cancel_flow(tenant_id, flow["id"], "Withdrawn", now=T0)
        assert after["status"] == "CANCELLED"
        assert after["rejection_reason"] == "Withdrawn"
        assert {s["status"] for s in after["steps"]} == {"SKIPPED"}


# ═════════════════════════════════════════════════════════════════════════
# ALTERNATES & PARALLEL
# ═════════════════════════════════════════════════════════════════════════

class TestMultiRoleLevels:
    def _flow(self, tenant_id, routing, **level):
        base = {"required_roles": ["Department Head", "Deputy Head"]}
        base.update(level)
        matrix_svc.create_matrix(tenant_id, {
            "name": "Supplies", "category": "SUPPLIES", "max_amount": 1000,
            "levels": [base, {"required_roles": ["Parish Head"], "organization_level_mode": "PARENT"}],
        })
        return flow_svc.create_flow(
            tenant_id, "TX-S", routing["orgs"]["department"]["id"], 100, "SUPPLIES", now=T0)

    def test_one_alternate_approval_satisfies_level(self, tenant_id, routing):
        created = self._flow(tenant_id, routing, is_required=False)
        head, deputy = created["steps"][0], created["steps"][1]
        after = _decide(tenant_id, deputy, routing["users"]["deputy"])

        by_id = {s["id"]: s for s in after["steps"]}
        assert by_id[deputy["id"]]["status"] == "APPROVED"
        assert by_id[head["id"]]["status"] == "SKIPPED"
        assert after["current_level_order"] == 2

    def test_alternate_rejection_waits_for_sibling(self, tenant_id, routing):
        created = self._flow(tenant_id, routing, is_required=False)
        head, deputy = created["steps"][0], created["steps"][1]

        after = _decide(tenant_id, head, routing["users"]["dept_head"], "REJECT")
        assert after["status"] == "IN_PROGRESS"
        after = _decide(tenant_id, deputy, routing["users"]["deputy"], "REJECT", "No")
        assert after["status"] == "REJECTED"
        assert after["rejection_reason"] == "No"

    def test_required_roles_need_every_approval(self, tenant_id, routing):
        created = self._flow(tenant_id, routing, is_required=True, is_parallel=True)
        head, deputy = created["steps"][0], created["steps"][1]

        after = _decide(tenant_id, head, routing["users"]["dept_head"])
        assert after["current_level_order"] == 1
        after = _decide(tenant_id, deputy, routing["users"]["deputy"])
        assert after["current_level_order"] == 2

    def test_flow_never_regresses(self, tenant_id, routing):
        created = self._flow(tenant_id, routing, is_required=False)
        after = _decide(tenant_id, created["steps"][0], routing["users"]["dept_head"])
        assert after["current_level_order"] == 2
        skipped = created["steps"][1]
        with pytest.raises(StepAlreadyDecided):
            _decide(tenant_id, skipped, routing["users"]["deputy"])
        status = flow_svc.get_flow_status(tenant_id, created["id"], now=T0)
        assert status["current_level_order"] == 2


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═════════════════════════════════════════════════════════════════════════

class TestConcurrentDecision:
    def test_losing_writer_gets_step_already_decided(self, tenant_id, routing, flow):
        step_id = flow["steps"][0]["id"]
        step = db.session.get(ApprovalStep, step_id)
        assert step.status == "PENDING"

        # Another writer decides the row; this session's copy stays PENDING
        db.session.execute(
            update(ApprovalStep)
            .where(ApprovalStep.id == step_id, ApprovalStep.status == "PENDING")
            .values(status="APPROVED", approver_user_id=routing["users"]["dept_head"])
            .execution_options(synchronize_session=False)
        )
        assert step.status == "PENDING"

        with pytest.raises(StepAlreadyDecided):
            flow_svc.process_decision(
                tenant_id, step_id, routing["users"]["dept_head"], "REJECT", "too late", now=T0)

    def test_exactly_one_of_two_decisions_wins(self, tenant_id, routing, flow):
        step = flow["steps"][0]
        outcomes = []
        for action in ("APPROVE", "REJECT"):
            try:
                _decide(tenant_id, step, routing["users"]["dept_head"], action)
                outcomes.append("ok")
            except StepAlreadyDecided:
                outcomes.append("conflict")
        assert outcomes == ["ok", "conflict"]
        assert db.session.get(ApprovalStep, step["id"]).status == "APPROVED"


# ═════════════════════════════════════════════════════════════════════════
# EVENTS
# ═════════════════════════════════════════════════════════════════════════

class TestEvents:
    def test_failing_listener_does_not_undo_decision(self, tenant_id, routing, flow, monkeypatch):
        def _boom(event):
            raise RuntimeError("listener down")

        monkeypatch.setitem(approval_events._listeners, approval_events.StepPendingApproval,
                            [_boom])
        after = _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"])
        assert after["current_level_order"] == 2
        assert db.session.get(ApprovalStep, flow["steps"][0]["id"]).status == "APPROVED"

    def test_custom_listener_receives_events(self, tenant_id, routing, flow, monkeypatch):
        received = []
        monkeypatch.setitem(approval_events._listeners, approval_events.FlowApproved,
                            [received.append])
        _decide(tenant_id, flow["steps"][0], routing["users"]["dept_head"])
        _decide(tenant_id, flow["steps"][1], routing["users"]["parish_head"])
        assert len(received) == 1
        assert received[0].transaction_id == "TX-EQ-1"
        assert received[0].requester_user_id == routing["users"]["requester"]
