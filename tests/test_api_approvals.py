"""
Approval API tests.

Tests cover:
  - Matrix CRUD, seed, escalation rules
  - Flow preview / create / status / cancel
  - Step decisions with conflict bodies that echo the caller's comments
  - Pending steps, requester listing, stats, notifications
"""
import pytest


@pytest.fixture()
def api_flow(client, tenant_id, routing):
    res = client.post("/api/v1/approval-flows", json={
        "tenant_id": tenant_id,
        "transaction_id": "TX-API-1",
        "organization_id": routing["orgs"]["department"]["id"],
        "amount": 300000,
        "category": "EQUIPMENT",
        "requester_user_id": routing["users"]["requester"],
    })
    assert res.status_code == 201
    return res.get_json()


def _decide(client, tenant_id, step_id, user_id, action="APPROVE", comments=None):
    return client.post(f"/api/v1/approval-steps/{step_id}/decide", json={
        "tenant_id": tenant_id,
        "approver_user_id": user_id,
        "action": action,
        "comments": comments,
    })


class TestMatrixAPI:
    def test_create_and_list(self, client, tenant_id):
        res = client.post("/api/v1/approval-matrices", json={
            "tenant_id": tenant_id,
            "name": "Supplies",
            "category": "SUPPLIES",
            "max_amount": 1000,
            "levels": [{"required_roles": ["Department Head"]}],
        })
        assert res.status_code == 201
        matrix = res.get_json()

        res = client.get(f"/api/v1/approval-matrices?tenant_id={tenant_id}&category=supplies")
        assert [m["id"] for m in res.get_json()["items"]] == [matrix["id"]]

        res = client.get(f"/api/v1/approval-matrices/{matrix['id']}?tenant_id={tenant_id}")
        assert res.status_code == 200
        assert res.get_json()["levels"][0]["required_roles"] == ["Department Head"]

        res = client.post(f"/api/v1/approval-matrices/{matrix['id']}/deactivate",
                          json={"tenant_id": tenant_id})
        assert res.get_json()["is_active"] is False

    def test_invalid_category_is_422(self, client, tenant_id):
        res = client.post("/api/v1/approval-matrices", json={
            "tenant_id": tenant_id, "name": "X", "category": "TRAVEL",
            "levels": [{"required_roles": ["A"]}],
        })
        assert res.status_code == 422

    def test_seed(self, client, tenant_id):
        res = client.post("/api/v1/approval-matrices/seed", json={"tenant_id": tenant_id})
        assert res.status_code == 201
        assert res.get_json()["created"] > 0
        res = client.post("/api/v1/approval-matrices/seed", json={"tenant_id": tenant_id})
        assert res.status_code == 200
        assert res.get_json()["created"] == 0

    def test_escalation_rule(self, client, tenant_id):
        res = client.put("/api/v1/escalation-rules/EQUIPMENT",
                         json={"tenant_id": tenant_id, "on_timeout": "escalate"})
        assert res.status_code == 200
        assert res.get_json()["on_timeout"] == "escalate"

    @pytest.mark.parametrize("overrides", [
        {"levels": [{"required_roles": ["Department Head"], "timeout_hours": "two"}]},
        {"levels": [{"required_roles": ["Department Head"], "level_order": "x"}]},
        {"levels": [{"required_roles": [1]}]},
        {"levels": [{"required_roles": "Department Head"}]},
        {"levels": [{"required_roles": ["Department Head"], "organization_level_mode": 3}]},
        {"levels": ["Department Head"]},
        {"priority": "high"},
        {"max_amount": "NaN"},
        {"min_amount": "Infinity"},
        {"category": ["SUPPLIES"]},
    ])
    def test_malformed_matrix_is_422(self, client, tenant_id, overrides):
        payload = {
            "tenant_id": tenant_id,
            "name": "Supplies",
            "category": "SUPPLIES",
            "levels": [{"required_roles": ["Department Head"]}],
            **overrides,
        }
        res = client.post("/api/v1/approval-matrices", json=payload)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"
        res = client.get(f"/api/v1/approval-matrices?tenant_id={tenant_id}&include_inactive=true")
        assert res.get_json()["items"] == []

    @pytest.mark.parametrize("body", [
        {"on_timeout": "escalate", "max_escalations": "many"},
        {"on_timeout": "escalate", "max_escalations": -1},
        {"on_timeout": 5},
    ])
    def test_malformed_escalation_rule_is_422(self, client, tenant_id, body):
        res = client.put("/api/v1/escalation-rules/EQUIPMENT", json={"tenant_id": tenant_id, **body})
        assert res.status_code == 422


class TestFlowAPI:
    def test_preview(self, client, tenant_id, routing):
        res = client.post("/api/v1/approval-flows/preview", json={
            "tenant_id": tenant_id,
            "organization_id": routing["orgs"]["department"]["id"],
            "amount": 300000,
            "category": "EQUIPMENT",
        })
        assert res.status_code == 200
        assert res.get_json()["estimated_days"] == 3

    def test_no_matrix_is_422(self, client, tenant_id, routing):
        res = client.post("/api/v1/approval-flows", json={
            "tenant_id": tenant_id,
            "transaction_id": "TX-NONE",
            "organization_id": routing["orgs"]["department"]["id"],
            "amount": 10,
            "category": "EQUIPMENT",
        })
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "APPROVAL_NO_APPLICABLE_MATRIX"
        assert body["details"]["category"] == "EQUIPMENT"

    def test_missing_fields(self, client, tenant_id):
        res = client.post("/api/v1/approval-flows", json={"tenant_id": tenant_id})
        assert res.status_code == 400
        assert "transaction_id" in res.get_json()["details"]["missing"]

    def test_duplicate_transaction_is_409(self, client, tenant_id, routing, api_flow):
        res = client.post("/api/v1/approval-flows", json={
            "tenant_id": tenant_id,
            "transaction_id": "TX-API-1",
            "organization_id": routing["orgs"]["department"]["id"],
            "amount": 300000,
            "category": "EQUIPMENT",
        })
        assert res.status_code == 409

    def test_get_status_and_by_transaction(self, client, tenant_id, api_flow):
        res = client.get(f"/api/v1/approval-flows/{api_flow['id']}?tenant_id={tenant_id}")
        assert res.status_code == 200
        assert len(res.get_json()["steps"]) == 2
        res = client.get(f"/api/v1/approval-flows/by-transaction/TX-API-1?tenant_id={tenant_id}")
        assert res.get_json()["id"] == api_flow["id"]

    def test_my_requests(self, client, tenant_id, routing, api_flow):
        res = client.get(f"/api/v1/approval-flows?tenant_id={tenant_id}"
                         f"&requester_user_id={routing['users']['requester']}")
        assert [f["id"] for f in res.get_json()["items"]] == [api_flow["id"]]

    def test_cancel(self, client, tenant_id, api_flow):
        res = client.post(f"/api/v1/approval-flows/{api_flow['id']}/cancel",
                          json={"tenant_id": tenant_id, "reason": "Duplicate request"})
        assert res.get_json()["status"] == "CANCELLED"
        res = client.post(f"/api/v1/approval-flows/{api_flow['id']}/cancel",
                          json={"tenant_id": tenant_id})
        assert res.status_code == 409
        assert res.get_json()["code"] == "APPROVAL_FLOW_TERMINAL"

    @pytest.mark.parametrize("amount", ["NaN", "-Infinity", "lots", True])
    def test_malformed_amount_is_422(self, client, tenant_id, routing, amount):
        res = client.post("/api/v1/approval-flows", json={
            "tenant_id": tenant_id,
            "transaction_id": "TX-BAD",
            "organization_id": routing["orgs"]["department"]["id"],
            "amount": amount,
            "category": "EQUIPMENT",
        })
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"

    def test_malformed_organization_id_is_422(self, client, tenant_id):
        res = client.post("/api/v1/approval-flows/preview", json={
            "tenant_id": tenant_id, "organization_id": "dept", "amount": 10, "category": "EQUIPMENT",
        })
        assert res.status_code == 422


class TestDecisionAPI:
    def test_full_approval_via_api(self, client, tenant_id, routing, api_flow):
        step1, step2 = api_flow["steps"]
        res = _decide(client, tenant_id, step1["id"], routing["users"]["dept_head"])
        assert res.status_code == 200
        assert res.get_json()["current_level_order"] == 2
        res = _decide(client, tenant_id, step2["id"], routing["users"]["parish_head"])
        assert res.get_json()["status"] == "APPROVED"

    def test_second_decision_conflict_echoes_comments(self, client, tenant_id, routing, api_flow):
        step1 = api_flow["steps"][0]
        _decide(client, tenant_id, step1["id"], routing["users"]["dept_head"])
        res = _decide(client, tenant_id, step1["id"], routing["users"]["dept_head"],
                      "REJECT", "my notes")
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "APPROVAL_STEP_ALREADY_DECIDED"
        assert body["details"]["comments"] == "my notes"
        assert body["details"]["current_status"] == "APPROVED"

    def test_non_candidate_is_403(self, client, tenant_id, routing, api_flow):
        res = _decide(client, tenant_id, api_flow["steps"][0]["id"], routing["users"]["outsider"])
        assert res.status_code == 403

    def test_decision_requires_action(self, client, tenant_id, routing, api_flow):
        res = client.post(f"/api/v1/approval-steps/{api_flow['steps'][0]['id']}/decide",
                          json={"tenant_id": tenant_id,
                                "approver_user_id": routing["users"]["dept_head"]})
        assert res.status_code == 400

    def test_pending_and_notifications(self, client, tenant_id, routing, api_flow):
        user = routing["users"]["dept_head"]
        res = client.get(f"/api/v1/approval-steps/pending?user_id={user}")
        assert res.get_json()["total"] == 1

        res = client.get(f"/api/v1/notifications?user_id={user}")
        body = res.get_json()
        assert body["unread_count"] == 1
        assert body["items"][0]["event_type"] == "step_pending"

        res = client.post("/api/v1/notifications/mark-read", json={"user_id": user})
        assert res.get_json()["marked"] == 1
        res = client.get(f"/api/v1/notifications?user_id={user}&unread_only=true")
        assert res.get_json() == {"items": [], "unread_count": 0}

    def test_pending_requires_user(self, client):
        assert client.get("/api/v1/approval-steps/pending").status_code == 400

    def test_stats(self, client, tenant_id, routing, api_flow):
        step1, step2 = api_flow["steps"]
        _decide(client, tenant_id, step1["id"], routing["users"]["dept_head"])
        _decide(client, tenant_id, step2["id"], routing["users"]["parish_head"])
        res = client.get(f"/api/v1/approval-stats?tenant_id={tenant_id}")
        stats = res.get_json()
        assert stats["total"] == 1
        assert stats["by_status"]["APPROVED"] == 1
        assert stats["approval_rate"] == 100.0
