"""
Organization & role API tests.

Tests cover:
  - tenant_id requirement and JSON error bodies
  - Organization CRUD, tree, move / promote / deactivate, validate
  - Role catalogue, assignment cascade, unassign, bulk, stats, holders, members
"""
import pytest


def _post_org(client, tenant_id, code, name, parent_id=None, **extra):
    payload = {"tenant_id": tenant_id, "code": code, "name": name, **extra}
    if parent_id is not None:
        payload["parent_id"] = parent_id
    return client.post("/api/v1/organizations", json=payload)


@pytest.fixture()
def api_tree(client, tenant_id):
    root = _post_org(client, tenant_id, "CH", "Church").get_json()
    committee = _post_org(client, tenant_id, "CM", "Committee", root["id"]).get_json()
    parish = _post_org(client, tenant_id, "PA", "Parish", committee["id"]).get_json()
    return {"root": root, "committee": committee, "parish": parish}


class TestOrganizationAPI:
    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_tenant_required(self, client):
        res = client.get("/api/v1/organizations")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_create_and_get(self, client, tenant_id, api_tree):
        res = client.get(f"/api/v1/organizations/{api_tree['parish']['id']}?tenant_id={tenant_id}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["level"] == 3
        assert [a["code"] for a in data["ancestors"]] == ["CM", "CH"]
        assert data["children"] == []

    def test_create_missing_fields(self, client, tenant_id):
        res = client.post("/api/v1/organizations", json={"tenant_id": tenant_id, "name": "X"})
        assert res.status_code == 400

    def test_structural_violation_is_422(self, client, tenant_id, api_tree):
        res = _post_org(client, tenant_id, "BAD", "Bad", api_tree["root"]["id"], level=3)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ORG_STRUCTURAL_VIOLATION"

    def test_duplicate_code_is_409(self, client, tenant_id, api_tree):
        res = _post_org(client, tenant_id, "CH", "Again")
        assert res.status_code == 409

    def test_unknown_org_is_404(self, client, tenant_id):
        res = client.get(f"/api/v1/organizations/9999?tenant_id={tenant_id}")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_tree_and_list(self, client, tenant_id, api_tree):
        res = client.get(f"/api/v1/organizations/tree?tenant_id={tenant_id}")
        tree = res.get_json()["tree"]
        assert tree[0]["children"][0]["children"][0]["code"] == "PA"
        res = client.get(f"/api/v1/organizations?tenant_id={tenant_id}&level=2")
        assert res.get_json()["total"] == 1

    def test_move_and_promote(self, client, tenant_id, api_tree):
        other = _post_org(client, tenant_id, "CH2", "Second Church").get_json()
        res = client.post(f"/api/v1/organizations/{api_tree['committee']['id']}/move",
                          json={"tenant_id": tenant_id, "new_parent_id": other["id"], "new_level": 2})
        assert res.status_code == 200
        assert res.get_json()["organization"]["parent_id"] == other["id"]

        res = client.post(f"/api/v1/organizations/{api_tree['parish']['id']}/promote",
                          json={"tenant_id": tenant_id})
        assert res.status_code == 200
        assert res.get_json()["organization"]["level"] == 1

        res = client.get(f"/api/v1/organizations/validate?tenant_id={tenant_id}")
        assert res.get_json() == {"valid": True, "violations": []}

    def test_move_requires_new_level(self, client, tenant_id, api_tree):
        res = client.post(f"/api/v1/organizations/{api_tree['parish']['id']}/move",
                          json={"tenant_id": tenant_id, "new_parent_id": api_tree["committee"]["id"]})
        assert res.status_code == 400

    def test_deactivate(self, client, tenant_id, api_tree):
        res = client.post(f"/api/v1/organizations/{api_tree['parish']['id']}/deactivate",
                          json={"tenant_id": tenant_id})
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False

    def test_non_json_body_rejected(self, client, tenant_id):
        res = client.post(f"/api/v1/organizations?tenant_id={tenant_id}", data="code=X",
                          content_type="text/plain")
        assert res.status_code == 415


class TestRoleAPI:
    @pytest.fixture()
    def role(self, client, tenant_id):
        res = client.post("/api/v1/roles", json={"tenant_id": tenant_id, "name": "Accountant",
                                                 "rank": 10})
        assert res.status_code == 201
        return res.get_json()

    def test_list_roles(self, client, tenant_id, role):
        res = client.get(f"/api/v1/roles?tenant_id={tenant_id}")
        assert res.get_json()["items"][0]["name"] == "Accountant"

    def test_assign_cascades(self, client, tenant_id, api_tree, role):
        res = client.post(f"/api/v1/organizations/{api_tree['root']['id']}/roles",
                          json={"tenant_id": tenant_id, "role_id": role["id"]})
        assert res.status_code == 201
        body = res.get_json()
        assert body["cascaded"] == 2
        assert body["assignment"]["state"] == "DIRECT"

        res = client.get(f"/api/v1/organizations/{api_tree['parish']['id']}/roles?tenant_id={tenant_id}")
        items = res.get_json()["items"]
        assert items[0]["is_inherited"] is True
        assert items[0]["inherited_from_organization_id"] == api_tree["root"]["id"]

    def test_unassign(self, client, tenant_id, api_tree, role):
        client.post(f"/api/v1/organizations/{api_tree['root']['id']}/roles",
                    json={"tenant_id": tenant_id, "role_id": role["id"]})
        res = client.delete(
            f"/api/v1/organizations/{api_tree['root']['id']}/roles/{role['id']}?tenant_id={tenant_id}")
        assert res.status_code == 200
        assert res.get_json()["removed_inherited"] == 2

        res = client.delete(
            f"/api/v1/organizations/{api_tree['root']['id']}/roles/{role['id']}?tenant_id={tenant_id}")
        assert res.status_code == 404

    def test_bulk_and_stats(self, client, tenant_id, api_tree, role):
        other = client.post("/api/v1/roles", json={"tenant_id": tenant_id,
                                                   "name": "Senior Pastor",
                                                   "is_leadership": True}).get_json()
        res = client.post(f"/api/v1/organizations/{api_tree['committee']['id']}/roles/bulk",
                          json={"tenant_id": tenant_id, "role_ids": [role["id"], other["id"]]})
        assert res.status_code == 200
        assert res.get_json()["assigned"] == [role["id"], other["id"]]

        res = client.get(
            f"/api/v1/organizations/{api_tree['parish']['id']}/roles/stats?tenant_id={tenant_id}")
        stats = res.get_json()
        assert stats["inherited"] == 2
        assert stats["leadership"] == 1

    def test_members_and_holders(self, client, tenant_id, api_tree, role, make_user):
        user = make_user("Acct")
        client.post(f"/api/v1/organizations/{api_tree['root']['id']}/roles",
                    json={"tenant_id": tenant_id, "role_id": role["id"]})
        res = client.post(f"/api/v1/organizations/{api_tree['root']['id']}/members",
                          json={"tenant_id": tenant_id, "user_id": user, "role_id": role["id"]})
        assert res.status_code == 201

        res = client.get(f"/api/v1/organizations/{api_tree['parish']['id']}/roles/holders"
                         f"?tenant_id={tenant_id}&role_name=Accountant")
        assert res.get_json()["user_ids"] == [user]

        res = client.delete(f"/api/v1/organizations/{api_tree['root']['id']}/members"
                            f"?tenant_id={tenant_id}&user_id={user}&role_id={role['id']}")
        assert res.status_code == 200
        res = client.get(f"/api/v1/organizations/{api_tree['parish']['id']}/roles/holders"
                         f"?tenant_id={tenant_id}&role_name=Accountant")
        assert res.get_json()["user_ids"] == []

    def test_unknown_role_is_404(self, client, tenant_id, api_tree):
        res = client.post(f"/api/v1/organizations/{api_tree['root']['id']}/roles",
                          json={"tenant_id": tenant_id, "role_id": 999})
        assert res.status_code == 404

    def test_malformed_role_ids_are_422(self, client, tenant_id, api_tree, role):
        res = client.post(f"/api/v1/organizations/{api_tree['root']['id']}/roles/bulk",
                          json={"tenant_id": tenant_id, "role_ids": [role["id"], "a"]})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"

        res = client.post(f"/api/v1/organizations/{api_tree['root']['id']}/roles",
                          json={"tenant_id": tenant_id, "role_id": "accountant"})
        assert res.status_code == 422

        res = client.get(f"/api/v1/organizations/{api_tree['root']['id']}/roles?tenant_id={tenant_id}")
        assert res.get_json()["items"] == []
