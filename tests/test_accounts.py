from fastapi.testclient import TestClient

from specverse import accounts
from conftest import PASSWORD


def _member_id(client, admin, email):
    members = client.get(f"/api/accounts/{admin['accountId']}/members", headers=admin["headers"]).json()
    return next(m["memberId"] for m in members if m["email"] == email)


def test_create_account_makes_owner_admin(client: TestClient, admin):
    response = client.post("/api/accounts", json={"accountName": "Beta Plant Services"}, headers=admin["headers"])
    assert response.status_code == 201
    account = response.json()
    assert account["slug"] == "beta-plant-services"

    mine = client.get("/api/accounts", headers=admin["headers"]).json()
    assert [(a["accountName"], a["roleName"]) for a in mine] == [
        ("Acme Engineering", "Admin"), ("Beta Plant Services", "Admin")]


def test_slug_rules(client: TestClient, admin):
    response = client.post("/api/accounts", json={"accountName": "Acme", "slug": "Bad Slug!"},
                           headers=admin["headers"])
    assert response.status_code == 400
    response = client.post("/api/accounts", json={"accountName": "Acme Two", "slug": "acme-engineering"},
                           headers=admin["headers"])
    assert response.status_code == 409


def test_patch_account(client: TestClient, admin):
    response = client.patch(f"/api/accounts/{admin['accountId']}", json={"accountName": "Acme Eng Ltd"},
                            headers=admin["headers"])
    assert response.status_code == 200
    assert response.json()["accountName"] == "Acme Eng Ltd"

    logs = client.get("/api/audit-logs", params={"tableName": "Accounts"}, headers=admin["headers"]).json()
    actions = [row["action"] for row in logs["items"]]
    assert "account.updated" in actions


def test_account_routes_act_on_active_account_only(client: TestClient, admin):
    other = accounts.create_user("owner@beta.test", PASSWORD)
    beta = accounts.create_account("Beta", owner_user_id=other["userId"])
    assert client.get(f"/api/accounts/{beta['accountId']}", headers=admin["headers"]).status_code == 404
    response = client.patch(f"/api/accounts/{beta['accountId']}", json={"accountName": "Mine"},
                            headers=admin["headers"])
    assert response.status_code == 404


def test_member_role_change(client: TestClient, admin, add_member):
    add_member("eng@acme.test")
    member_id = _member_id(client, admin, "eng@acme.test")
    response = client.patch(f"/api/accounts/{admin['accountId']}/members/{member_id}/role",
                            json={"roleId": 2}, headers=admin["headers"])
    assert response.status_code == 200
    assert response.json()["roleId"] == 2

    bad = client.patch(f"/api/accounts/{admin['accountId']}/members/{member_id}/role",
                       json={"roleId": 9}, headers=admin["headers"])
    assert bad.status_code == 400


def test_last_admin_is_protected(client: TestClient, admin):
    member_id = _member_id(client, admin, "admin@acme.test")
    base = f"/api/accounts/{admin['accountId']}/members/{member_id}"
    assert client.patch(f"{base}/role", json={"roleId": 3}, headers=admin["headers"]).status_code == 409
    assert client.patch(f"{base}/status", json={"isActive": False}, headers=admin["headers"]).status_code == 409


def test_deactivated_member_loses_access(client: TestClient, admin, add_member):
    engineer = add_member("eng@acme.test")
    member_id = _member_id(client, admin, "eng@acme.test")
    response = client.patch(f"/api/accounts/{admin['accountId']}/members/{member_id}/status",
                            json={"isActive": False}, headers=admin["headers"])
    assert response.json()["isActive"] is False

    response = client.get("/api/templates", headers=engineer["headers"])
    assert response.status_code == 403


def test_engineer_cannot_manage_members(client: TestClient, admin, add_member):
    engineer = add_member("eng@acme.test")
    member_id = _member_id(client, admin, "admin@acme.test")
    response = client.patch(f"/api/accounts/{admin['accountId']}/members/{member_id}/role",
                            json={"roleId": 4}, headers=engineer["headers"])
    assert response.status_code == 403
