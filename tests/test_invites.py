from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from specverse import accounts
from specverse.db import transaction, find_one
from specverse.invites import token_sha256_hex
from conftest import PASSWORD, headers_for, token_from_url


def _invite(client, admin, email="new@acme.test", role_id=3):
    response = client.post("/api/invites", json={"email": email, "roleId": role_id}, headers=admin["headers"])
    assert response.status_code == 201, response.text
    return response.json()


def test_create_invite_is_pending(client: TestClient, admin):
    invite = _invite(client, admin, email="  New@Acme.test ")
    assert invite["email"] == "new@acme.test"
    assert invite["roleName"] == "Engineer"
    assert invite["resent"] is False

    token = token_from_url(invite["acceptUrl"])
    info = client.get("/api/invites/by-token", params={"token": token}).json()
    assert info["accountName"] == "Acme Engineering"
    assert info["status"] == "pending"

    listed = client.get("/api/invites", headers=admin["headers"]).json()
    assert [i["email"] for i in listed] == ["new@acme.test"]
    assert listed[0]["inviterName"] == "Ada Admin"


def test_only_the_hash_is_stored(client: TestClient, admin):
    invite = _invite(client, admin)
    token = token_from_url(invite["acceptUrl"])
    with transaction() as db:
        row = find_one(db["invites"], inviteId=invite["inviteId"])
    assert row["tokenHash"] == token_sha256_hex(token)
    assert token not in row.values()


def test_resend_rotates_token(client: TestClient, admin):
    first = _invite(client, admin)
    again = _invite(client, admin)
    assert again["inviteId"] == first["inviteId"]
    assert again["resent"] is True

    old_token = token_from_url(first["acceptUrl"])
    assert client.get("/api/invites/by-token", params={"token": old_token}).status_code == 404

    resent = client.post(f"/api/invites/{first['inviteId']}/resend", headers=admin["headers"]).json()
    assert resent["sendCount"] == 3


def test_accept_requires_matching_email(client: TestClient, admin):
    invite = _invite(client, admin)
    accounts.create_user("other@acme.test", PASSWORD)
    response = client.post("/api/invites/accept", json={"token": token_from_url(invite["acceptUrl"])},
                           headers=headers_for("other@acme.test"))
    assert response.status_code == 403


def test_accept_joins_account_once(client: TestClient, admin):
    invite = _invite(client, admin, role_id=2)
    token = token_from_url(invite["acceptUrl"])
    accounts.create_user("new@acme.test", PASSWORD, "Nia", "New")
    headers = headers_for("new@acme.test")

    response = client.post("/api/invites/accept", json={"token": token}, headers=headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["accountId"] == admin["accountId"]
    assert body["user"]["roleName"] == "Manager"

    members = client.get(f"/api/accounts/{admin['accountId']}/members", headers=admin["headers"]).json()
    assert "new@acme.test" in [m["email"] for m in members]

    assert client.post("/api/invites/accept", json={"token": token}, headers=headers).status_code == 410
    assert client.get("/api/invites/by-token", params={"token": token}).json()["status"] == "accepted"


def test_expired_invite_cannot_be_accepted(client: TestClient, admin):
    invite = _invite(client, admin)
    with transaction() as db:
        row = find_one(db["invites"], inviteId=invite["inviteId"])
        row["expiresAt"] = (datetime.now() - timedelta(days=1)).isoformat()
    accounts.create_user("new@acme.test", PASSWORD)
    token = token_from_url(invite["acceptUrl"])

    assert client.get("/api/invites/by-token", params={"token": token}).json()["status"] == "expired"
    response = client.post("/api/invites/accept", json={"token": token}, headers=headers_for("new@acme.test"))
    assert response.status_code == 410


def test_revoke_and_decline(client: TestClient, admin):
    revoked = _invite(client, admin, email="a@acme.test")
    assert client.delete(f"/api/invites/{revoked['inviteId']}", headers=admin["headers"]).status_code == 200
    assert client.delete(f"/api/invites/{revoked['inviteId']}", headers=admin["headers"]).status_code == 404
    token = token_from_url(revoked["acceptUrl"])
    assert client.get("/api/invites/by-token", params={"token": token}).json()["status"] == "revoked"

    declined = _invite(client, admin, email="b@acme.test")
    token = token_from_url(declined["acceptUrl"])
    assert client.post("/api/invites/decline", json={"token": token}).status_code == 200
    assert client.post("/api/invites/decline", json={"token": token}).status_code == 410
    assert client.get("/api/invites", headers=admin["headers"]).json() == []


def test_existing_member_cannot_be_invited(client: TestClient, admin, add_member):
    add_member("eng@acme.test")
    response = client.post("/api/invites", json={"email": "eng@acme.test"}, headers=admin["headers"])
    assert response.status_code == 409


def test_engineer_cannot_invite(client: TestClient, admin, add_member):
    engineer = add_member("eng@acme.test")
    response = client.post("/api/invites", json={"email": "x@acme.test"}, headers=engineer["headers"])
    assert response.status_code == 403
