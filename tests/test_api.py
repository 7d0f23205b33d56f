from fastapi.testclient import TestClient

from conftest import PASSWORD, template_payload


def test_health_check(client: TestClient):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["storage"] == "file"


def test_login_returns_token_and_session(client: TestClient, admin):
    response = client.post("/api/auth/login", json={"email": "ADMIN@acme.test ", "password": PASSWORD})
    assert response.status_code == 200
    body = response.json()
    assert body["token"]
    assert body["user"]["accountId"] == admin["accountId"]
    assert body["user"]["isAdmin"] is True
    assert "token" in response.cookies


def test_login_wrong_password(client: TestClient, admin):
    response = client.post("/api/auth/login", json={"email": "admin@acme.test", "password": "nope"})
    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid email or password"}


def test_session_is_anonymous_without_token(client: TestClient):
    response = client.get("/api/auth/session")
    assert response.status_code == 200
    assert response.json()["authenticated"] is False


def test_protected_route_requires_token(client: TestClient):
    assert client.get("/api/templates").status_code == 401


def test_garbage_token_is_rejected(client: TestClient):
    response = client.get("/api/templates", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_register_creates_user_without_account(client: TestClient):
    response = client.post("/api/auth/register",
                           json={"email": "new@user.test", "password": PASSWORD, "firstName": "New"})
    assert response.status_code == 201
    assert response.json()["user"]["accountId"] is None

    # no active account → account-scoped routes are refused
    token = response.json()["token"]
    response = client.get("/api/templates", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403
    assert response.json()["detail"] == "No active account"


def test_register_duplicate_email(client: TestClient, admin):
    response = client.post("/api/auth/register", json={"email": "admin@acme.test", "password": PASSWORD})
    assert response.status_code == 409


def test_viewer_cannot_create_template(client: TestClient, add_member):
    viewer = add_member("viewer@acme.test", role_id=4)
    response = client.post("/api/templates", json=template_payload(), headers=viewer["headers"])
    assert response.status_code == 403
    assert client.get("/api/templates", headers=viewer["headers"]).status_code == 200


def test_other_account_rows_read_as_missing(client: TestClient, admin):
    created = client.post("/api/templates", json=template_payload(), headers=admin["headers"]).json()

    client.post("/api/auth/register", json={"email": "rival@other.test", "password": PASSWORD})
    login = client.post("/api/auth/login", json={"email": "rival@other.test", "password": PASSWORD}).json()
    rival = {"Authorization": f"Bearer {login['token']}"}
    assert client.post("/api/accounts", json={"accountName": "Rival Co"}, headers=rival).status_code == 201

    response = client.get(f"/api/templates/{created['sheetId']}", headers=rival)
    assert response.status_code == 404


def test_switch_active_account(client: TestClient, admin):
    second = client.post("/api/accounts", json={"accountName": "Second Site"}, headers=admin["headers"]).json()
    # creating an account makes it active
    assert client.get("/api/auth/session", headers=admin["headers"]).json()["accountId"] == second["accountId"]

    response = client.post("/api/sessions/active-account", json={"accountId": admin["accountId"]},
                           headers=admin["headers"])
    assert response.status_code == 200
    assert response.json()["user"]["accountId"] == admin["accountId"]

    names = [a["accountName"] for a in client.get("/api/accounts", headers=admin["headers"]).json()]
    assert names == ["Acme Engineering", "Second Site"]


def test_switch_to_foreign_account_is_forbidden(client: TestClient, admin):
    response = client.post("/api/sessions/active-account", json={"accountId": 999}, headers=admin["headers"])
    assert response.status_code == 403


def test_validation_error_lists_paths(client: TestClient, admin):
    response = client.post("/api/templates", json={"sheetName": "", "subsheets": []}, headers=admin["headers"])
    assert response.status_code == 400
    body = response.json()
    assert body["detail"] == "Validation failed"
    paths = {e["path"] for e in body["errors"]}
    assert {"sheetName", "equipmentName", "equipmentTagNum", "subsheets"} <= paths
