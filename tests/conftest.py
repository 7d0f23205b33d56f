"""Pytest configuration: project root importable, store in a temp dir, fresh state per test."""

import os
import sys
import tempfile
from urllib.parse import urlparse, parse_qs

# Project root = parent directory of this tests/ folder
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Must be set before specverse.config is imported
os.environ["SPECVERSE_DATA_DIR"] = tempfile.mkdtemp(prefix="specverse-test-")
os.environ["PERSIST_DATA"] = "false"
os.environ["SEED_DEMO"] = "false"
os.environ["RESET_ON_START"] = "false"
os.environ.pop("DATABASE_URL", None)

import pytest
from fastapi.testclient import TestClient

from specverse.db import reset_db
from specverse import accounts, auth, invites, templates
from specverse.server import app

PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def fresh_db():
    reset_db()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def headers_for(email: str) -> dict:
    token = auth.login(email, PASSWORD)["token"]
    return {"Authorization": f"Bearer {token}"}


def token_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


@pytest.fixture
def admin():
    """Admin user owning the 'Acme Engineering' account."""
    user = accounts.create_user("admin@acme.test", PASSWORD, "Ada", "Admin")
    account = accounts.create_account("Acme Engineering", owner_user_id=user["userId"])
    return {"user": user, "userId": user["userId"], "accountId": account["accountId"],
            "headers": headers_for(user["email"])}


@pytest.fixture
def add_member(admin):
    """Factory: create a user and join them to the admin's account through an invite."""
    def _add(email: str, role_id: int = 3, first: str = "Test", last: str = "User") -> dict:
        user = accounts.create_user(email, PASSWORD, first, last)
        invite = invites.create_or_resend_invite(admin["accountId"], admin["userId"], email, role_id)
        invites.accept_invite(user["userId"], email, token_from_url(invite["acceptUrl"]))
        return {"user": user, "userId": user["userId"], "accountId": admin["accountId"],
                "headers": headers_for(email)}
    return _add


def template_payload(tag: str = "P-101", **extra) -> dict:
    payload = {
        "sheetName": "Centrifugal Pump",
        "sheetDesc": "Process pump datasheet",
        "equipmentName": "Feed Pump",
        "equipmentTagNum": tag,
        "subsheets": [
            {"name": "Process", "fields": [
                {"label": "Flow", "infoType": "decimal", "uom": "m3/h", "required": True},
                {"label": "Stages", "infoType": "int"},
                {"label": "Seal Type", "infoType": "varchar", "options": ["Single", "Double"]},
            ]},
            {"name": "Mechanical", "fields": [
                {"label": "Casing Material", "infoType": "varchar"},
            ]},
        ],
    }
    payload.update(extra)
    return payload


def field_ids(sheet: dict) -> dict:
    """label → template field id (infoTemplateId) for a template or filled sheet."""
    out = {}
    for s in sheet["subsheets"]:
        for f in s["fields"]:
            out[f["label"]] = f["id"] if sheet["isTemplate"] else (f.get("originalId") or f["id"])
    return out


@pytest.fixture
def approved_template(admin):
    tpl = templates.create_template(admin["accountId"], template_payload(), admin["userId"])
    templates.verify_template(admin["accountId"], tpl["sheetId"], "verify", None, admin["userId"])
    templates.approve_template(admin["accountId"], tpl["sheetId"], admin["userId"])
    return templates.get_template(admin["accountId"], tpl["sheetId"])
