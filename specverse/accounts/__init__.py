"""
SpecVerse — Accounts, Members & Users

Multi-tenant model:
  users            — login identities (bcrypt hash, activeAccountId)
  accounts         — organizations owning datasheets, layouts and inventory
  account_members  — (account, user, role, isActive); one row per pair

Invariant: an account always keeps at least one active Admin member.
"""
import re
from datetime import datetime

from specverse.config import ROLES, ADMIN_ROLE_ID
from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import bad_request, conflict, forbidden, not_found
from specverse.audit import log_audit_action

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,62}$")


# ============================================================
# USERS
# ============================================================
def normalize_email(email) -> str:
    return (email or "").strip().lower()


def create_user(email: str, password: str, first_name: str = "", last_name: str = "") -> dict:
    from specverse.auth import hash_password
    email = normalize_email(email)
    if not email or "@" not in email:
        raise bad_request("A valid email is required")
    if not password or len(password) < 6:
        raise bad_request("Password must be at least 6 characters")
    with transaction() as db:
        if find_one(db["users"], email=email):
            raise conflict("A user with this email already exists")
        user = {
            "userId": next_id(db, "users"),
            "email": email,
            "passwordHash": hash_password(password),
            "firstName": first_name or "",
            "lastName": last_name or "",
            "isActive": True,
            "activeAccountId": None,
            "createdAt": datetime.now().isoformat(),
        }
        db["users"].append(user)
    return public_user(user)


def get_user(user_id: int) -> dict:
    return find_one(get_db()["users"], userId=user_id)


def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "passwordHash"}


def user_display_name(user_id) -> str:
    user = get_user(user_id) if user_id is not None else None
    if not user:
        return ""
    return f"{user['firstName']} {user['lastName']}".strip() or user["email"]


# ============================================================
# ACCOUNTS
# ============================================================
def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:63] or "account"


def create_account(account_name: str, slug: str = None, owner_user_id: int = None) -> dict:
    account_name = (account_name or "").strip()
    if not account_name:
        raise bad_request("Account name is required")
    slug = (slug or _slugify(account_name)).strip().lower()
    if not SLUG_RE.match(slug):
        raise bad_request("Slug must be lowercase letters, digits or dashes")
    with transaction() as db:
        if find_one(db["accounts"], slug=slug):
            raise conflict("An account with this slug already exists")
        now = datetime.now().isoformat()
        account = {
            "accountId": next_id(db, "accounts"),
            "accountName": account_name,
            "slug": slug,
            "isActive": True,
            "ownerUserId": owner_user_id,
            "createdAt": now,
            "updatedAt": now,
        }
        db["accounts"].append(account)
        if owner_user_id is not None:
            user = find_one(db["users"], userId=owner_user_id)
            if not user:
                raise not_found("User")
            _add_member(db, account["accountId"], owner_user_id, ADMIN_ROLE_ID)
            user["activeAccountId"] = account["accountId"]
    log_audit_action("Accounts", account["accountId"], "account.created", owner_user_id,
                     account["accountId"], changes={"accountName": account_name, "slug": slug})
    return account


def _add_member(db: dict, account_id: int, user_id: int, role_id: int) -> dict:
    now = datetime.now().isoformat()
    member = {
        "memberId": next_id(db, "account_members"),
        "accountId": account_id,
        "userId": user_id,
        "roleId": role_id,
        "isActive": True,
        "createdAt": now,
        "updatedAt": now,
    }
    db["account_members"].append(member)
    return member


def get_account(account_id: int) -> dict:
    account = find_one(get_db()["accounts"], accountId=account_id)
    if not account:
        raise not_found("Account")
    return account


def list_accounts_for_user(user_id: int) -> list:
    db = get_db()
    out = []
    for m in db["account_members"]:
        if m["userId"] != user_id or not m["isActive"]:
            continue
        account = find_one(db["accounts"], accountId=m["accountId"])
        if account and account["isActive"]:
            out.append({**account, "roleId": m["roleId"], "roleName": ROLES[m["roleId"]]["roleName"]})
    return sorted(out, key=lambda a: a["accountName"].lower())


def update_account(account_id: int, patch: dict, updated_by: int = None) -> dict:
    with transaction() as db:
        account = find_one(db["accounts"], accountId=account_id)
        if not account:
            raise not_found("Account")
        changes = {}
        if "accountName" in patch:
            name = (patch["accountName"] or "").strip()
            if not name:
                raise bad_request("Account name is required")
            changes["accountName"] = {"old": account["accountName"], "new": name}
            account["accountName"] = name
        if "slug" in patch:
            slug = (patch["slug"] or "").strip().lower()
            if not SLUG_RE.match(slug):
                raise bad_request("Slug must be lowercase letters, digits or dashes")
            other = find_one(db["accounts"], slug=slug)
            if other and other["accountId"] != account_id:
                raise conflict("An account with this slug already exists")
            changes["slug"] = {"old": account["slug"], "new": slug}
            account["slug"] = slug
        if "isActive" in patch:
            changes["isActive"] = {"old": account["isActive"], "new": bool(patch["isActive"])}
            account["isActive"] = bool(patch["isActive"])
        account["updatedAt"] = datetime.now().isoformat()
    if changes:
        log_audit_action("Accounts", account_id, "account.updated", updated_by, account_id, changes=changes)
    return account


def set_active_account(user_id: int, account_id: int) -> dict:
    with transaction() as db:
        member = find_one(db["account_members"], accountId=account_id, userId=user_id, isActive=True)
        account = find_one(db["accounts"], accountId=account_id)
        if not member or not account or not account["isActive"]:
            raise forbidden("You are not an active member of this account")
        user = find_one(db["users"], userId=user_id)
        user["activeAccountId"] = account_id
    return {"accountId": account_id, "accountName": account["accountName"]}


# ============================================================
# MEMBERS
# ============================================================
def get_membership(account_id: int, user_id: int) -> dict:
    return find_one(get_db()["account_members"], accountId=account_id, userId=user_id)


def list_members(account_id: int) -> list:
    db = get_db()
    out = []
    for m in db["account_members"]:
        if m["accountId"] != account_id:
            continue
        user = find_one(db["users"], userId=m["userId"]) or {}
        out.append({
            **m,
            "email": user.get("email", ""),
            "userName": f"{user.get('firstName', '')} {user.get('lastName', '')}".strip(),
            "roleName": ROLES.get(m["roleId"], {}).get("roleName", ""),
        })
    return sorted(out, key=lambda m: m["email"])


def _active_admins(db: dict, account_id: int) -> list:
    return [m for m in db["account_members"]
            if m["accountId"] == account_id and m["isActive"] and m["roleId"] == ADMIN_ROLE_ID]


def _get_member(db: dict, account_id: int, member_id: int) -> dict:
    member = find_one(db["account_members"], memberId=member_id)
    if not member or member["accountId"] != account_id:
        raise not_found("Member")
    return member


def update_member_role(account_id: int, member_id: int, role_id: int, updated_by: int = None) -> dict:
    if role_id not in ROLES:
        raise bad_request("Invalid role")
    with transaction() as db:
        member = _get_member(db, account_id, member_id)
        old_role = member["roleId"]
        if (old_role == ADMIN_ROLE_ID and role_id != ADMIN_ROLE_ID and member["isActive"]
                and len(_active_admins(db, account_id)) <= 1):
            raise conflict("Cannot remove the last active admin")
        member["roleId"] = role_id
        member["updatedAt"] = datetime.now().isoformat()
    log_audit_action("AccountMembers", member_id, "member.role_changed", updated_by, account_id,
                     changes={"roleId": {"old": old_role, "new": role_id}})
    return member


def update_member_status(account_id: int, member_id: int, is_active: bool, updated_by: int = None) -> dict:
    with transaction() as db:
        member = _get_member(db, account_id, member_id)
        if (not is_active and member["isActive"] and member["roleId"] == ADMIN_ROLE_ID
                and len(_active_admins(db, account_id)) <= 1):
            raise conflict("Cannot remove the last active admin")
        old = member["isActive"]
        member["isActive"] = bool(is_active)
        member["updatedAt"] = datetime.now().isoformat()
        if not is_active:
            user = find_one(db["users"], userId=member["userId"])
            if user and user.get("activeAccountId") == account_id:
                user["activeAccountId"] = None
    log_audit_action("AccountMembers", member_id, "member.status_changed", updated_by, account_id,
                     changes={"isActive": {"old": old, "new": bool(is_active)}})
    return member


def active_member_user_ids(account_id: int, role_ids=None) -> list:
    db = get_db()
    return [m["userId"] for m in db["account_members"]
            if m["accountId"] == account_id and m["isActive"]
            and (role_ids is None or m["roleId"] in role_ids)]
