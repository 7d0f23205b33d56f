"""
SpecVerse — Account Invites

Lifecycle:
  Pending → Accepted | Revoked | Declined
  A Pending invite past expiresAt reports as "expired" and can no longer be accepted.

Tokens are random url-safe strings handed out once (in the accept link); only
their SHA-256 hex digest is stored. Resending rotates the token.
"""
import hashlib
import secrets
from datetime import datetime, timedelta
from urllib.parse import quote

from specverse.config import ROLES, INVITE_EXPIRY_DAYS, INVITE_BASE_URL, DEV_SHOW_INVITE_LINKS
from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import bad_request, conflict, forbidden, gone, not_found
from specverse.audit import log_audit_action
from specverse.accounts import normalize_email, user_display_name


def generate_invite_token() -> str:
    return secrets.token_urlsafe(32)


def token_sha256_hex(token: str) -> str:
    return hashlib.sha256((token or "").encode()).hexdigest()


def _accept_link(token: str) -> str:
    return f"{INVITE_BASE_URL}/invite/accept?token={quote(token)}"


def send_invite_email(to: str, link: str, account_name: str) -> None:
    """Development sender: prints the accept link instead of mailing it."""
    print(f"[Invite] To: {to} | Account: {account_name} | Accept: {link}")


def _expiry() -> datetime:
    return datetime.now() + timedelta(days=INVITE_EXPIRY_DAYS)


def _account_name(db: dict, account_id: int) -> str:
    account = find_one(db["accounts"], accountId=account_id)
    return account["accountName"] if account else "Account"


def _audit(ctx: dict, invite_id: int, action: str, user_id, account_id: int, changes: dict):
    ctx = ctx or {}
    log_audit_action("AccountInvites", invite_id, action, user_id, account_id,
                     route=ctx.get("route"), method=ctx.get("method"),
                     status_code=ctx.get("statusCode"), changes=changes)


def to_invite_dto(row: dict) -> dict:
    return {
        "inviteId": row["inviteId"],
        "email": row["email"],
        "roleId": row["roleId"],
        "roleName": ROLES.get(row["roleId"], {}).get("roleName", ""),
        "expiresAt": row["expiresAt"],
        "invitedByUserId": row["invitedByUserId"],
        "inviterName": user_display_name(row["invitedByUserId"]) or None,
        "sendCount": row["sendCount"],
        "lastSentAt": row.get("lastSentAt"),
        "createdAt": row["createdAt"],
    }


def resolve_status(row: dict, now: datetime = None) -> str:
    if row["status"] != "Pending":
        s = row["status"].lower()
        return s if s in ("accepted", "revoked", "declined") else "expired"
    now = now or datetime.now()
    if datetime.fromisoformat(row["expiresAt"]) < now:
        return "expired"
    return "pending"


def _rotate(row: dict) -> str:
    token = generate_invite_token()
    row["tokenHash"] = token_sha256_hex(token)
    row["expiresAt"] = _expiry().isoformat()
    row["sendCount"] = int(row.get("sendCount", 0)) + 1
    row["lastSentAt"] = datetime.now().isoformat()
    return token


# ============================================================
# ADMIN OPERATIONS
# ============================================================
def create_or_resend_invite(account_id: int, invited_by: int, email: str, role_id: int, ctx: dict = None) -> dict:
    """Create a Pending invite, or rotate the token of the one already pending for this email."""
    email = normalize_email(email)
    if not email:
        raise bad_request("Email is required")
    if role_id not in ROLES:
        raise bad_request("Invalid role")

    with transaction() as db:
        user = find_one(db["users"], email=email)
        if user and find_one(db["account_members"], accountId=account_id, userId=user["userId"]):
            raise conflict("User is already a member of this account")

        pending = find_one(db["invites"], accountId=account_id, email=email, status="Pending")
        if pending:
            token = _rotate(pending)
            row, resent = pending, True
        else:
            token = generate_invite_token()
            now = datetime.now().isoformat()
            row = {
                "inviteId": next_id(db, "invites"),
                "accountId": account_id,
                "email": email,
                "roleId": role_id,
                "tokenHash": token_sha256_hex(token),
                "status": "Pending",
                "expiresAt": _expiry().isoformat(),
                "invitedByUserId": invited_by,
                "sendCount": 1,
                "lastSentAt": now,
                "createdAt": now,
            }
            db["invites"].append(row)
            resent = False
        account_name = _account_name(db, account_id)

    link = _accept_link(token)
    send_invite_email(email, link, account_name)
    if resent:
        _audit(ctx, row["inviteId"], "invite.resent", invited_by, account_id,
               {"email": email, "accountId": account_id})
    else:
        _audit(ctx, row["inviteId"], "invite.created", invited_by, account_id,
               {"email": email, "roleId": role_id, "accountId": account_id})
    result = {
        "inviteId": row["inviteId"],
        "email": email,
        "roleId": row["roleId"],
        "roleName": ROLES[row["roleId"]]["roleName"],
        "expiresAt": row["expiresAt"],
        "createdAt": row["createdAt"],
        "resent": resent,
    }
    if DEV_SHOW_INVITE_LINKS:
        result["acceptUrl"] = link
    return result


def list_invites(account_id: int) -> list:
    rows = [r for r in get_db()["invites"] if r["accountId"] == account_id and r["status"] == "Pending"]
    rows.sort(key=lambda r: (r["createdAt"], r["inviteId"]), reverse=True)
    return [to_invite_dto(r) for r in rows]


def _pending_in_account(db: dict, account_id: int, invite_id: int) -> dict:
    row = find_one(db["invites"], inviteId=invite_id)
    if not row or row["accountId"] != account_id:
        raise not_found("Invite")
    if row["status"] != "Pending":
        raise not_found("Invite")
    return row


def resend_invite(account_id: int, invite_id: int, user_id: int, ctx: dict = None) -> dict:
    with transaction() as db:
        row = _pending_in_account(db, account_id, invite_id)
        token = _rotate(row)
        account_name = _account_name(db, account_id)
    link = _accept_link(token)
    send_invite_email(row["email"], link, account_name)
    _audit(ctx, invite_id, "invite.resent", user_id, account_id, {"email": row["email"], "accountId": account_id})
    dto = to_invite_dto(row)
    if DEV_SHOW_INVITE_LINKS:
        dto["acceptUrl"] = link
    return dto


def revoke_invite(account_id: int, invite_id: int, user_id: int, ctx: dict = None) -> None:
    with transaction() as db:
        row = _pending_in_account(db, account_id, invite_id)
        row["status"] = "Revoked"
        row["revokedAt"] = datetime.now().isoformat()
        row["revokedByUserId"] = user_id
    _audit(ctx, invite_id, "invite.revoked", user_id, account_id, {"email": row["email"], "accountId": account_id})


# ============================================================
# PUBLIC / INVITEE OPERATIONS
# ============================================================
def get_by_token(token: str) -> dict:
    db = get_db()
    row = find_one(db["invites"], tokenHash=token_sha256_hex(token))
    if not row:
        raise not_found("Invite")
    return {"accountName": _account_name(db, row["accountId"]),
            "status": resolve_status(row), "expiresAt": row["expiresAt"]}


def _pending_by_token(db: dict, token: str) -> dict:
    row = find_one(db["invites"], tokenHash=token_sha256_hex(token))
    if not row:
        raise not_found("Invite")
    if row["status"] != "Pending":
        raise gone("Invite is no longer valid")
    return row


def _usable_row(db: dict, token: str) -> dict:
    row = _pending_by_token(db, token)
    if datetime.fromisoformat(row["expiresAt"]) < datetime.now():
        raise gone("Invite has expired")
    return row


def accept_invite(user_id: int, user_email: str, token: str, ctx: dict = None) -> dict:
    """Join the inviting account as the signed-in user and make it the active account."""
    with transaction() as db:
        row = _usable_row(db, token)
        if normalize_email(user_email) != normalize_email(row["email"]):
            raise forbidden("You must sign in with the email address that received this invite")

        account_id = row["accountId"]
        existing = find_one(db["account_members"], accountId=account_id, userId=user_id)
        if existing and existing["isActive"]:
            raise conflict("You are already an active member of this account")

        now = datetime.now().isoformat()
        row["status"] = "Accepted"
        row["acceptedAt"] = now
        row["acceptedByUserId"] = user_id
        if existing:
            existing["isActive"] = True
            existing["roleId"] = row["roleId"]
            existing["updatedAt"] = now
        else:
            db["account_members"].append({
                "memberId": next_id(db, "account_members"),
                "accountId": account_id,
                "userId": user_id,
                "roleId": row["roleId"],
                "isActive": True,
                "createdAt": now,
                "updatedAt": now,
            })
        user = find_one(db["users"], userId=user_id)
        if user:
            user["activeAccountId"] = account_id
        account_name = _account_name(db, account_id)

    _audit(ctx, row["inviteId"], "invite.accepted", user_id, account_id,
           {"accountId": account_id, "email": row["email"]})
    return {"accountId": account_id, "accountName": account_name}


def decline_invite(token: str, user_id: int = None, ctx: dict = None) -> None:
    with transaction() as db:
        row = _pending_by_token(db, token)
        row["status"] = "Declined"
        row["declinedAt"] = datetime.now().isoformat()
    if user_id is not None:
        _audit(ctx, row["inviteId"], "invite.declined", user_id, row["accountId"],
               {"accountId": row["accountId"], "email": row["email"]})
