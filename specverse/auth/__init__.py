"""
SpecVerse — Authentication & Permissions
JWT sessions, password hashing, active-account resolution, permission checks.
"""
from datetime import datetime, timedelta
from fastapi import Request, HTTPException, Depends

from specverse.config import (
    JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRY_HOURS, SESSION_COOKIE, ROLES, ADMIN_ROLE_ID
)
from specverse.db import get_db, find_one

# ============================================================
# PASSWORD HASHING
# ============================================================
import bcrypt

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False

# ============================================================
# JWT
# ============================================================
import jwt as pyjwt

def create_jwt(user: dict, account_id: int = None) -> str:
    payload = {
        "sub": str(user["userId"]), "email": user["email"],
        "name": f"{user.get('firstName', '')} {user.get('lastName', '')}".strip(),
        "accountId": account_id,
        "exp": datetime.utcnow() + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": datetime.utcnow()
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_jwt(token: str) -> dict:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(401, "Invalid token")

# ============================================================
# SESSION
# ============================================================
def build_session(user_id: int) -> dict:
    """Resolve the caller's active account, role and permissions.

    The stored activeAccountId wins while it is still an active membership of an
    active account; otherwise the first such membership is used.
    """
    db = get_db()
    user = find_one(db["users"], userId=user_id)
    if not user or not user.get("isActive", True):
        return {}

    memberships = []
    for m in db["account_members"]:
        if m["userId"] != user_id or not m["isActive"]:
            continue
        account = find_one(db["accounts"], accountId=m["accountId"])
        if account and account["isActive"]:
            memberships.append(m)

    member = next((m for m in memberships if m["accountId"] == user.get("activeAccountId")), None)
    if member is None and memberships:
        member = min(memberships, key=lambda m: m["accountId"])

    role = ROLES.get(member["roleId"]) if member else None
    return {
        "userId": user["userId"],
        "email": user["email"],
        "name": f"{user['firstName']} {user['lastName']}".strip() or user["email"],
        "accountId": member["accountId"] if member else None,
        "roleId": member["roleId"] if member else None,
        "roleName": role["roleName"] if role else None,
        "permissions": list(role["permissions"]) if role else [],
        "isAdmin": bool(member and member["roleId"] == ADMIN_ROLE_ID),
        "authenticated": True,
    }

def login(email: str, password: str) -> dict:
    email = (email or "").strip().lower()
    user = find_one(get_db()["users"], email=email)
    if not user or not verify_password(password or "", user["passwordHash"]):
        raise HTTPException(401, "Invalid email or password")
    if not user.get("isActive", True):
        raise HTTPException(403, "User account is disabled")
    session = build_session(user["userId"])
    print(f"[Auth] Login: {email}")
    return {"token": create_jwt(user, session["accountId"]), "user": session}

# ============================================================
# REQUEST HELPERS
# ============================================================
def _token_from_request(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return request.cookies.get(SESSION_COOKIE, "")

def _user_from_request(request: Request) -> dict:
    """Session for the JWT on the request; empty dict when there is none."""
    token = _token_from_request(request)
    if not token:
        return {}
    payload = decode_jwt(token)
    try:
        user_id = int(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(401, "Invalid token")
    return build_session(user_id)

async def get_current_user(request: Request) -> dict:
    """Dependency: require authenticated user."""
    user = _user_from_request(request)
    if user:
        return user
    if _token_from_request(request):
        raise HTTPException(401, "Invalid or expired token")
    raise HTTPException(401, "Authentication required")

async def get_optional_user(request: Request) -> dict:
    """Dependency: return user if a valid token is present, else an anonymous stub."""
    try:
        user = _user_from_request(request)
    except HTTPException:
        user = {}
    if user:
        return user
    return {"userId": None, "email": "", "name": "Anonymous", "accountId": None,
            "permissions": [], "isAdmin": False, "authenticated": False}

def get_session_account_id(user: dict) -> int:
    account_id = user.get("accountId")
    if not account_id:
        raise HTTPException(403, "No active account")
    return account_id

# ============================================================
# PERMISSION DEPENDENCIES
# ============================================================
def require_permission(permission: str):
    """Dependency: require a permission in the caller's active account."""
    async def checker(user: dict = Depends(get_current_user)):
        get_session_account_id(user)
        if permission not in user["permissions"]:
            raise HTTPException(403, "Permission denied")
        return user
    return checker

async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    get_session_account_id(user)
    if not user["isAdmin"]:
        raise HTTPException(403, "Admin access required")
    return user
