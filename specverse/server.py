"""
SpecVerse — Engineering Datasheet Platform
HTTP layer: every route resolves the caller's session, checks the permission it needs,
and hands off to a domain module. Domain modules raise AppError; it is rendered here.
"""

import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, Request, Response, BackgroundTasks, UploadFile, File, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from specverse.config import (
    VERSION, SEED_DEMO, RESET_ON_START, ADMIN_EMAIL, ADMIN_PASSWORD, DEMO_ACCOUNT_NAME,
    DEFAULT_ROLE_ID, SESSION_COOKIE, JWT_EXPIRY_HOURS,
)
from specverse.db import DATABASE_URL, get_db, reset_db
from specverse.errors import AppError
from specverse.auth import (
    login as auth_login, get_current_user, get_optional_user, get_session_account_id,
    require_permission, require_admin, build_session, create_jwt,
)
from specverse import (
    accounts, invites, notifications, reference, audit, templates, sheets, revisions,
    notes, attachments, layouts, inventory, exports, reports,
)


# ============================================================
# STARTUP
# ============================================================
def seed_demo() -> None:
    """Bootstrap an admin user and demo account on an empty store."""
    if get_db()["users"]:
        return
    user = accounts.create_user(ADMIN_EMAIL, ADMIN_PASSWORD, "Admin", "User")
    account = accounts.create_account(DEMO_ACCOUNT_NAME, owner_user_id=user["userId"])
    print(f"[Seed] Created {ADMIN_EMAIL} as admin of '{account['accountName']}'")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if RESET_ON_START:
        reset_db()
        print("[DB] Reset on start")
    if SEED_DEMO:
        seed_demo()
    exports.cleanup_expired_export_jobs()
    yield


app = FastAPI(title="SpecVerse", version=VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


@app.exception_handler(AppError)
async def app_error_handler(request: Request, err: AppError):
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


def _ctx(request: Request, status_code: int = 200) -> dict:
    return {"route": request.url.path, "method": request.method, "statusCode": status_code}


# ============================================================
# REQUEST BODIES
# ============================================================
class LoginBody(BaseModel):
    email: str
    password: str

class RegisterBody(BaseModel):
    email: str
    password: str
    firstName: str = ""
    lastName: str = ""

class ActiveAccountBody(BaseModel):
    accountId: int

class AccountCreate(BaseModel):
    accountName: str
    slug: Optional[str] = None

class AccountPatch(BaseModel):
    accountName: Optional[str] = None
    slug: Optional[str] = None
    isActive: Optional[bool] = None

class MemberRoleBody(BaseModel):
    roleId: int

class MemberStatusBody(BaseModel):
    isActive: bool

class InviteCreate(BaseModel):
    email: str
    roleId: int = DEFAULT_ROLE_ID

class InviteTokenBody(BaseModel):
    token: str

class ReviewBody(BaseModel):
    action: str
    comment: Optional[str] = None

class RestoreBody(BaseModel):
    comment: Optional[str] = None

class NoteBody(BaseModel):
    noteText: str
    noteType: Optional[str] = None

class LayoutCreate(BaseModel):
    templateId: int
    clientId: Optional[int] = None
    paperSize: str = "A4"
    orientation: str = "portrait"

class BodySlotsBody(BaseModel):
    slots: List[dict] = []

class SlotOperationBody(BaseModel):
    state: dict
    op: dict

class TransactionBody(BaseModel):
    transactionType: str
    quantityChanged: float
    uom: Optional[str] = None
    referenceNote: Optional[str] = None
    warehouseId: Optional[int] = None
    toWarehouseId: Optional[int] = None

class MaintenanceBody(BaseModel):
    maintenanceDate: str
    description: str
    notes: Optional[str] = None

class ExportStart(BaseModel):
    jobType: str
    params: dict = {}

class MarkReadBody(BaseModel):
    ids: List[int]


# ============================================================
# HEALTH
# ============================================================
@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION,
            "storage": "postgresql" if DATABASE_URL else "file"}


# ============================================================
# AUTH & SESSIONS
# ============================================================
@app.post("/api/auth/login")
async def login(body: LoginBody, response: Response):
    result = auth_login(body.email, body.password)
    response.set_cookie(SESSION_COOKIE, result["token"], httponly=True, samesite="lax",
                        max_age=JWT_EXPIRY_HOURS * 3600)
    return result

@app.post("/api/auth/register", status_code=201)
async def register(body: RegisterBody, response: Response):
    accounts.create_user(body.email, body.password, body.firstName, body.lastName)
    return await login(LoginBody(email=body.email, password=body.password), response)

@app.get("/api/auth/session")
async def session(user: dict = Depends(get_optional_user)):
    return user

@app.post("/api/auth/logout")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True}

@app.post("/api/sessions/active-account")
async def switch_account(body: ActiveAccountBody, response: Response, user: dict = Depends(get_current_user)):
    accounts.set_active_account(user["userId"], body.accountId)
    session = build_session(user["userId"])
    token = create_jwt(accounts.get_user(user["userId"]), session["accountId"])
    response.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="lax", max_age=JWT_EXPIRY_HOURS * 3600)
    return {"token": token, "user": session}


# ============================================================
# ACCOUNTS & MEMBERS
# ============================================================
def _own_account(user: dict, account_id: int) -> int:
    """Account routes act on the caller's active account only."""
    if get_session_account_id(user) != account_id:
        raise HTTPException(404, "Account not found")
    return account_id

@app.get("/api/accounts")
async def list_accounts(user: dict = Depends(get_current_user)):
    return accounts.list_accounts_for_user(user["userId"])

@app.post("/api/accounts", status_code=201)
async def create_account(body: AccountCreate, user: dict = Depends(get_current_user)):
    return accounts.create_account(body.accountName, body.slug, owner_user_id=user["userId"])

@app.get("/api/accounts/{account_id}")
async def get_account(account_id: int, user: dict = Depends(get_current_user)):
    member = accounts.get_membership(account_id, user["userId"])
    if not member or not member["isActive"]:
        raise HTTPException(404, "Account not found")
    return accounts.get_account(account_id)

@app.patch("/api/accounts/{account_id}")
async def update_account(account_id: int, body: AccountPatch, user: dict = Depends(require_permission("ACCOUNT_MANAGE"))):
    _own_account(user, account_id)
    return accounts.update_account(account_id, body.model_dump(exclude_unset=True), user["userId"])

@app.get("/api/accounts/{account_id}/members")
async def list_members(account_id: int, user: dict = Depends(require_permission("ACCOUNT_VIEW"))):
    return accounts.list_members(_own_account(user, account_id))

@app.patch("/api/accounts/{account_id}/members/{member_id}/role")
async def update_member_role(account_id: int, member_id: int, body: MemberRoleBody,
                             user: dict = Depends(require_permission("ACCOUNT_MANAGE"))):
    _own_account(user, account_id)
    return accounts.update_member_role(account_id, member_id, body.roleId, user["userId"])

@app.patch("/api/accounts/{account_id}/members/{member_id}/status")
async def update_member_status(account_id: int, member_id: int, body: MemberStatusBody,
                               user: dict = Depends(require_permission("ACCOUNT_MANAGE"))):
    _own_account(user, account_id)
    return accounts.update_member_status(account_id, member_id, body.isActive, user["userId"])


# ============================================================
# INVITES
# ============================================================
@app.get("/api/invites")
async def list_invites(user: dict = Depends(require_permission("ACCOUNT_INVITE"))):
    return invites.list_invites(user["accountId"])

@app.post("/api/invites", status_code=201)
async def create_invite(body: InviteCreate, request: Request, user: dict = Depends(require_permission("ACCOUNT_INVITE"))):
    return invites.create_or_resend_invite(user["accountId"], user["userId"], body.email, body.roleId,
                                           _ctx(request, 201))

@app.get("/api/invites/by-token")
async def invite_by_token(token: str):
    return invites.get_by_token(token)

@app.post("/api/invites/accept")
async def accept_invite(body: InviteTokenBody, request: Request, response: Response,
                        user: dict = Depends(get_current_user)):
    result = invites.accept_invite(user["userId"], user["email"], body.token, _ctx(request))
    session = build_session(user["userId"])
    token = create_jwt(accounts.get_user(user["userId"]), session["accountId"])
    response.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="lax", max_age=JWT_EXPIRY_HOURS * 3600)
    return {**result, "token": token, "user": session}

@app.post("/api/invites/decline")
async def decline_invite(body: InviteTokenBody, request: Request, user: dict = Depends(get_optional_user)):
    invites.decline_invite(body.token, user.get("userId"), _ctx(request))
    return {"success": True}

@app.post("/api/invites/{invite_id}/resend")
async def resend_invite(invite_id: int, request: Request, user: dict = Depends(require_permission("ACCOUNT_INVITE"))):
    return invites.resend_invite(user["accountId"], invite_id, user["userId"], _ctx(request))

@app.delete("/api/invites/{invite_id}")
async def revoke_invite(invite_id: int, request: Request, user: dict = Depends(require_permission("ACCOUNT_INVITE"))):
    invites.revoke_invite(user["accountId"], invite_id, user["userId"], _ctx(request))
    return {"success": True}


# ============================================================
# REFERENCE DATA
# ============================================================
@app.get("/api/reference/{kind}")
async def list_reference(kind: str, search: Optional[str] = None, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return reference.list_items(kind, user["accountId"], search)

@app.post("/api/reference/{kind}", status_code=201)
async def create_reference(kind: str, body: dict, user: dict = Depends(require_permission("TEMPLATE_EDIT"))):
    return reference.create_item(kind, user["accountId"], body, user["userId"])

@app.get("/api/reference/{kind}/{item_id}")
async def get_reference(kind: str, item_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return reference.get_item(kind, user["accountId"], item_id)

@app.put("/api/reference/{kind}/{item_id}")
async def update_reference(kind: str, item_id: int, body: dict, user: dict = Depends(require_permission("TEMPLATE_EDIT"))):
    return reference.update_item(kind, user["accountId"], item_id, body, user["userId"])

@app.delete("/api/reference/{kind}/{item_id}")
async def delete_reference(kind: str, item_id: int, user: dict = Depends(require_permission("TEMPLATE_EDIT"))):
    reference.delete_item(kind, user["accountId"], item_id, user["userId"])
    return {"success": True}


# ============================================================
# TEMPLATES
# ============================================================
@app.get("/api/templates")
async def list_templates(status: Optional[str] = None, clientId: Optional[int] = None,
                         projectId: Optional[int] = None, categoryId: Optional[int] = None,
                         areaId: Optional[int] = None, latestOnly: bool = False, search: Optional[str] = None,
                         user: dict = Depends(require_permission("TEMPLATE_VIEW"))):
    filters = {"status": status, "clientId": clientId, "projectId": projectId, "categoryId": categoryId,
               "areaId": areaId, "latestOnly": latestOnly, "search": search}
    return templates.list_templates(user["accountId"], filters)

@app.get("/api/templates/equipment-tag-check")
async def template_tag_check(tag: str, excludeId: Optional[int] = None,
                             user: dict = Depends(require_permission("TEMPLATE_VIEW"))):
    return {"exists": templates.equipment_tag_exists(user["accountId"], tag, excludeId)}

@app.post("/api/templates", status_code=201)
async def create_template(body: dict, user: dict = Depends(require_permission("TEMPLATE_CREATE"))):
    return templates.create_template(user["accountId"], body, user["userId"])

@app.get("/api/templates/{sheet_id}")
async def get_template(sheet_id: int, user: dict = Depends(require_permission("TEMPLATE_VIEW"))):
    return templates.get_template(user["accountId"], sheet_id)

@app.put("/api/templates/{sheet_id}")
async def update_template(sheet_id: int, body: dict, user: dict = Depends(require_permission("TEMPLATE_EDIT"))):
    return templates.update_template(user["accountId"], sheet_id, body, user["userId"])

@app.get("/api/templates/{sheet_id}/structure")
async def template_structure(sheet_id: int, user: dict = Depends(require_permission("TEMPLATE_VIEW"))):
    return templates.get_template_structure(user["accountId"], sheet_id)

@app.post("/api/templates/{sheet_id}/verify")
async def verify_template(sheet_id: int, body: ReviewBody, user: dict = Depends(require_permission("TEMPLATE_VERIFY"))):
    return templates.verify_template(user["accountId"], sheet_id, body.action, body.comment, user["userId"])

@app.post("/api/templates/{sheet_id}/approve")
async def approve_template(sheet_id: int, user: dict = Depends(require_permission("TEMPLATE_APPROVE"))):
    return templates.approve_template(user["accountId"], sheet_id, user["userId"])

@app.post("/api/templates/{sheet_id}/clone", status_code=201)
async def clone_template(sheet_id: int, body: Optional[dict] = None,
                         user: dict = Depends(require_permission("TEMPLATE_CREATE"))):
    return templates.clone_template(user["accountId"], sheet_id, body or {}, user["userId"])

@app.post("/api/templates/{sheet_id}/revise", status_code=201)
async def revise_template(sheet_id: int, user: dict = Depends(require_permission("TEMPLATE_EDIT"))):
    return templates.revise_template(user["accountId"], sheet_id, user["userId"])


# ============================================================
# FILLED SHEETS
# ============================================================
@app.get("/api/filledsheets")
async def list_filled_sheets(status: Optional[str] = None, templateId: Optional[int] = None,
                             clientId: Optional[int] = None, projectId: Optional[int] = None,
                             categoryId: Optional[int] = None, areaId: Optional[int] = None,
                             includeSuperseded: bool = False, search: Optional[str] = None,
                             user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    filters = {"status": status, "templateId": templateId, "clientId": clientId, "projectId": projectId,
               "categoryId": categoryId, "areaId": areaId, "includeSuperseded": includeSuperseded,
               "search": search}
    return sheets.list_filled_sheets(user["accountId"], filters)

@app.get("/api/filledsheets/equipment-tag-check")
async def filled_tag_check(tag: str, excludeId: Optional[int] = None,
                           user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return {"exists": templates.equipment_tag_exists(user["accountId"], tag, excludeId, is_template=False)}

@app.post("/api/filledsheets", status_code=201)
async def create_filled_sheet(body: dict, user: dict = Depends(require_permission("DATASHEET_CREATE"))):
    return sheets.create_filled_sheet(user["accountId"], body, user["userId"])

@app.get("/api/filledsheets/{sheet_id}")
async def get_filled_sheet(sheet_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return sheets.get_filled_sheet(user["accountId"], sheet_id)

@app.put("/api/filledsheets/{sheet_id}")
async def update_filled_sheet(sheet_id: int, body: dict, user: dict = Depends(require_permission("DATASHEET_EDIT"))):
    comment = body.pop("revisionComment", None)
    return sheets.update_filled_sheet(user["accountId"], sheet_id, body, user["userId"], comment=comment)

@app.post("/api/filledsheets/{sheet_id}/verify")
async def verify_filled_sheet(sheet_id: int, body: ReviewBody, user: dict = Depends(require_permission("DATASHEET_VERIFY"))):
    return sheets.verify_filled_sheet(user["accountId"], sheet_id, body.action, body.comment, user["userId"])

@app.post("/api/filledsheets/{sheet_id}/approve")
async def approve_filled_sheet(sheet_id: int, body: ReviewBody, user: dict = Depends(require_permission("DATASHEET_APPROVE"))):
    return sheets.approve_filled_sheet(user["accountId"], sheet_id, body.action, body.comment, user["userId"])

@app.post("/api/filledsheets/{sheet_id}/clone", status_code=201)
async def clone_filled_sheet(sheet_id: int, body: dict, user: dict = Depends(require_permission("DATASHEET_CREATE"))):
    return sheets.clone_filled_sheet(user["accountId"], sheet_id, body, user["userId"])

@app.post("/api/filledsheets/{sheet_id}/revise", status_code=201)
async def revise_filled_sheet(sheet_id: int, user: dict = Depends(require_permission("DATASHEET_EDIT"))):
    return sheets.revise_filled_sheet(user["accountId"], sheet_id, user["userId"])

@app.get("/api/filledsheets/{sheet_id}/completeness")
async def filled_sheet_completeness(sheet_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return sheets.get_completeness(user["accountId"], sheet_id)

@app.get("/api/filledsheets/{sheet_id}/logs")
async def filled_sheet_logs(sheet_id: int, limit: int = 200, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    if not sheets.sheet_belongs_to_account(sheet_id, user["accountId"]):
        raise HTTPException(404, "Sheet not found")
    return audit.list_sheet_logs(sheet_id, limit)


# ---- revisions ----
@app.get("/api/filledsheets/{sheet_id}/revisions")
async def list_revisions(sheet_id: int, page: int = 1, pageSize: int = 20,
                         user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return revisions.list_revisions(user["accountId"], sheet_id, page, pageSize)

@app.get("/api/filledsheets/{sheet_id}/revisions/diff")
async def diff_revisions(sheet_id: int, request: Request, to: str = "current",
                         user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    # "from" is a Python keyword
    from_id = request.query_params.get("from")
    if not from_id or not from_id.isdigit():
        raise HTTPException(400, "from must be a revision id")
    if to != "current" and not to.isdigit():
        raise HTTPException(400, "to must be a revision id or 'current'")
    return revisions.diff_revisions(user["accountId"], sheet_id, int(from_id), to)

@app.get("/api/filledsheets/{sheet_id}/revisions/{revision_id}")
async def get_revision(sheet_id: int, revision_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return revisions.get_revision(user["accountId"], sheet_id, revision_id)

@app.post("/api/filledsheets/{sheet_id}/revisions/{revision_id}/restore")
async def restore_revision(sheet_id: int, revision_id: int, body: Optional[RestoreBody] = None,
                           user: dict = Depends(require_permission("DATASHEET_EDIT"))):
    comment = body.comment if body else None
    return revisions.restore_revision(user["accountId"], sheet_id, revision_id, user["userId"], comment)


# ============================================================
# NOTES & ATTACHMENTS (templates and filled sheets)
# ============================================================
@app.get("/api/sheets/{sheet_id}/notes")
async def list_notes(sheet_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return notes.list_notes(user["accountId"], sheet_id)

@app.post("/api/sheets/{sheet_id}/notes", status_code=201)
async def create_note(sheet_id: int, body: NoteBody, user: dict = Depends(require_permission("DATASHEET_NOTE_EDIT"))):
    return notes.create_note(user["accountId"], sheet_id, body.noteText, body.noteType or "General", user["userId"])

@app.put("/api/sheets/{sheet_id}/notes/{note_id}")
async def update_note(sheet_id: int, note_id: int, body: NoteBody,
                      user: dict = Depends(require_permission("DATASHEET_NOTE_EDIT"))):
    return notes.update_note(user["accountId"], sheet_id, note_id, body.noteText, user, body.noteType)

@app.delete("/api/sheets/{sheet_id}/notes/{note_id}")
async def delete_note(sheet_id: int, note_id: int, user: dict = Depends(require_permission("DATASHEET_NOTE_EDIT"))):
    notes.delete_note(user["accountId"], sheet_id, note_id, user)
    return {"success": True}

@app.get("/api/sheets/{sheet_id}/attachments")
async def list_attachments(sheet_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    return attachments.list_attachments(user["accountId"], sheet_id)

@app.post("/api/sheets/{sheet_id}/attachments", status_code=201)
async def upload_attachment(sheet_id: int, file: UploadFile = File(...),
                            user: dict = Depends(require_permission("DATASHEET_ATTACHMENT_UPLOAD"))):
    content = await file.read()
    return attachments.add_attachment(user["accountId"], sheet_id, file.filename, content,
                                      file.content_type, user["userId"])

@app.get("/api/sheets/{sheet_id}/attachments/{attachment_id}/download")
async def download_attachment(sheet_id: int, attachment_id: int, user: dict = Depends(require_permission("DATASHEET_VIEW"))):
    path, att = attachments.load_attachment(user["accountId"], sheet_id, attachment_id)
    return FileResponse(path, media_type=att["contentType"], filename=att["originalName"])

@app.delete("/api/sheets/{sheet_id}/attachments/{attachment_id}")
async def delete_attachment(sheet_id: int, attachment_id: int,
                            user: dict = Depends(require_permission("DATASHEET_ATTACHMENT_UPLOAD"))):
    return attachments.delete_attachment(user["accountId"], sheet_id, attachment_id, user["userId"])


# ============================================================
# LAYOUTS
# ============================================================
@app.get("/api/layouts")
async def list_layouts(templateId: Optional[int] = None, clientId: Optional[int] = None,
                       user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    return layouts.list_layouts(user["accountId"], templateId, clientId)

@app.post("/api/layouts", status_code=201)
async def create_layout(body: LayoutCreate, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.create_layout(user["accountId"], body.templateId, body.clientId, body.paperSize,
                                 body.orientation, user["userId"])

@app.post("/api/layouts/bodyslots/ops")
async def slot_operation(body: SlotOperationBody, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.apply_slot_operation(body.state, body.op)

@app.put("/api/layouts/regions/{region_id}")
async def update_region(region_id: int, body: dict, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.update_region(user["accountId"], region_id, body)

@app.post("/api/layouts/regions/{region_id}/blocks", status_code=201)
async def add_block(region_id: int, body: dict, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.add_block(user["accountId"], region_id, body)

@app.put("/api/layouts/blocks/{block_id}")
async def update_block(block_id: int, body: dict, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.update_block(user["accountId"], block_id, body)

@app.get("/api/layouts/{layout_id}")
async def get_layout(layout_id: int, user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    return layouts.get_layout_bundle(user["accountId"], layout_id)

@app.patch("/api/layouts/{layout_id}")
async def update_layout(layout_id: int, body: dict, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.update_layout_meta(user["accountId"], layout_id, body, user["userId"])

@app.delete("/api/layouts/{layout_id}")
async def delete_layout(layout_id: int, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    layouts.delete_layout(user["accountId"], layout_id, user["userId"])
    return {"success": True}

@app.get("/api/layouts/{layout_id}/structure")
async def layout_structure(layout_id: int, user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    meta = layouts.get_layout_bundle(user["accountId"], layout_id)["meta"]
    return templates.get_template_structure(user["accountId"], meta["templateId"])

@app.post("/api/layouts/{layout_id}/regions", status_code=201)
async def add_region(layout_id: int, body: dict, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.add_region(user["accountId"], layout_id, body)

@app.get("/api/layouts/{layout_id}/bodyslots")
async def list_body_slots(layout_id: int, user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    return layouts.list_body_slots(user["accountId"], layout_id)

@app.post("/api/layouts/{layout_id}/bodyslots")
async def save_body_slots(layout_id: int, body: BodySlotsBody, user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.save_body_slots(user["accountId"], layout_id, body.slots, user["userId"])

@app.get("/api/layouts/{layout_id}/bodyslots/grid")
async def body_slot_grid(layout_id: int, user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    return layouts.load_slot_grid(user["accountId"], layout_id)

@app.get("/api/layouts/{layout_id}/subsheets/{sub_id}/slots")
async def get_subsheet_slots(layout_id: int, sub_id: int, user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    return layouts.get_subsheet_slots(user["accountId"], layout_id, sub_id)

@app.post("/api/layouts/{layout_id}/subsheets/{sub_id}/slots")
async def save_subsheet_slots(layout_id: int, sub_id: int, body: dict,
                              user: dict = Depends(require_permission("LAYOUT_EDIT"))):
    return layouts.save_subsheet_slots(user["accountId"], layout_id, sub_id, body, user["userId"])

@app.get("/api/layouts/{layout_id}/render")
async def render_layout(layout_id: int, sheetId: int, user: dict = Depends(require_permission("LAYOUT_VIEW"))):
    return layouts.render_layout(user["accountId"], layout_id, sheetId)


# ============================================================
# INVENTORY
# ============================================================
@app.get("/api/inventory")
async def list_inventory(search: Optional[str] = None, categoryId: Optional[int] = None,
                         active: Optional[bool] = None, page: int = 1, pageSize: int = 20,
                         user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    return inventory.list_items(user["accountId"], search, categoryId, active, page, pageSize)

@app.post("/api/inventory", status_code=201)
async def create_inventory_item(body: dict, user: dict = Depends(require_permission("INVENTORY_CREATE"))):
    return inventory.create_item(user["accountId"], body, user["userId"])

@app.get("/api/inventory/all/transactions")
async def all_transactions(warehouseId: Optional[int] = None, itemId: Optional[int] = None,
                           transactionType: Optional[str] = None, dateFrom: Optional[str] = None,
                           dateTo: Optional[str] = None, page: int = 1, pageSize: int = 20,
                           user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    filters = {"warehouseId": warehouseId, "itemId": itemId, "transactionType": transactionType,
               "dateFrom": dateFrom, "dateTo": dateTo}
    return inventory.list_all_transactions(user["accountId"], filters, page, pageSize)

@app.get("/api/inventory/all/transactions.csv")
async def all_transactions_csv(warehouseId: Optional[int] = None, itemId: Optional[int] = None,
                               transactionType: Optional[str] = None, dateFrom: Optional[str] = None,
                               dateTo: Optional[str] = None, user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    filters = {"warehouseId": warehouseId, "itemId": itemId, "transactionType": transactionType,
               "dateFrom": dateFrom, "dateTo": dateTo}
    csv_text = exports.inventory_transactions_csv(user["accountId"], filters)
    return Response(csv_text, media_type="text/csv",
                    headers={"Content-Disposition": 'attachment; filename="inventory-transactions.csv"'})

@app.get("/api/inventory/all/maintenance")
async def all_maintenance(user: dict = Depends(require_permission("INVENTORY_MAINTENANCE_VIEW"))):
    return inventory.list_all_maintenance(user["accountId"])

@app.get("/api/inventory/all/audit")
async def all_inventory_audit(user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    return inventory.list_all_inventory_audit(user["accountId"])

@app.get("/api/inventory/{item_id}")
async def get_inventory_item(item_id: int, user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    return inventory.get_item(user["accountId"], item_id)

@app.put("/api/inventory/{item_id}")
async def update_inventory_item(item_id: int, body: dict, user: dict = Depends(require_permission("INVENTORY_EDIT"))):
    return inventory.update_item(user["accountId"], item_id, body, user["userId"])

@app.delete("/api/inventory/{item_id}")
async def delete_inventory_item(item_id: int, user: dict = Depends(require_permission("INVENTORY_DELETE"))):
    return inventory.soft_delete_item(user["accountId"], item_id, user["userId"])

@app.get("/api/inventory/{item_id}/can-delete")
async def can_delete_inventory_item(item_id: int, user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    return {"canDelete": inventory.can_delete(user["accountId"], item_id)}

@app.get("/api/inventory/{item_id}/transactions")
async def item_transactions(item_id: int, user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    return inventory.list_transactions(user["accountId"], item_id)

@app.post("/api/inventory/{item_id}/transactions", status_code=201)
async def add_item_transaction(item_id: int, body: TransactionBody,
                               user: dict = Depends(require_permission("INVENTORY_TRANSACTION_CREATE"))):
    return inventory.add_transaction(user["accountId"], item_id, body.transactionType, body.quantityChanged,
                                     body.uom, body.referenceNote, user["userId"], body.warehouseId,
                                     body.toWarehouseId)

@app.get("/api/inventory/{item_id}/maintenance")
async def item_maintenance(item_id: int, user: dict = Depends(require_permission("INVENTORY_MAINTENANCE_VIEW"))):
    return inventory.list_maintenance_logs(user["accountId"], item_id)

@app.post("/api/inventory/{item_id}/maintenance", status_code=201)
async def add_item_maintenance(item_id: int, body: MaintenanceBody,
                               user: dict = Depends(require_permission("INVENTORY_MAINTENANCE_CREATE"))):
    return inventory.add_maintenance_log(user["accountId"], item_id, body.model_dump(), user["userId"])

@app.get("/api/inventory/{item_id}/audit")
async def item_audit(item_id: int, user: dict = Depends(require_permission("INVENTORY_VIEW"))):
    return inventory.list_inventory_audit(user["accountId"], item_id)


# ============================================================
# EXPORT JOBS
# ============================================================
@app.post("/api/exports/jobs", status_code=202)
async def start_export(body: ExportStart, background_tasks: BackgroundTasks,
                       user: dict = Depends(require_permission("EXPORT_CREATE"))):
    job = exports.start_export_job(user["accountId"], body.jobType, body.params, user["userId"])
    background_tasks.add_task(exports.run_export_job, job["jobId"])
    return job

@app.get("/api/exports/jobs")
async def list_exports(user: dict = Depends(require_permission("EXPORT_CREATE"))):
    return exports.list_export_jobs(user)

@app.post("/api/exports/jobs/cleanup")
async def cleanup_exports(user: dict = Depends(require_admin)):
    return exports.cleanup_expired_export_jobs()

@app.get("/api/exports/jobs/{job_id}")
async def export_status(job_id: int, user: dict = Depends(get_current_user)):
    get_session_account_id(user)
    return exports.get_export_job_status(job_id, user)

@app.get("/api/exports/jobs/{job_id}/download-url")
async def export_download_url(job_id: int, user: dict = Depends(get_current_user)):
    get_session_account_id(user)
    return exports.download_url_for(job_id, user)

@app.get("/api/exports/jobs/{job_id}/download")
async def export_download(job_id: int, token: str):
    payload = exports.verify_download_token(token)
    if not payload or payload["jobId"] != job_id:
        raise HTTPException(403, "Invalid or expired download token")
    resolved = exports.resolve_export_file_path(job_id)
    if not resolved:
        raise HTTPException(404, "Export file not available")
    path, file_name = resolved
    return FileResponse(path, media_type="text/csv", filename=file_name)

@app.post("/api/exports/jobs/{job_id}/cancel")
async def cancel_export(job_id: int, user: dict = Depends(get_current_user)):
    get_session_account_id(user)
    return exports.cancel_export_job(job_id, user)

@app.post("/api/exports/jobs/{job_id}/retry", status_code=202)
async def retry_export(job_id: int, background_tasks: BackgroundTasks, user: dict = Depends(get_current_user)):
    get_session_account_id(user)
    job = exports.retry_export_job(job_id, user)
    background_tasks.add_task(exports.run_export_job, job["jobId"])
    return job


# ============================================================
# REPORTS & STATS
# ============================================================
@app.get("/api/reports/datasheets-by-status")
async def report_by_status(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.datasheets_by_status(user["accountId"])

@app.get("/api/reports/templates-over-time")
async def report_templates_over_time(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.templates_created_over_time(user["accountId"])

@app.get("/api/reports/pending-verifications")
async def report_pending(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.pending_verifications(user["accountId"])

@app.get("/api/reports/rejected-over-time")
async def report_rejected(isTemplate: bool = True, user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.rejected_over_time(user["accountId"], isTemplate)

@app.get("/api/reports/workflow-sankey")
async def report_sankey(isTemplate: bool = True, user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.workflow_sankey(user["accountId"], isTemplate)

@app.get("/api/reports/lifecycle")
async def report_lifecycle(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.datasheet_lifecycle_stats(user["accountId"])

@app.get("/api/reports/verification-bottlenecks")
async def report_bottlenecks(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.verification_bottlenecks(user["accountId"])

@app.get("/api/reports/template-usage")
async def report_template_usage(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.template_usage_trends(user["accountId"])

@app.get("/api/reports/team-performance")
async def report_team(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.team_performance(user["accountId"])

@app.get("/api/reports/field-completion")
async def report_field_completion(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.field_completion_trends(user["accountId"])

@app.get("/api/reports/inventory-forecast")
async def report_forecast(monthsAhead: int = 3, user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.inventory_forecast(user["accountId"], max(1, min(monthsAhead, 24)))

@app.get("/api/reports/inventory-contribution")
async def report_contribution(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.inventory_contribution(user["accountId"])

@app.get("/api/stats/summary")
async def stats_summary(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.dashboard_summary(user["accountId"])

@app.get("/api/stats/active-users")
async def stats_active_users(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.active_users_by_role(user["accountId"])

@app.get("/api/stats/inventory-stock")
async def stats_inventory_stock(user: dict = Depends(require_permission("REPORTS_VIEW"))):
    return reports.inventory_stock_levels(user["accountId"])


# ============================================================
# AUDIT & NOTIFICATIONS
# ============================================================
@app.get("/api/audit-logs")
async def audit_logs(tableName: Optional[str] = None, recordId: Optional[str] = None,
                     performedBy: Optional[int] = None, action: Optional[str] = None,
                     dateFrom: Optional[str] = None, dateTo: Optional[str] = None,
                     page: int = 1, pageSize: int = 20, user: dict = Depends(require_permission("AUDIT_VIEW"))):
    filters = {"tableName": tableName, "recordId": recordId, "performedBy": performedBy,
               "action": action, "dateFrom": dateFrom, "dateTo": dateTo}
    return audit.list_audit_logs(user["accountId"], filters, page, pageSize)

@app.get("/api/notifications")
async def list_notifications(unreadOnly: bool = False, limit: int = 50, user: dict = Depends(get_current_user)):
    return notifications.list_notifications(user["userId"], user.get("accountId"), unreadOnly, limit)

@app.post("/api/notifications/mark-read")
async def mark_notifications_read(body: MarkReadBody, user: dict = Depends(get_current_user)):
    return {"updated": notifications.mark_read(user["userId"], body.ids)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"Starting SpecVerse v{VERSION} on port {port}")
    print(f"Demo seed: {'on' if SEED_DEMO else 'off'}")
    uvicorn.run(app, host="0.0.0.0", port=port)
