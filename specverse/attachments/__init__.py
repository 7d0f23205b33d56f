"""
SpecVerse — Sheet Attachments
Files are stored once under uploads/ and linked to one or more sheets (duplicates, revisions
and re-uploads of identical content within an account link the same file). The file is
removed when its last link goes.
"""
import hashlib
import re
import uuid
from datetime import datetime
from pathlib import Path

from specverse.db import get_db, transaction, next_id, find_one, save_uploaded_file, \
    load_uploaded_file, delete_uploaded_file
from specverse.errors import bad_request, not_found
from specverse.datasheets import get_sheet_row
from specverse.audit import log_audit_action

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024
ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".webp", ".gif", ".txt", ".csv",
                      ".xlsx", ".xls", ".docx", ".doc", ".dwg", ".dxf", ".zip"}


def _safe_stored_name(original: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", Path(original).name)[:80] or "file"
    return f"{uuid.uuid4().hex[:12]}_{stem}"


def add_attachment(account_id: int, sheet_id: int, file_name: str, content: bytes,
                   content_type: str = "application/octet-stream", user_id: int = None) -> dict:
    file_name = (file_name or "").strip()
    if not file_name:
        raise bad_request("File name is required")
    ext = Path(file_name).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise bad_request(f"File type {ext or '(none)'} is not allowed")
    if not content:
        raise bad_request("File is empty")
    if len(content) > MAX_ATTACHMENT_BYTES:
        raise bad_request("File exceeds the 25 MB limit")

    digest = hashlib.sha256(content).hexdigest()
    with transaction() as db:
        get_sheet_row(db, account_id, sheet_id)
        att = find_one(db["attachments"], accountId=account_id, sha256=digest)
        reused = att is not None
        if reused:
            link = find_one(db["sheet_attachments"], sheetId=sheet_id, attachmentId=att["attachmentId"])
            if link:
                return att
        else:
            stored = _safe_stored_name(file_name)
            save_uploaded_file(stored, content)
            att = {
                "attachmentId": next_id(db, "attachments"),
                "accountId": account_id,
                "originalName": file_name,
                "storedName": stored,
                "contentType": content_type or "application/octet-stream",
                "sizeBytes": len(content),
                "sha256": digest,
                "uploadedBy": user_id,
                "uploadedAt": datetime.now().isoformat(),
            }
            db["attachments"].append(att)
        order = len([l for l in db["sheet_attachments"] if l["sheetId"] == sheet_id])
        db["sheet_attachments"].append({"sheetId": sheet_id, "attachmentId": att["attachmentId"],
                                        "orderIndex": order, "linkedFromSheetId": None,
                                        "linkedAt": datetime.now().isoformat()})
    log_audit_action("Attachments", att["attachmentId"], "Upload Attachment", user_id, account_id,
                     changes={"sheetId": sheet_id, "fileName": file_name, "sizeBytes": len(content),
                              "reusedExisting": reused})
    return att


def list_attachments(account_id: int, sheet_id: int) -> list:
    db = get_db()
    get_sheet_row(db, account_id, sheet_id)
    out = []
    for link in sorted((l for l in db["sheet_attachments"] if l["sheetId"] == sheet_id),
                       key=lambda l: l["orderIndex"]):
        att = find_one(db["attachments"], attachmentId=link["attachmentId"])
        if att:
            out.append({**att, "linkedFromSheetId": link.get("linkedFromSheetId")})
    return out


def _linked(db: dict, account_id: int, sheet_id: int, attachment_id: int) -> tuple:
    get_sheet_row(db, account_id, sheet_id)
    link = find_one(db["sheet_attachments"], sheetId=sheet_id, attachmentId=attachment_id)
    att = find_one(db["attachments"], attachmentId=attachment_id)
    if not link or not att:
        raise not_found("Attachment")
    return link, att


def load_attachment(account_id: int, sheet_id: int, attachment_id: int) -> tuple:
    """(path, attachment row) for download."""
    db = get_db()
    _, att = _linked(db, account_id, sheet_id, attachment_id)
    path, exists = load_uploaded_file(att["storedName"])
    if not exists:
        raise not_found("File")
    return path, att


def delete_attachment(account_id: int, sheet_id: int, attachment_id: int, user_id: int = None) -> dict:
    with transaction() as db:
        link, att = _linked(db, account_id, sheet_id, attachment_id)
        db["sheet_attachments"].remove(link)
        still_linked = any(l["attachmentId"] == attachment_id for l in db["sheet_attachments"])
        if not still_linked:
            db["attachments"].remove(att)
    file_removed = False
    if not still_linked:
        file_removed = delete_uploaded_file(att["storedName"])
    log_audit_action("Attachments", attachment_id, "Delete Attachment", user_id, account_id,
                     changes={"sheetId": sheet_id, "fileRemoved": file_removed})
    return {"unlinked": True, "fileRemoved": file_removed}


def link_attachments(db: dict, source_id: int, target_id: int) -> int:
    """Link all of a sheet's attachments to another sheet. Caller holds the transaction."""
    now = datetime.now().isoformat()
    src = [l for l in db["sheet_attachments"] if l["sheetId"] == source_id]
    for l in src:
        db["sheet_attachments"].append({"sheetId": target_id, "attachmentId": l["attachmentId"],
                                        "orderIndex": l["orderIndex"], "linkedFromSheetId": source_id,
                                        "linkedAt": now})
    return len(src)
