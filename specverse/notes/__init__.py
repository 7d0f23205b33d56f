"""
SpecVerse — Sheet Notes
Free-text notes on templates and filled sheets; copied along when a sheet is duplicated or revised.
"""
from datetime import datetime

from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import bad_request, forbidden, not_found
from specverse.datasheets import get_sheet_row
from specverse.audit import log_audit_action

NOTE_TYPES = ("General", "Design", "Process", "Instrument", "Revision")


def list_notes(account_id: int, sheet_id: int) -> list:
    db = get_db()
    get_sheet_row(db, account_id, sheet_id)
    rows = [n for n in db["notes"] if n["sheetId"] == sheet_id]
    return sorted(rows, key=lambda n: (n["orderIndex"], n["noteId"]))


def create_note(account_id: int, sheet_id: int, text: str, note_type: str = "General", user_id: int = None) -> dict:
    text = (text or "").strip()
    if not text:
        raise bad_request("Note text is required")
    if note_type not in NOTE_TYPES:
        raise bad_request("Invalid note type")
    with transaction() as db:
        get_sheet_row(db, account_id, sheet_id)
        order = max([n["orderIndex"] for n in db["notes"] if n["sheetId"] == sheet_id], default=-1) + 1
        now = datetime.now().isoformat()
        note = {"noteId": next_id(db, "notes"), "sheetId": sheet_id, "noteType": note_type,
                "noteText": text, "orderIndex": order, "createdBy": user_id,
                "createdAt": now, "updatedAt": now}
        db["notes"].append(note)
    log_audit_action("SheetNotes", note["noteId"], "Create Note", user_id, account_id,
                     changes={"sheetId": sheet_id, "noteType": note_type})
    return note


def _owned_note(db: dict, account_id: int, sheet_id: int, note_id: int, user: dict) -> dict:
    get_sheet_row(db, account_id, sheet_id)
    note = find_one(db["notes"], noteId=note_id)
    if not note or note["sheetId"] != sheet_id:
        raise not_found("Note")
    if note["createdBy"] != user.get("userId") and not user.get("isAdmin"):
        raise forbidden("Only the author or an admin can change this note")
    return note


def update_note(account_id: int, sheet_id: int, note_id: int, text: str, user: dict, note_type: str = None) -> dict:
    text = (text or "").strip()
    if not text:
        raise bad_request("Note text is required")
    if note_type is not None and note_type not in NOTE_TYPES:
        raise bad_request("Invalid note type")
    with transaction() as db:
        note = _owned_note(db, account_id, sheet_id, note_id, user)
        old = note["noteText"]
        note["noteText"] = text
        if note_type:
            note["noteType"] = note_type
        note["updatedAt"] = datetime.now().isoformat()
        note["updatedBy"] = user.get("userId")
    log_audit_action("SheetNotes", note_id, "Update Note", user.get("userId"), account_id,
                     changes={"noteText": {"old": old, "new": text}})
    return note


def delete_note(account_id: int, sheet_id: int, note_id: int, user: dict) -> None:
    with transaction() as db:
        note = _owned_note(db, account_id, sheet_id, note_id, user)
        db["notes"].remove(note)
    log_audit_action("SheetNotes", note_id, "Delete Note", user.get("userId"), account_id,
                     changes={"sheetId": sheet_id})


def copy_notes(db: dict, source_id: int, target_id: int, user_id: int) -> int:
    """Copy a sheet's notes onto another sheet. Caller holds the transaction."""
    now = datetime.now().isoformat()
    src = [n for n in db["notes"] if n["sheetId"] == source_id]
    for n in src:
        db["notes"].append({**n, "noteId": next_id(db, "notes"), "sheetId": target_id,
                            "createdBy": user_id, "createdAt": now, "updatedAt": now})
    return len(src)
