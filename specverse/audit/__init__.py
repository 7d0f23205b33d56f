"""
SpecVerse — Audit Trail & Sheet Change Log

Two streams:
  audit_logs   — one row per mutating action (table, record, action, who, when, changes)
  change_logs  — per-field value edits on a sheet (old → new, with UOM)

The sheet log view merges both, newest first.
"""
import json
from datetime import datetime, timedelta

from specverse.db import get_db, transaction, next_id, paginate
from specverse.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

# Identical entries inside this window are stored once (double-submits, retries)
DUPLICATE_WINDOW_SECONDS = 2


def _changes_key(changes) -> str:
    return json.dumps(changes, sort_keys=True, default=str) if changes is not None else ""


def log_audit_action(table_name: str, record_id, action: str, performed_by=None, account_id=None,
                     route: str = None, method: str = None, status_code: int = None, changes=None) -> dict:
    """Append an audit row unless the same entry was written moments ago."""
    now = datetime.now()
    with transaction() as db:
        cutoff = (now - timedelta(seconds=DUPLICATE_WINDOW_SECONDS)).isoformat()
        key = _changes_key(changes)
        for prev in reversed(db["audit_logs"]):
            if prev["performedAt"] < cutoff:
                break
            if (prev["tableName"] == table_name and prev["recordId"] == record_id
                    and prev["action"] == action and prev["performedBy"] == performed_by
                    and _changes_key(prev.get("changes")) == key):
                return prev
        row = {
            "auditId": next_id(db, "audit_logs"),
            "accountId": account_id,
            "tableName": table_name,
            "recordId": record_id,
            "action": action,
            "performedBy": performed_by,
            "performedAt": now.isoformat(),
            "route": route,
            "method": method,
            "statusCode": status_code,
            "changes": changes,
        }
        db["audit_logs"].append(row)
        return row


def _user_name(db: dict, user_id) -> str:
    for u in db["users"]:
        if u["userId"] == user_id:
            return f"{u.get('firstName', '')} {u.get('lastName', '')}".strip() or u["email"]
    return "System" if user_id is None else f"User #{user_id}"


def list_audit_logs(account_id: int, filters: dict = None, page=1, page_size=DEFAULT_PAGE_SIZE) -> dict:
    db = get_db()
    f = filters or {}
    rows = [r for r in db["audit_logs"] if r.get("accountId") == account_id]
    if f.get("tableName"):
        rows = [r for r in rows if r["tableName"] == f["tableName"]]
    if f.get("recordId") is not None:
        rows = [r for r in rows if str(r["recordId"]) == str(f["recordId"])]
    if f.get("performedBy") is not None:
        rows = [r for r in rows if r["performedBy"] == int(f["performedBy"])]
    if f.get("action"):
        needle = f["action"].lower()
        rows = [r for r in rows if needle in r["action"].lower()]
    if f.get("dateFrom"):
        rows = [r for r in rows if r["performedAt"][:10] >= f["dateFrom"][:10]]
    if f.get("dateTo"):
        rows = [r for r in rows if r["performedAt"][:10] <= f["dateTo"][:10]]
    rows = sorted(rows, key=lambda r: (r["performedAt"], r["auditId"]), reverse=True)
    result = paginate(rows, page, page_size, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
    result["items"] = [{**r, "performedByName": _user_name(db, r["performedBy"])} for r in result["items"]]
    return result


# ============================================================
# SHEET CHANGE LOG
# ============================================================
def log_value_change(db: dict, sheet_id: int, info_template_id: int, old_value, new_value,
                     uom: str = None, changed_by: int = None) -> dict:
    """Record one field edit. Caller holds the transaction."""
    row = {
        "changeLogId": next_id(db, "change_logs"),
        "sheetId": sheet_id,
        "infoTemplateId": info_template_id,
        "oldValue": "" if old_value is None else str(old_value),
        "newValue": "" if new_value is None else str(new_value),
        "uom": uom,
        "changedBy": changed_by,
        "changedAt": datetime.now().isoformat(),
    }
    db["change_logs"].append(row)
    return row


def list_sheet_logs(sheet_id: int, limit: int = 200) -> list:
    db = get_db()
    entries = []
    for r in db["audit_logs"]:
        if r["tableName"] == "Sheets" and r["recordId"] == sheet_id:
            entries.append({"kind": "audit", "action": r["action"], "at": r["performedAt"],
                            "userId": r["performedBy"], "userName": _user_name(db, r["performedBy"]),
                            "changes": r.get("changes")})
    for c in db["change_logs"]:
        if c["sheetId"] == sheet_id:
            entries.append({"kind": "change", "action": "Value changed", "at": c["changedAt"],
                            "userId": c["changedBy"], "userName": _user_name(db, c["changedBy"]),
                            "infoTemplateId": c["infoTemplateId"], "oldValue": c["oldValue"],
                            "newValue": c["newValue"], "uom": c["uom"]})
    entries.sort(key=lambda e: e["at"], reverse=True)
    return entries[:limit]
