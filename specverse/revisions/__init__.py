"""
SpecVerse — Filled Sheet Revisions & Diff

Each save of a filled sheet stores a full UnifiedSheet snapshot with a per-sheet
revision number (max + 1). Restoring a revision re-applies its header and values
through the normal update path, then records a new revision; history is never rewritten.

Diff rows are keyed "<subsheet key>::<field key>" where
  subsheet key = originalId → id → name → "unknown-subsheet"
  field key    = originalId → id → label
so fields line up across revisions and revised copies.
"""
import copy
from datetime import datetime

from specverse.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from specverse.db import get_db, transaction, next_id, find_one, paginate
from specverse.errors import AppError, not_found
from specverse.audit import log_audit_action
from specverse import datasheets as ds


def create_revision(db: dict, sheet: dict, user_id: int, comment: str = None) -> dict:
    """Snapshot a sheet as its next revision. Caller holds the transaction."""
    numbers = [r["revisionNumber"] for r in db["revisions"] if r["sheetId"] == sheet["sheetId"]]
    row = {
        "revisionId": next_id(db, "revisions"),
        "sheetId": sheet["sheetId"],
        "revisionNumber": max(numbers, default=0) + 1,
        "snapshot": copy.deepcopy(ds.to_unified(db, sheet)),
        "createdById": user_id,
        "createdAt": datetime.now().isoformat(),
        "status": sheet["status"],
        "comment": comment,
    }
    db["revisions"].append(row)
    return row


def _revision_summary(db: dict, r: dict) -> dict:
    user = find_one(db["users"], userId=r["createdById"])
    return {
        "revisionId": r["revisionId"],
        "sheetId": r["sheetId"],
        "revisionNumber": r["revisionNumber"],
        "createdById": r["createdById"],
        "createdByName": f"{user['firstName']} {user['lastName']}".strip() if user else None,
        "createdAt": r["createdAt"],
        "status": r["status"],
        "comment": r["comment"],
    }


def list_revisions(account_id: int, sheet_id: int, page=1, page_size=DEFAULT_PAGE_SIZE) -> dict:
    db = get_db()
    ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
    rows = sorted((r for r in db["revisions"] if r["sheetId"] == sheet_id),
                  key=lambda r: r["revisionNumber"], reverse=True)
    result = paginate(rows, page, page_size, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
    result["items"] = [_revision_summary(db, r) for r in result["items"]]
    return result


def _revision_row(db: dict, sheet_id: int, revision_id: int) -> dict:
    r = find_one(db["revisions"], revisionId=revision_id)
    if not r or r["sheetId"] != sheet_id:
        raise not_found("Revision")
    return r


def get_revision(account_id: int, sheet_id: int, revision_id: int) -> dict:
    db = get_db()
    ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
    r = _revision_row(db, sheet_id, revision_id)
    return {**_revision_summary(db, r), "snapshot": copy.deepcopy(r["snapshot"])}


def _valid_snapshot(snapshot) -> bool:
    if not isinstance(snapshot, dict) or not isinstance(snapshot.get("subsheets"), list):
        return False
    for s in snapshot["subsheets"]:
        if not isinstance(s, dict) or not isinstance(s.get("fields"), list):
            return False
        if any(not isinstance(f, dict) or "id" not in f for f in s["fields"]):
            return False
    return True


def restore_revision(account_id: int, sheet_id: int, revision_id: int, user_id: int,
                     comment: str = None) -> dict:
    """Apply a stored snapshot to the live sheet and record the result as a new revision."""
    from specverse.sheets import apply_update
    with transaction() as db:
        sheet = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
        r = _revision_row(db, sheet_id, revision_id)
        snapshot = r["snapshot"]
        if not _valid_snapshot(snapshot):
            raise AppError(500, "Invalid revision snapshot data")
        payload = {k: snapshot.get(k) for k in ds.HEADER_FIELDS if k in snapshot}
        live_ids = {str(ds.info_template_id(sheet, f)) for _, f in ds.iter_fields(sheet)}
        payload["fieldValues"] = {}
        for _, f in ds.iter_fields(snapshot):
            key = str(f.get("originalId") or f["id"])
            if key in live_ids:
                payload["fieldValues"][key] = f.get("value")
        apply_update(db, sheet, payload, user_id)
        new_rev = create_revision(db, sheet, user_id,
                                  comment=comment or f"Restored from revision #{r['revisionNumber']}")
    log_audit_action("Sheets", sheet_id, "Restore Revision", user_id, account_id,
                     changes={"fromRevision": r["revisionNumber"], "newRevision": new_rev["revisionNumber"]})
    return {"sheet": ds.to_unified(get_db(), sheet), "revision": _revision_summary(get_db(), new_rev)}


# ============================================================
# DIFF
# ============================================================
def _identity(v) -> str:
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def _first_set(d: dict, keys, default: str) -> str:
    # empty strings count as set; only a missing or null key falls through
    for k in keys:
        if d.get(k) is not None:
            return _identity(d[k])
    return default


def _sub_key(s: dict) -> str:
    return _first_set(s, ("originalId", "id", "name"), "unknown-subsheet")


def _field_key(f: dict) -> str:
    return _first_set(f, ("originalId", "id", "label"), "")


def _flatten(sheet: dict) -> dict:
    rows = {}
    for s in (sheet or {}).get("subsheets") or []:
        for f in s.get("fields") or []:
            key = f"{_sub_key(s)}::{_field_key(f)}"
            rows[key] = {"subsheetName": s.get("name") or "", "label": f.get("label") or "",
                         "value": "" if f.get("value") is None else str(f["value"])}
    return rows


def diff_unified_sheets(a: dict, b: dict) -> dict:
    """Field-by-field diff of two sheets (a = old, b = new)."""
    old, new = _flatten(a), _flatten(b)
    rows = []
    for key, o in old.items():
        n = new.get(key)
        if n is None:
            rows.append({"key": key, "subsheetName": o["subsheetName"], "label": o["label"],
                         "oldValue": o["value"], "newValue": "", "kind": "removed"})
        else:
            rows.append({"key": key, "subsheetName": n["subsheetName"], "label": n["label"],
                         "oldValue": o["value"], "newValue": n["value"],
                         "kind": "changed" if o["value"] != n["value"] else "unchanged"})
    for key, n in new.items():
        if key not in old:
            rows.append({"key": key, "subsheetName": n["subsheetName"], "label": n["label"],
                         "oldValue": "", "newValue": n["value"], "kind": "added"})
    counts = {"total": len(rows), "changed": 0, "added": 0, "removed": 0, "unchanged": 0}
    for r in rows:
        counts[r["kind"]] += 1
    return {"rows": rows, "counts": counts}


def diff_revisions(account_id: int, sheet_id: int, from_revision_id: int, to_revision="current") -> dict:
    """Diff a revision against another revision, or against the live sheet."""
    db = get_db()
    sheet = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
    older = _revision_row(db, sheet_id, int(from_revision_id))
    if to_revision in (None, "", "current"):
        newer_snapshot, to_label = ds.to_unified(db, sheet), "current"
    else:
        newer = _revision_row(db, sheet_id, int(to_revision))
        newer_snapshot, to_label = newer["snapshot"], newer["revisionNumber"]
    result = diff_unified_sheets(older["snapshot"], newer_snapshot)
    result["from"] = older["revisionNumber"]
    result["to"] = to_label
    return result
