"""
SpecVerse — Datasheet Templates

Workflow:
  Draft / Modified Draft ──verify──→ Verified ──approve──→ Approved
          ↑   └──reject──→ Rejected ──edit──┘
          └── revise (from Verified/Approved) creates the next revision as Modified Draft

Only Approved templates that are still the latest of their lineage can seed filled sheets.
"""
from datetime import datetime

from specverse.config import EDITABLE_STATUSES, VERIFIABLE_STATUSES, ADMIN_ROLE_ID
from specverse.db import get_db, transaction, find_one
from specverse.errors import AppError, bad_request, conflict
from specverse.audit import log_audit_action
from specverse.notifications import notify_users
from specverse import datasheets as ds

# Manager + Admin review templates
REVIEWER_ROLE_IDS = [ADMIN_ROLE_ID, 2]


def validate_template_payload(payload: dict):
    errors = ds.validate_structure(payload)
    if errors:
        raise bad_request("Validation failed", errors)


def create_template(account_id: int, payload: dict, user_id: int) -> dict:
    validate_template_payload(payload)
    with transaction() as db:
        ds.require_unique_tag(db, account_id, payload.get("equipmentTagNum"), True)
        row = ds.new_sheet_row(db, account_id, True, ds.header_from(payload), user_id)
        row["revisionNum"] = 0
        row["subsheets"] = ds.build_subsheets(db, payload.get("subsheets"))
        db["sheets"].append(row)
    log_audit_action("Sheets", row["sheetId"], "Create Template", user_id, account_id,
                     changes={"sheetName": row["sheetName"]})
    notify_users(account_id, "New template", f"Template '{row['sheetName']}' was created.",
                 "Template", user_id, recipient_role_ids=REVIEWER_ROLE_IDS, sheet_id=row["sheetId"])
    return ds.to_unified(get_db(), row)


def get_template(account_id: int, sheet_id: int) -> dict:
    db = get_db()
    return ds.to_unified(db, ds.get_sheet_row(db, account_id, sheet_id, is_template=True))


def list_templates(account_id: int, filters: dict = None) -> list:
    f = filters or {}
    rows = [s for s in get_db()["sheets"] if s["accountId"] == account_id and s["isTemplate"]]
    if f.get("status"):
        rows = [s for s in rows if s["status"] == f["status"]]
    for key in ("clientId", "projectId", "categoryId", "areaId"):
        if f.get(key) is not None:
            rows = [s for s in rows if s.get(key) == int(f[key])]
    if f.get("latestOnly"):
        rows = [s for s in rows if s.get("isLatest")]
    if f.get("search"):
        needle = f["search"].strip().lower()
        rows = [s for s in rows if needle in (s.get("sheetName") or "").lower()
                or needle in (s.get("equipmentTagNum") or "").lower()
                or needle in (s.get("equipmentName") or "").lower()]
    rows.sort(key=lambda s: s["sheetId"], reverse=True)
    return [ds.summary(s) for s in rows]


def update_template(account_id: int, sheet_id: int, payload: dict, user_id: int) -> dict:
    validate_template_payload(payload)
    with transaction() as db:
        row = ds.get_sheet_row(db, account_id, sheet_id, is_template=True)
        if row["status"] not in EDITABLE_STATUSES:
            raise conflict(f"Template cannot be edited when status is {row['status']}")
        ds.require_unique_tag(db, account_id, payload.get("equipmentTagNum"), True, exclude_id=sheet_id)
        before = {k: row.get(k) for k in ds.HEADER_FIELDS}
        row.update(ds.header_from(payload, row))
        row["revisionNum"] = before["revisionNum"]
        row["subsheets"] = ds.build_subsheets(db, payload.get("subsheets"), existing=row["subsheets"])
        if not ds.bump_rejected_to_modified_draft(row, user_id):
            row["modifiedById"] = user_id
            row["modifiedByDate"] = datetime.now().isoformat()
        row["updatedAt"] = datetime.now().isoformat()
        changes = {k: {"old": before[k], "new": row.get(k)} for k in before if before[k] != row.get(k)}
    log_audit_action("Sheets", sheet_id, "Update Template", user_id, account_id, changes=changes or None)
    return ds.to_unified(get_db(), row)


def verify_template(account_id: int, sheet_id: int, action: str, comment: str, user_id: int) -> dict:
    if action not in ("verify", "reject"):
        raise bad_request("Action must be verify or reject")
    if action == "reject" and not (comment or "").strip():
        raise bad_request("A rejection comment is required")
    now = datetime.now().isoformat()
    with transaction() as db:
        row = ds.get_sheet_row(db, account_id, sheet_id, is_template=True)
        if row["status"] not in VERIFIABLE_STATUSES:
            raise conflict(f"Template cannot be verified or rejected when status is {row['status']}")
        if action == "verify":
            row["status"] = "Verified"
            row["verifiedById"] = user_id
            row["verifiedByDate"] = now
        else:
            row["status"] = "Rejected"
            row["rejectedById"] = user_id
            row["rejectedByDate"] = now
            row["rejectComment"] = comment.strip()
        row["updatedAt"] = now
    log_audit_action("Sheets", sheet_id, "Verify Template" if action == "verify" else "Reject Template",
                     user_id, account_id, changes={"status": row["status"], "comment": comment})
    notify_users(account_id, f"Template {row['status'].lower()}",
                 f"Template '{row['sheetName']}' was {row['status'].lower()}.", "Template", user_id,
                 recipient_user_ids=[row["preparedById"]], sheet_id=sheet_id)
    return ds.summary(row)


def approve_template(account_id: int, sheet_id: int, user_id: int) -> dict:
    now = datetime.now().isoformat()
    with transaction() as db:
        row = ds.get_sheet_row(db, account_id, sheet_id, is_template=True)
        if row["status"] != "Verified":
            raise conflict("Template can only be approved when status is Verified")
        row["status"] = "Approved"
        row["approvedById"] = user_id
        row["approvedByDate"] = now
        row["updatedAt"] = now
    log_audit_action("Sheets", sheet_id, "Approve Template", user_id, account_id, changes={"status": "Approved"})
    notify_users(account_id, "Template approved", f"Template '{row['sheetName']}' was approved.", "Template",
                 user_id, recipient_user_ids=[row["preparedById"]], sheet_id=sheet_id)
    return ds.summary(row)


def clone_template(account_id: int, sheet_id: int, overrides: dict, user_id: int) -> dict:
    """Independent copy as a new Draft template (fresh lineage)."""
    overrides = overrides or {}
    with transaction() as db:
        source = ds.get_sheet_row(db, account_id, sheet_id, is_template=True)
        tag = overrides.get("equipmentTagNum", source.get("equipmentTagNum"))
        ds.require_unique_tag(db, account_id, tag, True)
        row = ds.duplicate_sheet(db, source, user_id, overrides)
    log_audit_action("Sheets", row["sheetId"], "Clone Template", user_id, account_id,
                     changes={"sourceSheetId": sheet_id})
    return ds.to_unified(get_db(), row)


def revise_template(account_id: int, sheet_id: int, user_id: int) -> dict:
    with transaction() as db:
        source = ds.get_sheet_row(db, account_id, sheet_id, is_template=True)
        row = ds.revise_sheet(db, source, user_id)
    log_audit_action("Sheets", row["sheetId"], "Revise Template", user_id, account_id,
                     changes={"parentSheetId": sheet_id, "revisionNum": row["revisionNum"]})
    return ds.to_unified(get_db(), row)


def get_template_structure(account_id: int, sheet_id: int) -> dict:
    db = get_db()
    row = ds.get_sheet_row(db, account_id, sheet_id, is_template=True)
    return {
        "subsheets": [{"id": s["id"], "name": s["name"]} for s in row["subsheets"]],
        "fields": [{"id": f["id"], "label": f["label"], "subId": s["id"], "infoType": f["infoType"],
                    "uom": f.get("uom", ""), "required": f.get("required", False)}
                   for s, f in ds.iter_fields(row)],
    }


def equipment_tag_exists(account_id: int, tag: str, exclude_id: int = None, is_template: bool = True) -> bool:
    return ds.equipment_tag_exists(get_db(), account_id, tag, is_template, exclude_id)


def _descendants(db: dict, root_id: int) -> list:
    out, frontier = [], [root_id]
    while frontier:
        children = [s for s in db["sheets"] if s.get("parentSheetId") in frontier and s["isTemplate"]]
        out.extend(children)
        frontier = [c["sheetId"] for c in children]
    return out


def get_latest_approved_template_id(account_id: int, template_id: int) -> int:
    """Resolve the single Approved + latest template in the revision chain of template_id."""
    db = get_db()
    source = find_one(db["sheets"], sheetId=template_id)
    if not source or not source["isTemplate"] or source["accountId"] != account_id:
        raise AppError(409, "Source is not a template")
    chain = [source] + _descendants(db, template_id)
    hits = [s for s in chain if s["status"] == "Approved" and s.get("isLatest")]
    if not hits:
        raise AppError(409, "No latest approved template found for this template")
    if len(hits) > 1:
        raise AppError(409, "Multiple latest approved templates found for this template")
    return hits[0]["sheetId"]
