"""
SpecVerse — Filled Datasheets

A filled sheet is created from an Approved, latest template: header copied (and
overridable), structure copied with originalId pointing at the template field, values
supplied as fieldValues keyed by str(infoTemplateId).

Workflow:
  Draft / Modified Draft ──verify──→ Verified ──approve──→ Approved (locked)
                          └─reject─→ Rejected    └─reject─→ Rejected
  Any edit moves the sheet to Modified Draft and records a revision snapshot.
"""
import math
import re
from datetime import datetime

from specverse.config import VERIFIABLE_STATUSES, ADMIN_ROLE_ID
from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import AppError, bad_request, conflict
from specverse.audit import log_audit_action, log_value_change
from specverse.notifications import notify_users
from specverse import datasheets as ds

REVIEWER_ROLE_IDS = [ADMIN_ROLE_ID, 2]
OPTIONS_PREVIEW_LIMIT = 10
_INT_RE = re.compile(r"^[+-]?\d+$")


# ============================================================
# VALUE VALIDATION
# ============================================================
def _is_blank(value) -> bool:
    return value is None or str(value).strip() == ""


def _is_number(text: str) -> bool:
    try:
        return math.isfinite(float(text))
    except ValueError:
        return False


def validate_filled_values(field_meta: dict, values: dict) -> list:
    """Check values (keyed by str(infoTemplateId)) against field metadata.

    Blank optional values are skipped. Returns [{infoTemplateId, message, ...}].
    """
    errors = []
    for tid, meta in field_meta.items():
        raw = values.get(str(tid))
        if _is_blank(raw):
            if meta.get("required"):
                errors.append({"infoTemplateId": tid, "label": meta.get("label", ""),
                               "message": "This field is required."})
            continue
        text = str(raw).strip()
        info_type = meta.get("infoType", "varchar")
        if info_type == "int" and not _INT_RE.match(text):
            errors.append({"infoTemplateId": tid, "label": meta.get("label", ""),
                           "message": "Enter a whole number."})
            continue
        if info_type == "decimal" and not _is_number(text):
            errors.append({"infoTemplateId": tid, "label": meta.get("label", ""),
                           "message": "Enter a number."})
            continue
        options = [str(o).strip() for o in (meta.get("options") or [])]
        if options and text not in options:
            errors.append({"infoTemplateId": tid, "label": meta.get("label", ""),
                           "message": "Choose a valid option.",
                           "optionsPreview": options[:OPTIONS_PREVIEW_LIMIT],
                           "optionsCount": len(options)})
    return errors


def _raise_if_invalid(meta: dict, values: dict):
    errors = validate_filled_values(meta, values)
    if errors:
        raise bad_request("Validation failed", errors)


def _normalize_values(values) -> dict:
    return {str(k): ("" if v is None else str(v)) for k, v in (values or {}).items()}


def current_values(sheet: dict) -> dict:
    return {str(ds.info_template_id(sheet, f)): ("" if f.get("value") is None else str(f["value"]))
            for _, f in ds.iter_fields(sheet)}


# ============================================================
# CREATE
# ============================================================
def _copy_template_structure(db: dict, template: dict, values: dict) -> list:
    out = []
    for s in template["subsheets"]:
        sub = {"id": next_id(db, "subsheets"), "originalId": s["id"], "name": s["name"],
               "orderIndex": s.get("orderIndex", 0), "fields": []}
        for f in s["fields"]:
            v = values.get(str(f["id"]))
            sub["fields"].append({
                "id": next_id(db, "fields"), "originalId": f["id"], "label": f["label"],
                "infoType": f["infoType"], "uom": f.get("uom", ""), "sortOrder": f.get("sortOrder", 0),
                "required": f.get("required", False), "options": list(f.get("options") or []),
                "value": None if _is_blank(v) else str(v).strip(),
            })
        out.append(sub)
    return out


def create_filled_sheet(account_id: int, payload: dict, user_id: int) -> dict:
    from specverse.revisions import create_revision
    template_id = payload.get("templateId")
    if not template_id:
        raise bad_request("templateId is required")
    values = _normalize_values(payload.get("fieldValues"))
    with transaction() as db:
        template = ds.get_sheet_row(db, account_id, int(template_id), is_template=True)
        if template["status"] != "Approved":
            raise conflict("Filled sheets can only be created from an approved template")
        if not template.get("isLatest"):
            raise conflict("Filled sheets can only be created from the latest version of the template")
        _raise_if_invalid(ds.field_meta(template), values)
        header = ds.header_from(payload, template)
        ds.require_unique_tag(db, account_id, header.get("equipmentTagNum"), False)
        row = ds.new_sheet_row(db, account_id, False, header, user_id)
        row["templateId"] = template["sheetId"]
        row["subsheets"] = _copy_template_structure(db, template, values)
        db["sheets"].append(row)
        create_revision(db, row, user_id, comment="Created")
    log_audit_action("Sheets", row["sheetId"], "Create Filled Sheet", user_id, account_id,
                     changes={"templateId": template["sheetId"], "equipmentTagNum": row.get("equipmentTagNum")})
    notify_users(account_id, "New datasheet", f"Datasheet '{row.get('sheetName')}' was created.", "Datasheet",
                 user_id, recipient_role_ids=REVIEWER_ROLE_IDS, sheet_id=row["sheetId"])
    return ds.to_unified(get_db(), row)


# ============================================================
# READ
# ============================================================
def get_filled_sheet(account_id: int, sheet_id: int) -> dict:
    db = get_db()
    return ds.to_unified(db, ds.get_sheet_row(db, account_id, sheet_id, is_template=False))


def list_filled_sheets(account_id: int, filters: dict = None) -> list:
    f = filters or {}
    rows = [s for s in get_db()["sheets"] if s["accountId"] == account_id and not s["isTemplate"]]
    if f.get("status"):
        rows = [s for s in rows if s["status"] == f["status"]]
    for key in ("templateId", "clientId", "projectId", "categoryId", "areaId"):
        if f.get(key) is not None:
            rows = [s for s in rows if s.get(key) == int(f[key])]
    if not f.get("includeSuperseded"):
        rows = [s for s in rows if not s.get("isSuperseded")]
    if f.get("search"):
        needle = f["search"].strip().lower()
        rows = [s for s in rows if needle in (s.get("sheetName") or "").lower()
                or needle in (s.get("equipmentTagNum") or "").lower()
                or needle in (s.get("equipmentName") or "").lower()]
    rows.sort(key=lambda s: s["sheetId"], reverse=True)
    return [ds.summary(s) for s in rows]


def sheet_belongs_to_account(sheet_id: int, account_id: int) -> bool:
    row = find_one(get_db()["sheets"], sheetId=sheet_id)
    return bool(row and row["accountId"] == account_id and not row["isTemplate"])


def get_completeness(account_id: int, sheet_id: int) -> dict:
    db = get_db()
    return ds.compute_completeness(ds.get_sheet_row(db, account_id, sheet_id, is_template=False))


# ============================================================
# UPDATE
# ============================================================
def apply_update(db: dict, row: dict, payload: dict, user_id: int) -> list:
    """Patch header + values on a loaded filled sheet. Caller holds the transaction.

    Returns the list of value changes written to the change log.
    """
    if row["status"] == "Approved":
        raise conflict("Approved sheets are locked; create a revision to make changes")
    merged = current_values(row)
    incoming = _normalize_values(payload.get("fieldValues"))
    unknown = [k for k in incoming if k not in merged]
    if unknown:
        raise bad_request("Validation failed", [{"infoTemplateId": k, "message": "Unknown field."} for k in unknown])
    merged.update(incoming)
    _raise_if_invalid(ds.field_meta(row), merged)

    for k in ds.HEADER_FIELDS:
        if k in payload and k != "revisionNum":
            row[k] = payload[k]
    if "equipmentTagNum" in payload:
        ds.require_unique_tag(db, row["accountId"], row.get("equipmentTagNum"), False, exclude_id=row["sheetId"])

    changes = []
    for _, f in ds.iter_fields(row):
        key = str(ds.info_template_id(row, f))
        if key not in incoming:
            continue
        new = None if _is_blank(incoming[key]) else incoming[key].strip()
        if (f.get("value") or None) != new:
            log_value_change(db, row["sheetId"], int(key), f.get("value"), new, f.get("uom"), user_id)
            changes.append({"infoTemplateId": int(key), "old": f.get("value"), "new": new})
            f["value"] = new

    now = datetime.now().isoformat()
    if not ds.bump_rejected_to_modified_draft(row, user_id):
        row["status"] = "Modified Draft"
        row["modifiedById"] = user_id
        row["modifiedByDate"] = now
    row["updatedAt"] = now
    return changes


def update_filled_sheet(account_id: int, sheet_id: int, payload: dict, user_id: int,
                        create_revision: bool = True, comment: str = None) -> dict:
    from specverse.revisions import create_revision as record_revision
    with transaction() as db:
        row = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
        changes = apply_update(db, row, payload, user_id)
        if create_revision:
            record_revision(db, row, user_id, comment=comment or "Updated")
    log_audit_action("Sheets", sheet_id, "Update Filled Sheet", user_id, account_id,
                     changes={"values": changes} if changes else None)
    return ds.to_unified(get_db(), row)


# ============================================================
# WORKFLOW
# ============================================================
def _stamp_reject(row: dict, user_id: int, comment: str, now: str):
    row["status"] = "Rejected"
    row["rejectedById"] = user_id
    row["rejectedByDate"] = now
    row["rejectComment"] = comment.strip()


def verify_filled_sheet(account_id: int, sheet_id: int, action: str, comment: str, user_id: int) -> dict:
    if action not in ("verify", "reject"):
        raise bad_request("Action must be verify or reject")
    if action == "reject" and _is_blank(comment):
        raise bad_request("A rejection comment is required")
    now = datetime.now().isoformat()
    with transaction() as db:
        row = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
        if row["status"] not in VERIFIABLE_STATUSES:
            raise conflict("Filled sheet can only be verified or rejected when status is Draft or Modified Draft")
        if action == "verify":
            row["status"] = "Verified"
            row["verifiedById"] = user_id
            row["verifiedByDate"] = now
        else:
            _stamp_reject(row, user_id, comment, now)
        row["updatedAt"] = now
    log_audit_action("Sheets", sheet_id, "Verify Filled Sheet" if action == "verify" else "Reject Filled Sheet",
                     user_id, account_id, changes={"status": row["status"], "comment": comment})
    notify_users(account_id, f"Datasheet {row['status'].lower()}",
                 f"Datasheet '{row.get('sheetName')}' was {row['status'].lower()}.", "Datasheet", user_id,
                 recipient_user_ids=[row["preparedById"]], sheet_id=sheet_id)
    return ds.summary(row)


def approve_filled_sheet(account_id: int, sheet_id: int, action: str, comment: str, user_id: int) -> dict:
    if action not in ("approve", "reject"):
        raise bad_request("Action must be approve or reject")
    if action == "reject" and _is_blank(comment):
        raise bad_request("A rejection comment is required")
    now = datetime.now().isoformat()
    with transaction() as db:
        row = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
        if row["status"] != "Verified":
            raise AppError(409, "Filled sheet can only be approved or rejected when status is Verified")
        if action == "approve":
            row["status"] = "Approved"
            row["approvedById"] = user_id
            row["approvedByDate"] = now
        else:
            _stamp_reject(row, user_id, comment, now)
        row["updatedAt"] = now
    log_audit_action("Sheets", sheet_id, "Approve Filled Sheet" if action == "approve" else "Reject Filled Sheet",
                     user_id, account_id, changes={"status": row["status"], "comment": comment})
    notify_users(account_id, f"Datasheet {row['status'].lower()}",
                 f"Datasheet '{row.get('sheetName')}' was {row['status'].lower()}.", "Datasheet", user_id,
                 recipient_user_ids=[row["preparedById"]], sheet_id=sheet_id)
    return ds.summary(row)


# ============================================================
# CLONE / REVISE
# ============================================================
def clone_filled_sheet(account_id: int, sheet_id: int, overrides: dict, user_id: int) -> dict:
    """New filled sheet from the latest approved template of the source's lineage.

    Header and values come from the source; overrides win. Values for fields the
    newer template no longer has are dropped.
    """
    from specverse.templates import get_latest_approved_template_id
    overrides = overrides or {}
    tag = (overrides.get("equipmentTagNum") or "").strip()
    if not tag:
        raise bad_request("equipmentTagNum is required")
    db = get_db()
    source = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
    if ds.equipment_tag_exists(db, account_id, tag, False):
        raise conflict("Equipment tag already exists")
    if not source.get("templateId"):
        raise bad_request("Source sheet is not a filled sheet or has no template.")
    template_id = get_latest_approved_template_id(account_id, source["templateId"])
    template = ds.get_sheet_row(db, account_id, template_id, is_template=True)

    # match values on the root field of the template lineage
    src_template = find_one(db["sheets"], sheetId=source["templateId"])
    root_of = {f["id"]: f.get("originalId") or f["id"] for _, f in ds.iter_fields(src_template or {})}
    by_root = {}
    for _, f in ds.iter_fields(source):
        tid = ds.info_template_id(source, f)
        if f.get("value") is not None:
            by_root[root_of.get(tid, tid)] = f["value"]
    values = {}
    for _, f in ds.iter_fields(template):
        root = f.get("originalId") or f["id"]
        if root in by_root:
            values[str(f["id"])] = by_root[root]
    values.update(_normalize_values(overrides.get("fieldValues")))

    payload = {**ds.header_from(overrides, source), "templateId": template_id, "fieldValues": values}
    payload["equipmentTagNum"] = tag
    for k in ds.DOC_NUMBER_FIELDS:
        if k not in overrides:
            payload[k] = None
    return create_filled_sheet(account_id, payload, user_id)


def revise_filled_sheet(account_id: int, sheet_id: int, user_id: int) -> dict:
    from specverse.revisions import create_revision
    with transaction() as db:
        source = ds.get_sheet_row(db, account_id, sheet_id, is_template=False)
        row = ds.revise_sheet(db, source, user_id)
        create_revision(db, row, user_id, comment=f"Revision {row['revisionNum']} created from sheet #{sheet_id}")
    log_audit_action("Sheets", row["sheetId"], "Revise Filled Sheet", user_id, account_id,
                     changes={"parentSheetId": sheet_id, "revisionNum": row["revisionNum"]})
    return ds.to_unified(get_db(), row)
