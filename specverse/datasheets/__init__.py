"""
SpecVerse — Datasheet Documents (shared by templates and filled sheets)

A sheet is one document in the "sheets" collection:
  header      — HEADER_FIELDS (names, doc numbers, equipment data, reference ids)
  workflow    — status + preparedBy/verifiedBy/approvedBy/modifiedBy/rejectedBy stamps
  lineage     — isTemplate, templateId, parentSheetId, isLatest, isSuperseded
  subsheets   — [{id, originalId, name, orderIndex, fields: [{id, originalId, label,
                  infoType, uom, sortOrder, required, options, value}]}]

Identity across copies:
  template field           infoTemplateId = field.id
  filled-sheet field       originalId = the template field id it was created from
  revised copy             originalId carried forward, so diffs line up across versions

Versioning:
  duplicate  → new Draft, revision 0, no parent, doc numbers blanked, notes copied, attachments linked
  revise     → only from Verified/Approved; Modified Draft, revision+1, parent = source,
               source superseded and no longer latest
"""
import copy
from datetime import datetime

from specverse.config import HEADER_FIELDS, INFO_TYPES, REVISABLE_STATUSES
from specverse.db import next_id, find_one
from specverse.errors import AppError, conflict, not_found

DOC_NUMBER_FIELDS = ["clientDocNum", "clientProjectNum", "companyDocNum", "companyProjectNum"]
WORKFLOW_STAMPS = ["verifiedById", "verifiedByDate", "approvedById", "approvedByDate",
                   "modifiedById", "modifiedByDate", "rejectedById", "rejectedByDate", "rejectComment"]

_REF_NAMES = [
    # (collection, sheet column, view key, name column)
    ("clients", "clientId", "clientName", "clientName"),
    ("projects", "projectId", "projectName", "projName"),
    ("categories", "categoryId", "categoryName", "categoryName"),
    ("areas", "areaId", "areaName", "areaName"),
    ("manufacturers", "manuId", "manuName", "manuName"),
    ("suppliers", "suppId", "suppName", "suppName"),
]


# ============================================================
# HEADER & STRUCTURE
# ============================================================
def header_from(payload: dict, base: dict = None) -> dict:
    """HEADER_FIELDS taken from payload, falling back to base (then None)."""
    base = base or {}
    return {k: payload[k] if k in payload else base.get(k) for k in HEADER_FIELDS}


def _clean_options(options) -> list:
    if not options:
        return []
    return [str(o) for o in options if o is not None and str(o).strip() != ""]


def build_subsheets(db: dict, subsheets_payload: list, existing: list = None) -> list:
    """Turn an editor payload into stored subsheets.

    Ids present in `existing` are kept; anything else gets a fresh id.
    """
    known_subs = {s["id"]: s for s in (existing or [])}
    known_fields = {f["id"]: f for s in (existing or []) for f in s["fields"]}
    out = []
    for si, sp in enumerate(subsheets_payload or []):
        prev_sub = known_subs.get(sp.get("id"))
        sub = {
            "id": prev_sub["id"] if prev_sub else next_id(db, "subsheets"),
            "originalId": prev_sub.get("originalId") if prev_sub else sp.get("originalId"),
            "name": (sp.get("name") or "").strip(),
            "orderIndex": si,
            "fields": [],
        }
        for fi, fp in enumerate(sp.get("fields") or []):
            prev = known_fields.get(fp.get("id"))
            sub["fields"].append({
                "id": prev["id"] if prev else next_id(db, "fields"),
                "originalId": prev.get("originalId") if prev else fp.get("originalId"),
                "label": (fp.get("label") or "").strip(),
                "infoType": fp.get("infoType") or "varchar",
                "uom": fp.get("uom") or "",
                "sortOrder": fp.get("sortOrder", fi),
                "required": bool(fp.get("required", False)),
                "options": _clean_options(fp.get("options")),
                "value": prev.get("value") if prev else None,
            })
        out.append(sub)
    return out


def copy_structure(db: dict, subsheets: list, lineage_from_ids: bool, keep_values: bool) -> list:
    """Copy subsheets/fields with fresh ids.

    lineage_from_ids: originalId points at the source (its originalId, else its id);
    otherwise the copy starts a new lineage.
    """
    out = []
    for s in subsheets:
        new_sub = {
            "id": next_id(db, "subsheets"),
            "originalId": (s.get("originalId") or s["id"]) if lineage_from_ids else None,
            "name": s["name"],
            "orderIndex": s.get("orderIndex", 0),
            "fields": [],
        }
        for f in s["fields"]:
            nf = copy.deepcopy(f)
            nf["id"] = next_id(db, "fields")
            nf["originalId"] = (f.get("originalId") or f["id"]) if lineage_from_ids else None
            if not keep_values:
                nf["value"] = None
            new_sub["fields"].append(nf)
        out.append(new_sub)
    return out


def iter_fields(sheet: dict):
    for s in sheet.get("subsheets", []):
        for f in s.get("fields", []):
            yield s, f


def info_template_id(sheet: dict, field: dict) -> int:
    """Template field id a field answers to."""
    if sheet.get("isTemplate"):
        return field["id"]
    return field.get("originalId") or field["id"]


def field_meta(sheet: dict) -> dict:
    """{infoTemplateId: {label, infoType, required, options, uom}} for value validation."""
    return {info_template_id(sheet, f): {"label": f["label"], "infoType": f["infoType"],
                                         "required": f.get("required", False),
                                         "options": f.get("options") or [], "uom": f.get("uom", "")}
            for _, f in iter_fields(sheet)}


def validate_structure(payload: dict) -> list:
    """Field-path errors for a template editor payload."""
    errors = []
    for k in ("sheetName", "equipmentName", "equipmentTagNum"):
        if not str(payload.get(k) or "").strip():
            errors.append({"path": k, "message": "This field is required."})
    subsheets = payload.get("subsheets") or []
    if not subsheets:
        errors.append({"path": "subsheets", "message": "At least one subsheet is required."})
    seen_subs = set()
    for si, s in enumerate(subsheets):
        name = (s.get("name") or "").strip()
        if not name:
            errors.append({"path": f"subsheets[{si}].name", "message": "Subsheet name is required."})
        elif name.lower() in seen_subs:
            errors.append({"path": f"subsheets[{si}].name", "message": "Subsheet names must be unique."})
        seen_subs.add(name.lower())
        labels = set()
        for fi, f in enumerate(s.get("fields") or []):
            path = f"subsheets[{si}].fields[{fi}]"
            label = (f.get("label") or "").strip()
            if not label:
                errors.append({"path": f"{path}.label", "message": "Field label is required."})
            elif label.lower() in labels:
                errors.append({"path": f"{path}.label", "message": "Field labels must be unique within a subsheet."})
            labels.add(label.lower())
            if (f.get("infoType") or "varchar") not in INFO_TYPES:
                errors.append({"path": f"{path}.infoType", "message": f"Info type must be one of {', '.join(INFO_TYPES)}."})
    return errors


# ============================================================
# ROWS
# ============================================================
def new_sheet_row(db: dict, account_id: int, is_template: bool, header: dict, user_id: int) -> dict:
    now = datetime.now().isoformat()
    row = {
        "sheetId": next_id(db, "sheets"),
        "accountId": account_id,
        "isTemplate": is_template,
        "templateId": None,
        "parentSheetId": None,
        "isLatest": True,
        "isSuperseded": False,
        **header,
        "status": "Draft",
        "preparedById": user_id,
        "preparedByDate": now,
        "subsheets": [],
        "createdAt": now,
        "updatedAt": now,
    }
    for k in WORKFLOW_STAMPS:
        row[k] = None
    if row.get("revisionNum") is None:
        row["revisionNum"] = 0
    return row


def get_sheet_row(db: dict, account_id: int, sheet_id: int, is_template: bool = None) -> dict:
    """Sheet owned by the account; other accounts' sheets read as missing."""
    row = find_one(db["sheets"], sheetId=sheet_id)
    if not row or row["accountId"] != account_id:
        raise not_found("Template" if is_template else "Sheet")
    if is_template is not None and bool(row["isTemplate"]) != is_template:
        raise not_found("Template" if is_template else "Sheet")
    return row


def _user_name(db: dict, user_id) -> str:
    if user_id is None:
        return None
    u = find_one(db["users"], userId=user_id)
    if not u:
        return None
    return f"{u['firstName']} {u['lastName']}".strip() or u["email"]


def to_unified(db: dict, sheet: dict) -> dict:
    """Full UnifiedSheet view: stored document plus display names."""
    view = copy.deepcopy(sheet)
    for coll, key, view_key, name_col in _REF_NAMES:
        ref = find_one(db[coll], **{key: sheet[key]}) if sheet.get(key) is not None else None
        view[view_key] = ref[name_col] if ref else None
    for who in ("preparedBy", "verifiedBy", "approvedBy", "modifiedBy", "rejectedBy"):
        view[f"{who}Name"] = _user_name(db, sheet.get(f"{who}Id"))
    if sheet.get("templateId"):
        tpl = find_one(db["sheets"], sheetId=sheet["templateId"])
        view["templateName"] = tpl["sheetName"] if tpl else None
    return view


def summary(sheet: dict) -> dict:
    return {k: sheet.get(k) for k in (
        "sheetId", "sheetName", "sheetDesc", "status", "isTemplate", "templateId", "revisionNum",
        "equipmentName", "equipmentTagNum", "clientId", "projectId", "categoryId", "areaId",
        "isLatest", "isSuperseded", "parentSheetId", "preparedById", "preparedByDate", "updatedAt")}


def equipment_tag_exists(db: dict, account_id: int, tag: str, is_template: bool, exclude_id: int = None) -> bool:
    tag = (tag or "").strip().lower()
    if not tag:
        return False
    return any(s["accountId"] == account_id and bool(s["isTemplate"]) == is_template
               and s["sheetId"] != exclude_id and not s.get("isSuperseded")
               and (s.get("equipmentTagNum") or "").strip().lower() == tag
               for s in db["sheets"])


def bump_rejected_to_modified_draft(sheet: dict, user_id: int) -> bool:
    """Editing a Rejected sheet moves it back into the workflow as Modified Draft."""
    if sheet["status"] != "Rejected":
        return False
    sheet["status"] = "Modified Draft"
    sheet["rejectedById"] = None
    sheet["rejectedByDate"] = None
    sheet["rejectComment"] = None
    sheet["modifiedById"] = user_id
    sheet["modifiedByDate"] = datetime.now().isoformat()
    return True


# ============================================================
# VERSIONING
# ============================================================
def _copy_notes_and_links(db: dict, source_id: int, new_id: int, user_id: int):
    from specverse.notes import copy_notes
    from specverse.attachments import link_attachments
    copy_notes(db, source_id, new_id, user_id)
    link_attachments(db, source_id, new_id)


def duplicate_sheet(db: dict, source: dict, user_id: int, overrides: dict = None) -> dict:
    """Independent copy: Draft, revision 0, no parent, doc numbers blanked."""
    header = header_from(overrides or {}, source)
    for k in DOC_NUMBER_FIELDS:
        if not overrides or k not in overrides:
            header[k] = None
    header["revisionNum"] = 0
    row = new_sheet_row(db, source["accountId"], source["isTemplate"], header, user_id)
    row["templateId"] = source.get("templateId")
    row["subsheets"] = copy_structure(db, source["subsheets"], lineage_from_ids=not source["isTemplate"],
                                      keep_values=not source["isTemplate"])
    db["sheets"].append(row)
    _copy_notes_and_links(db, source["sheetId"], row["sheetId"], user_id)
    return row


def revise_sheet(db: dict, source: dict, user_id: int) -> dict:
    """Next revision of a Verified/Approved sheet; the source is superseded."""
    if source["status"] not in REVISABLE_STATUSES:
        raise AppError(409, "Create Revision allowed only from Verified/Approved")
    header = header_from({}, source)
    header["revisionNum"] = int(source.get("revisionNum") or 0) + 1
    header["revisionDate"] = datetime.now().date().isoformat()
    row = new_sheet_row(db, source["accountId"], source["isTemplate"], header, source.get("preparedById"))
    row["preparedByDate"] = source.get("preparedByDate")
    row["status"] = "Modified Draft"
    row["modifiedById"] = user_id
    row["modifiedByDate"] = datetime.now().isoformat()
    row["parentSheetId"] = source["sheetId"]
    row["templateId"] = source.get("templateId")
    row["subsheets"] = copy_structure(db, source["subsheets"], lineage_from_ids=True,
                                      keep_values=not source["isTemplate"])
    source["isSuperseded"] = True
    source["isLatest"] = False
    db["sheets"].append(row)
    _copy_notes_and_links(db, source["sheetId"], row["sheetId"], user_id)
    return row


def compute_completeness(sheet: dict) -> dict:
    required = [f for _, f in iter_fields(sheet) if f.get("required")]
    filled = [f for f in required if str(f.get("value") if f.get("value") is not None else "").strip()]
    missing = [{"infoTemplateId": info_template_id(sheet, f), "label": f["label"]}
               for f in required if f not in filled]
    percent = round(100.0 * len(filled) / len(required), 1) if required else 100.0
    return {"required": len(required), "filled": len(filled), "percent": percent, "missing": missing}


def require_unique_tag(db: dict, account_id: int, tag: str, is_template: bool, exclude_id: int = None):
    if equipment_tag_exists(db, account_id, tag, is_template, exclude_id):
        raise conflict("Equipment tag already exists")
