"""
SpecVerse — Print Layouts

A layout belongs to one template and describes how its sheets print:
  meta          — paper size, orientation, grid (cols / gap / margins), theme, version
  regions       — Header (locked) / Body (dynamic) / Footer (locked) rectangles on the grid
  blocks        — typed content placed inside a region
  body slots    — which subsheet goes where in the two-column body
  subsheet slots— per subsheet, which fields print in the left / right column and in what order

Body slot grid (SlotGrid):
  row = one width-2 slot, or two consecutive width-1 slots, or a lone width-1 slot
  merge  two singles → left becomes width 2, right removed, empty auto slot appended
  split  width 2 → width 1 + empty slot inserted after it, last auto slot (else last slot) removed
  The slot count always equals the template's subsheet count.
"""
import uuid
from datetime import datetime

from specverse.config import (PAPER_SIZES, ORIENTATIONS, DEFAULT_GRID_COLS, DEFAULT_GRID_GAP_MM,
                              DEFAULT_MARGINS_MM, DEFAULT_REGIONS, REGION_KINDS, BLOCK_TYPES)
from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import bad_request, not_found
from specverse.audit import log_audit_action
from specverse import datasheets as ds


# ============================================================
# SLOT GRID
# ============================================================
class SlotGrid:
    """In-memory body slot model used by the layout builder."""

    def __init__(self, slots: list = None, last_auto_key: str = None):
        self.slots = [self._slot(s, i) for i, s in enumerate(slots or [])]
        self.last_auto_key = last_auto_key

    @staticmethod
    def _slot(s: dict, i: int) -> dict:
        sub = s.get("subsheetId")
        return {"key": s.get("key") or f"slot-{i}",
                "width": 2 if s.get("width") == 2 else 1,
                "subsheetId": int(sub) if sub not in (None, "") else None,
                "isAuto": bool(s.get("isAuto", False))}

    @classmethod
    def init(cls, count: int, saved_rows: list = None) -> "SlotGrid":
        ordered = sorted(saved_rows or [], key=lambda r: r["slotIndex"])[:count]
        slots = [{"key": f"slot-{i}", "width": r.get("width"), "subsheetId": r.get("subsheetId")}
                 for i, r in enumerate(ordered)]
        while len(slots) < count:
            slots.append({"key": f"slot-{len(slots)}", "width": 1})
        return cls(slots)

    def build_rows(self) -> list:
        """Slot indexes per row."""
        rows, i = [], 0
        while i < len(self.slots):
            if self.slots[i]["width"] == 2:
                rows.append([i])
                i += 1
            elif i + 1 < len(self.slots) and self.slots[i + 1]["width"] == 1:
                rows.append([i, i + 1])
                i += 2
            else:
                rows.append([i])
                i += 1
        return rows

    def _check_index(self, idx: int):
        if not 0 <= idx < len(self.slots):
            raise ValueError(f"Slot {idx} does not exist")

    def assign(self, idx: int, subsheet_id: int):
        """Put a subsheet in a slot, replacing whatever was there."""
        self._check_index(idx)
        self.slots[idx]["subsheetId"] = int(subsheet_id)

    def unassign(self, idx: int):
        self._check_index(idx)
        self.slots[idx]["subsheetId"] = None

    def move(self, src: int, dst: int):
        """Move src's subsheet to dst; an occupied dst swaps back into src."""
        self._check_index(src)
        self._check_index(dst)
        if src == dst:
            return
        if self.slots[src]["subsheetId"] is None:
            raise ValueError(f"Slot {src} is empty")
        self.slots[src]["subsheetId"], self.slots[dst]["subsheetId"] = \
            self.slots[dst]["subsheetId"], self.slots[src]["subsheetId"]

    def merge_row(self, row: int):
        rows = self.build_rows()
        if not 0 <= row < len(rows) or len(rows[row]) != 2:
            raise ValueError(f"Row {row + 1} does not hold two single slots")
        left, right = rows[row]
        self.slots[left]["width"] = 2
        del self.slots[right]
        key = f"auto-{uuid.uuid4().hex[:8]}"
        self.slots.append({"key": key, "width": 1, "subsheetId": None, "isAuto": True})
        self.last_auto_key = key

    def split_row(self, row: int):
        rows = self.build_rows()
        if not 0 <= row < len(rows) or len(rows[row]) != 1 or self.slots[rows[row][0]]["width"] != 2:
            raise ValueError(f"Row {row + 1} is not a merged slot")
        idx = rows[row][0]
        self.slots[idx]["width"] = 1
        self.slots.insert(idx + 1, {"key": f"split-{uuid.uuid4().hex[:8]}", "width": 1,
                                    "subsheetId": None, "isAuto": False})
        remove_at = next((i for i, s in enumerate(self.slots) if s["key"] == self.last_auto_key), -1)
        if remove_at < 0:
            remove_at = len(self.slots) - 1
        removed = self.slots.pop(remove_at)
        if removed["key"] == self.last_auto_key:
            self.last_auto_key = None

    def addresses(self) -> list:
        out = []
        for r, idxs in enumerate(self.build_rows()):
            for col, i in enumerate(idxs, start=1):
                out.append({"slotIndex": i, "rowNumber": r + 1, "columnNumber": col})
        return sorted(out, key=lambda a: a["slotIndex"])

    def unassigned_indexes(self) -> list:
        return [i for i, s in enumerate(self.slots) if s["subsheetId"] is None]

    def to_rows(self) -> list:
        """Body slot rows for saving; every slot must be assigned."""
        if not self.slots:
            raise ValueError("There are no slots to save")
        empty = self.unassigned_indexes()
        if empty:
            raise ValueError("Every slot must be assigned before saving the layout")
        by_idx = {a["slotIndex"]: a for a in self.addresses()}
        return [{"slotIndex": i, "subsheetId": s["subsheetId"], "columnNumber": by_idx[i]["columnNumber"],
                 "rowNumber": by_idx[i]["rowNumber"], "width": s["width"]}
                for i, s in enumerate(self.slots)]

    def to_state(self) -> dict:
        return {"slots": [dict(s) for s in self.slots], "lastAutoKey": self.last_auto_key,
                "rows": self.build_rows(), "addresses": self.addresses()}


SLOT_OPERATIONS = ("assign", "unassign", "move", "merge", "split")


def apply_slot_operation(state: dict, op: dict) -> dict:
    """Run one builder operation on a posted grid and return the new grid."""
    grid = SlotGrid(state.get("slots") or [], state.get("lastAutoKey"))
    kind = (op or {}).get("type")
    try:
        if kind == "assign":
            grid.assign(int(op["index"]), int(op["subsheetId"]))
        elif kind == "unassign":
            grid.unassign(int(op["index"]))
        elif kind == "move":
            grid.move(int(op["from"]), int(op["to"]))
        elif kind == "merge":
            grid.merge_row(int(op["row"]))
        elif kind == "split":
            grid.split_row(int(op["row"]))
        else:
            raise ValueError(f"Operation must be one of {', '.join(SLOT_OPERATIONS)}")
    except (KeyError, TypeError) as e:
        raise bad_request(f"Malformed slot operation: {e}")
    except ValueError as e:
        raise bad_request(str(e))
    return grid.to_state()


# ============================================================
# LAYOUT META
# ============================================================
def _layout_row(db: dict, account_id: int, layout_id: int) -> dict:
    row = find_one(db["layouts"], layoutId=layout_id)
    if not row or row["accountId"] != account_id:
        raise not_found("Layout")
    return row


def _check_enum(value, allowed, what: str):
    if value not in allowed:
        raise bad_request(f"{what} must be one of {', '.join(allowed)}")


def create_layout(account_id: int, template_id: int, client_id: int = None, paper_size: str = "A4",
                  orientation: str = "portrait", user_id: int = None) -> dict:
    _check_enum(paper_size, PAPER_SIZES, "paperSize")
    _check_enum(orientation, ORIENTATIONS, "orientation")
    now = datetime.now().isoformat()
    with transaction() as db:
        ds.get_sheet_row(db, account_id, int(template_id), is_template=True)
        layout = {
            "layoutId": next_id(db, "layouts"),
            "accountId": account_id,
            "templateId": int(template_id),
            "clientId": client_id,
            "paperSize": paper_size,
            "orientation": orientation,
            "gridCols": DEFAULT_GRID_COLS,
            "gridGapMm": DEFAULT_GRID_GAP_MM,
            "marginsMm": DEFAULT_MARGINS_MM,
            "theme": None,
            "lockedHeader": True,
            "lockedFooter": True,
            "version": 1,
            "isDefault": False,
            "createdBy": user_id,
            "createdAt": now,
            "updatedAt": now,
        }
        db["layouts"].append(layout)
        for i, r in enumerate(DEFAULT_REGIONS):
            db["layout_regions"].append({"regionId": next_id(db, "layout_regions"),
                                         "layoutId": layout["layoutId"], "orderIndex": i, **r})
    log_audit_action("Layouts", layout["layoutId"], "Create Layout", user_id, account_id,
                     changes={"templateId": layout["templateId"], "paperSize": paper_size})
    return layout


def list_layouts(account_id: int, template_id: int = None, client_id: int = None) -> list:
    db = get_db()
    rows = [l for l in db["layouts"] if l["accountId"] == account_id]
    if template_id is not None:
        rows = [l for l in rows if l["templateId"] == int(template_id)]
    if client_id is not None:
        rows = [l for l in rows if l.get("clientId") == int(client_id)]
    out = []
    for l in sorted(rows, key=lambda l: l["layoutId"], reverse=True):
        tpl = find_one(db["sheets"], sheetId=l["templateId"])
        out.append({**l, "templateName": tpl["sheetName"] if tpl else None})
    return out


def get_layout_bundle(account_id: int, layout_id: int) -> dict:
    db = get_db()
    meta = _layout_row(db, account_id, layout_id)
    regions = sorted((r for r in db["layout_regions"] if r["layoutId"] == layout_id),
                     key=lambda r: r["orderIndex"])
    blocks = sorted((b for b in db["layout_blocks"] if b["layoutId"] == layout_id),
                    key=lambda b: (b["regionId"], b["orderIndex"]))
    return {"meta": meta, "regions": regions, "blocks": blocks,
            "bodySlots": list_body_slots(account_id, layout_id)}


_META_KEYS = ("paperSize", "orientation", "gridCols", "gridGapMm", "marginsMm", "theme",
              "lockedHeader", "lockedFooter", "isDefault", "clientId")


def update_layout_meta(account_id: int, layout_id: int, body: dict, user_id: int = None) -> dict:
    patch = {k: body[k] for k in _META_KEYS if k in body}
    if "paperSize" in patch:
        _check_enum(patch["paperSize"], PAPER_SIZES, "paperSize")
    if "orientation" in patch:
        _check_enum(patch["orientation"], ORIENTATIONS, "orientation")
    for k in ("gridCols", "gridGapMm", "marginsMm"):
        if k in patch and (not isinstance(patch[k], (int, float)) or patch[k] < (1 if k == "gridCols" else 0)):
            raise bad_request(f"{k} must be a non-negative number")
    with transaction() as db:
        layout = _layout_row(db, account_id, layout_id)
        if patch.get("isDefault"):
            for other in db["layouts"]:
                if other["templateId"] == layout["templateId"] and other["layoutId"] != layout_id:
                    other["isDefault"] = False
        layout.update(patch)
        layout["version"] += 1
        layout["updatedAt"] = datetime.now().isoformat()
    log_audit_action("Layouts", layout_id, "Update Layout", user_id, account_id, changes=patch)
    return layout


def delete_layout(account_id: int, layout_id: int, user_id: int = None) -> None:
    with transaction() as db:
        layout = _layout_row(db, account_id, layout_id)
        db["layouts"].remove(layout)
        for coll in ("layout_regions", "layout_blocks", "layout_body_slots", "layout_subsheet_slots"):
            db[coll][:] = [r for r in db[coll] if r["layoutId"] != layout_id]
    log_audit_action("Layouts", layout_id, "Delete Layout", user_id, account_id)


# ============================================================
# REGIONS & BLOCKS
# ============================================================
def _geometry(body: dict, grid_cols: int, base: dict = None) -> dict:
    base = base or {}
    geo = {}
    for k in ("x", "y", "w", "h"):
        v = body.get(k, base.get(k))
        if not isinstance(v, int) or isinstance(v, bool):
            raise bad_request(f"{k} must be an integer")
        geo[k] = v
    if geo["x"] < 0 or geo["y"] < 0:
        raise bad_request("x and y must be >= 0")
    if geo["w"] < 1 or geo["h"] < 1:
        raise bad_request("w and h must be >= 1")
    if geo["x"] + geo["w"] > grid_cols:
        raise bad_request(f"Region exceeds the {grid_cols}-column grid")
    return geo


def add_region(account_id: int, layout_id: int, body: dict) -> dict:
    kind = body.get("kind", "dynamic")
    _check_enum(kind, REGION_KINDS, "kind")
    name = (body.get("name") or "").strip()
    if not name:
        raise bad_request("Region name is required")
    with transaction() as db:
        layout = _layout_row(db, account_id, layout_id)
        geo = _geometry(body, layout["gridCols"])
        order = len([r for r in db["layout_regions"] if r["layoutId"] == layout_id])
        region = {"regionId": next_id(db, "layout_regions"), "layoutId": layout_id, "name": name,
                  "kind": kind, "orderIndex": body.get("orderIndex", order), **geo}
        db["layout_regions"].append(region)
        layout["version"] += 1
    return region


def _region_row(db: dict, account_id: int, region_id: int) -> tuple:
    region = find_one(db["layout_regions"], regionId=region_id)
    if not region:
        raise not_found("Region")
    layout = find_one(db["layouts"], layoutId=region["layoutId"])
    if not layout or layout["accountId"] != account_id:
        raise not_found("Region")
    return region, layout


def update_region(account_id: int, region_id: int, body: dict) -> dict:
    if "kind" in body:
        _check_enum(body["kind"], REGION_KINDS, "kind")
    with transaction() as db:
        region, layout = _region_row(db, account_id, region_id)
        region.update(_geometry(body, layout["gridCols"], base=region))
        for k in ("name", "kind", "orderIndex"):
            if k in body:
                region[k] = body[k]
        layout["version"] += 1
    return region


def add_block(account_id: int, region_id: int, body: dict) -> dict:
    block_type = body.get("blockType")
    _check_enum(block_type, BLOCK_TYPES, "blockType")
    with transaction() as db:
        region, layout = _region_row(db, account_id, region_id)
        geo = _geometry(body, layout["gridCols"])
        order = len([b for b in db["layout_blocks"] if b["regionId"] == region_id])
        block = {"blockId": next_id(db, "layout_blocks"), "regionId": region_id,
                 "layoutId": layout["layoutId"], "blockType": block_type,
                 "sourceRef": body.get("sourceRef"), "props": body.get("props") or {},
                 "orderIndex": body.get("orderIndex", order), **geo}
        db["layout_blocks"].append(block)
        layout["version"] += 1
    return block


def update_block(account_id: int, block_id: int, body: dict) -> dict:
    if "blockType" in body:
        _check_enum(body["blockType"], BLOCK_TYPES, "blockType")
    with transaction() as db:
        block = find_one(db["layout_blocks"], blockId=block_id)
        if not block:
            raise not_found("Block")
        _, layout = _region_row(db, account_id, block["regionId"])
        block.update(_geometry(body, layout["gridCols"], base=block))
        for k in ("blockType", "sourceRef", "props", "orderIndex"):
            if k in body:
                block[k] = body[k]
        layout["version"] += 1
    return block


# ============================================================
# BODY SLOTS
# ============================================================
def _template_subsheet_ids(db: dict, layout: dict) -> list:
    tpl = find_one(db["sheets"], sheetId=layout["templateId"])
    return [s["id"] for s in tpl["subsheets"]] if tpl else []


def _as_int(v):
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def save_body_slots(account_id: int, layout_id: int, rows: list, user_id: int = None) -> list:
    """Replace all body slots of a layout in one unit of work."""
    rows = rows or []
    errors = []
    with transaction() as db:
        layout = _layout_row(db, account_id, layout_id)
        allowed = set(_template_subsheet_ids(db, layout))
        seen_subs, seen_idx, clean = set(), set(), []
        for i, r in enumerate(rows):
            sub, idx = _as_int(r.get("subsheetId")), _as_int(r.get("slotIndex"))
            if idx is None or idx < 0 or idx in seen_idx:
                errors.append({"path": f"slots[{i}].slotIndex", "message": "Slot index must be unique and >= 0."})
            if sub is None:
                errors.append({"path": f"slots[{i}].subsheetId", "message": "Every slot must be assigned."})
            elif sub not in allowed:
                errors.append({"path": f"slots[{i}].subsheetId", "message": "Subsheet does not belong to this template."})
            elif sub in seen_subs:
                errors.append({"path": f"slots[{i}].subsheetId", "message": "Each subsheet can only be placed once."})
            if r.get("width", 1) not in (1, 2) or r.get("columnNumber", 1) not in (1, 2):
                errors.append({"path": f"slots[{i}]", "message": "Width and column must be 1 or 2."})
            if (_as_int(r.get("rowNumber")) or 0) < 1:
                errors.append({"path": f"slots[{i}].rowNumber", "message": "Row number must be >= 1."})
            seen_subs.add(sub)
            seen_idx.add(idx)
            clean.append({"layoutId": layout_id, "slotIndex": idx, "subsheetId": sub,
                          "columnNumber": r.get("columnNumber", 1), "rowNumber": _as_int(r.get("rowNumber")),
                          "width": r.get("width", 1)})
        if errors:
            raise bad_request("Invalid body slots", errors)
        db["layout_body_slots"][:] = [s for s in db["layout_body_slots"] if s["layoutId"] != layout_id]
        db["layout_body_slots"].extend(sorted(clean, key=lambda s: s["slotIndex"]))
        layout["version"] += 1
    log_audit_action("Layouts", layout_id, "Save Body Slots", user_id, account_id,
                     changes={"slots": len(clean)})
    return list_body_slots(account_id, layout_id)


def list_body_slots(account_id: int, layout_id: int) -> list:
    db = get_db()
    _layout_row(db, account_id, layout_id)
    out = []
    for r in db["layout_body_slots"]:
        if r["layoutId"] != layout_id:
            continue
        idx, sub = _as_int(r.get("slotIndex")), _as_int(r.get("subsheetId"))
        if idx is None or idx < 0 or sub is None or sub <= 0:
            continue
        row_num = _as_int(r.get("rowNumber"))
        out.append({"slotIndex": idx, "subsheetId": sub,
                    "columnNumber": 2 if _as_int(r.get("columnNumber")) == 2 else 1,
                    "rowNumber": row_num if row_num and row_num >= 1 else None,
                    "width": 2 if _as_int(r.get("width")) == 2 else 1})
    return sorted(out, key=lambda r: r["slotIndex"])


def load_slot_grid(account_id: int, layout_id: int) -> dict:
    db = get_db()
    layout = _layout_row(db, account_id, layout_id)
    count = len(_template_subsheet_ids(db, layout))
    return SlotGrid.init(count, list_body_slots(account_id, layout_id)).to_state()


# ============================================================
# SUBSHEET SLOTS (field placement inside one subsheet)
# ============================================================
def get_subsheet_slots(account_id: int, layout_id: int, sub_id: int) -> dict:
    db = get_db()
    _layout_row(db, account_id, layout_id)
    rows = [r for r in db["layout_subsheet_slots"] if r["layoutId"] == layout_id and r["subsheetId"] == sub_id]
    if not rows:
        return {"merged": True, "left": [], "right": []}
    rows.sort(key=lambda r: (r["columnNumber"], r["rowNumber"]))
    side = lambda col: [{"index": r["rowNumber"] - 1, "infoTemplateId": r["infoTemplateId"]}
                        for r in rows if r["columnNumber"] == col]
    return {"merged": False, "left": side(1), "right": side(2)}


def save_subsheet_slots(account_id: int, layout_id: int, sub_id: int, payload: dict, user_id: int = None) -> dict:
    with transaction() as db:
        layout = _layout_row(db, account_id, layout_id)
        tpl = find_one(db["sheets"], sheetId=layout["templateId"])
        sub = next((s for s in (tpl or {}).get("subsheets", []) if s["id"] == sub_id), None)
        if not sub:
            raise not_found("Subsheet")
        field_ids = {f["id"] for f in sub["fields"]}
        placed = [(1, item) for item in payload.get("left") or []] + \
                 [(2, item) for item in payload.get("right") or []]
        placed.sort(key=lambda p: (p[0], p[1].get("index", 0)))
        seen = set()
        for _, item in placed:
            fid = _as_int(item.get("infoTemplateId"))
            if fid not in field_ids or fid in seen:
                raise bad_request(f"Field {item.get('infoTemplateId')} cannot be placed in this subsheet")
            seen.add(fid)
        db["layout_subsheet_slots"][:] = [r for r in db["layout_subsheet_slots"]
                                          if not (r["layoutId"] == layout_id and r["subsheetId"] == sub_id)]
        for slot_index, (col, item) in enumerate(placed):
            db["layout_subsheet_slots"].append({
                "layoutId": layout_id, "subsheetId": sub_id, "slotIndex": slot_index,
                "infoTemplateId": int(item["infoTemplateId"]), "columnNumber": col,
                "rowNumber": int(item.get("index", 0)) + 1})
        layout["version"] += 1
    log_audit_action("Layouts", layout_id, "Save Subsheet Slots", user_id, account_id,
                     changes={"subsheetId": sub_id, "fields": len(placed)})
    return get_subsheet_slots(account_id, layout_id, sub_id)


# ============================================================
# RENDER
# ============================================================
def _sheet_subsheet(sheet: dict, template_sub: dict) -> dict:
    for s in sheet["subsheets"]:
        if s["id"] == template_sub["id"] or s.get("originalId") == template_sub["id"]:
            return s
    return next((s for s in sheet["subsheets"] if s["name"] == template_sub["name"]), None)


def render_layout(account_id: int, layout_id: int, sheet_id: int) -> dict:
    """Printable payload: sheet header plus body blocks in slot order."""
    db = get_db()
    layout = _layout_row(db, account_id, layout_id)
    sheet = ds.get_sheet_row(db, account_id, sheet_id)
    tpl = find_one(db["sheets"], sheetId=layout["templateId"])
    tpl_subs = {s["id"]: s for s in (tpl or {}).get("subsheets", [])}

    project = find_one(db["projects"], projectId=sheet.get("projectId")) if sheet.get("projectId") else None
    header = {
        "equipmentTagNum": sheet.get("equipmentTagNum"),
        "equipmentName": sheet.get("equipmentName"),
        "projectRef": project["projName"] if project else sheet.get("companyProjectNum"),
        "fields": [{"key": k, "value": sheet.get(k)} for k in
                   ("sheetName", "clientDocNum", "companyDocNum", "revisionNum", "revisionDate", "status")],
    }

    body = []
    for slot in list_body_slots(account_id, layout_id):
        tsub = tpl_subs.get(slot["subsheetId"])
        if not tsub:
            continue
        ssub = _sheet_subsheet(sheet, tsub) if not sheet["isTemplate"] else tsub
        cells = {}
        for f in (ssub or {}).get("fields", []):
            tid = ds.info_template_id(sheet, f)
            cells[tid] = {"infoTemplateId": tid, "label": f["label"],
                          "value": None if sheet["isTemplate"] else f.get("value"),
                          "uom": f.get("uom") or None, "columnNumber": 1}
        config = get_subsheet_slots(account_id, layout_id, tsub["id"])
        if config["merged"]:
            order = {f["id"]: f.get("sortOrder", 0) for f in tsub["fields"]}
            fields = sorted(cells.values(), key=lambda c: (order.get(c["infoTemplateId"], 0), c["infoTemplateId"]))
        else:
            fields = []
            placed = [(p["index"], 1, p["infoTemplateId"]) for p in config["left"]] + \
                     [(p["index"], 2, p["infoTemplateId"]) for p in config["right"]]
            for _, col, tid in sorted(placed):
                if tid in cells:
                    fields.append({**cells[tid], "columnNumber": col})
        body.append({"subsheetId": tsub["id"], "subsheetName": tsub["name"] or f"Subsheet {tsub['id']}",
                     "slotIndex": slot["slotIndex"], "rowNumber": slot["rowNumber"],
                     "columnNumber": slot["columnNumber"], "width": slot["width"], "fields": fields})
    return {"layoutId": layout_id, "sheetId": sheet_id, "paperSize": layout["paperSize"],
            "orientation": layout["orientation"], "header": header, "body": body}
