"""
SpecVerse — Reference Data
Per-account lookup lists used by sheet headers and inventory: clients, projects,
categories, manufacturers, suppliers, areas, warehouses.
"""
from datetime import datetime

from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import bad_request, conflict, not_found
from specverse.audit import log_audit_action

# kind → (id key, name key, extra fields)
KINDS = {
    "clients":       ("clientId",    "clientName",    ["clientCode", "contactPerson", "email", "phone", "address"]),
    "projects":      ("projectId",   "projName",      ["projNum", "clientId", "projDesc"]),
    "categories":    ("categoryId",  "categoryName",  ["description"]),
    "manufacturers": ("manuId",      "manuName",      ["manuAddress"]),
    "suppliers":     ("suppId",      "suppName",      ["suppAddress", "suppContact", "suppEmail", "suppPhone"]),
    "areas":         ("areaId",      "areaName",      ["areaCode"]),
    "warehouses":    ("warehouseId", "warehouseName", ["location"]),
}

# Which sheet / inventory columns point at each kind
_REFERENCED_BY = {
    "clients": [("sheets", "clientId"), ("projects", "clientId")],
    "projects": [("sheets", "projectId")],
    "categories": [("sheets", "categoryId"), ("inventory_items", "categoryId")],
    "manufacturers": [("sheets", "manuId"), ("inventory_items", "manufacturerId")],
    "suppliers": [("sheets", "suppId"), ("inventory_items", "supplierId")],
    "areas": [("sheets", "areaId")],
    "warehouses": [("inventory_transactions", "warehouseId"), ("inventory_transactions", "toWarehouseId")],
}


def _kind(kind: str) -> tuple:
    if kind not in KINDS:
        raise not_found("Reference list")
    return KINDS[kind]


def list_items(kind: str, account_id: int, search: str = None) -> list:
    id_key, name_key, _ = _kind(kind)
    rows = [r for r in get_db()[kind] if r["accountId"] == account_id]
    if search:
        needle = search.strip().lower()
        rows = [r for r in rows if needle in r[name_key].lower()]
    return sorted(rows, key=lambda r: r[name_key].lower())


def get_item(kind: str, account_id: int, item_id: int) -> dict:
    id_key, _, _ = _kind(kind)
    row = find_one(get_db()[kind], **{id_key: item_id})
    if not row or row["accountId"] != account_id:
        raise not_found("Item")
    return row


def _check_name(db: dict, kind: str, account_id: int, name: str, exclude_id=None) -> str:
    id_key, name_key, _ = KINDS[kind]
    name = (name or "").strip()
    if not name:
        raise bad_request(f"{name_key} is required")
    for r in db[kind]:
        if (r["accountId"] == account_id and r[name_key].strip().lower() == name.lower()
                and r[id_key] != exclude_id):
            raise conflict(f"'{name}' already exists")
    return name


def create_item(kind: str, account_id: int, data: dict, user_id: int = None) -> dict:
    id_key, name_key, extras = _kind(kind)
    with transaction() as db:
        name = _check_name(db, kind, account_id, data.get(name_key))
        if kind == "projects" and data.get("clientId") is not None:
            client = find_one(db["clients"], clientId=data["clientId"])
            if not client or client["accountId"] != account_id:
                raise bad_request("Unknown client")
        row = {id_key: next_id(db, kind), "accountId": account_id, name_key: name,
               "createdAt": datetime.now().isoformat(), "createdBy": user_id}
        for k in extras:
            row[k] = data.get(k)
        db[kind].append(row)
    log_audit_action(kind.capitalize(), row[id_key], "Create", user_id, account_id, changes={name_key: name})
    return row


def update_item(kind: str, account_id: int, item_id: int, data: dict, user_id: int = None) -> dict:
    id_key, name_key, extras = _kind(kind)
    changes = {}
    with transaction() as db:
        row = find_one(db[kind], **{id_key: item_id})
        if not row or row["accountId"] != account_id:
            raise not_found("Item")
        if name_key in data:
            name = _check_name(db, kind, account_id, data[name_key], exclude_id=item_id)
            if name != row[name_key]:
                changes[name_key] = {"old": row[name_key], "new": name}
                row[name_key] = name
        for k in extras:
            if k in data and data[k] != row.get(k):
                changes[k] = {"old": row.get(k), "new": data[k]}
                row[k] = data[k]
        row["updatedAt"] = datetime.now().isoformat()
    if changes:
        log_audit_action(kind.capitalize(), item_id, "Update", user_id, account_id, changes=changes)
    return row


def delete_item(kind: str, account_id: int, item_id: int, user_id: int = None) -> None:
    id_key, name_key, _ = _kind(kind)
    with transaction() as db:
        row = find_one(db[kind], **{id_key: item_id})
        if not row or row["accountId"] != account_id:
            raise not_found("Item")
        for coll, col in _REFERENCED_BY.get(kind, []):
            if any(r.get(col) == item_id and r.get("accountId") == account_id and not r.get("isDeleted")
                   for r in db[coll]):
                raise conflict(f"Cannot delete: still referenced by {coll.replace('_', ' ')}")
        db[kind].remove(row)
    log_audit_action(kind.capitalize(), item_id, "Delete", user_id, account_id, changes={name_key: row[name_key]})
