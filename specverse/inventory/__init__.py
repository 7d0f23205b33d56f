"""
SpecVerse — Inventory

Items carry a running quantityOnHand; every stock movement is an inventory transaction
written in the same unit of work as the quantity change. Field edits, creates and
deletes land in the inventory audit stream.

Quantity rules:
  Receive / Return   +abs(qty)
  Issue              -abs(qty), never below zero (409 Insufficient stock)
  Adjust             +qty as signed
  Transfer           moves between warehouses; quantity on hand unchanged
"""
from datetime import datetime

from specverse.config import TRANSACTION_TYPES, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from specverse.db import get_db, transaction, next_id, find_one, paginate, _n
from specverse.errors import bad_request, conflict, not_found
from specverse.audit import log_audit_action

ITEM_FIELDS = ["itemCode", "itemName", "description", "categoryId", "supplierId", "manufacturerId",
               "location", "reorderLevel", "uom", "isActive"]


def _item_row(db: dict, account_id: int, item_id: int) -> dict:
    item = find_one(db["inventory_items"], inventoryId=item_id)
    if not item or item["accountId"] != account_id:
        raise not_found("Inventory item")
    return item


def _write_audit(db: dict, item_id: int, action: str, user_id: int, old=None, new=None):
    db["inventory_audit"].append({
        "inventoryAuditId": next_id(db, "inventory_audit"),
        "inventoryId": item_id,
        "actionType": action,
        "oldValue": None if old is None else str(old),
        "newValue": None if new is None else str(new),
        "changedBy": user_id,
        "changedAt": datetime.now().isoformat(),
    })


# ============================================================
# ITEMS
# ============================================================
def _code_taken(db: dict, account_id: int, code: str, exclude_id: int = None) -> bool:
    code = code.strip().lower()
    return any(i["accountId"] == account_id and i["inventoryId"] != exclude_id
               and i["itemCode"].strip().lower() == code for i in db["inventory_items"])


def _non_negative(data: dict, key: str) -> float:
    value = _n(data.get(key))
    if value < 0:
        raise bad_request(f"{key} must not be negative")
    return value


def create_item(account_id: int, data: dict, user_id: int = None) -> dict:
    code = (data.get("itemCode") or "").strip()
    name = (data.get("itemName") or "").strip()
    if not code:
        raise bad_request("itemCode is required")
    if not name:
        raise bad_request("itemName is required")
    reorder_level = _non_negative(data, "reorderLevel")
    on_hand = _non_negative(data, "quantityOnHand")
    now = datetime.now().isoformat()
    with transaction() as db:
        if _code_taken(db, account_id, code):
            raise conflict("Item code already exists")
        item = {
            "inventoryId": next_id(db, "inventory_items"),
            "accountId": account_id,
            "itemCode": code,
            "itemName": name,
            "description": data.get("description"),
            "categoryId": data.get("categoryId"),
            "supplierId": data.get("supplierId"),
            "manufacturerId": data.get("manufacturerId"),
            "location": data.get("location"),
            "reorderLevel": reorder_level,
            "quantityOnHand": on_hand,
            "uom": data.get("uom"),
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        }
        db["inventory_items"].append(item)
        _write_audit(db, item["inventoryId"], "CREATE", user_id, new=name)
    log_audit_action("InventoryItems", item["inventoryId"], "Create Inventory Item", user_id, account_id,
                     changes={"itemCode": code, "itemName": name})
    return item


def get_item(account_id: int, item_id: int) -> dict:
    db = get_db()
    item = _item_row(db, account_id, item_id)
    cat = find_one(db["categories"], categoryId=item.get("categoryId")) if item.get("categoryId") else None
    return {**item, "categoryName": cat["categoryName"] if cat else None}


def list_items(account_id: int, search: str = None, category_id: int = None, active: bool = None,
               page=1, page_size=DEFAULT_PAGE_SIZE) -> dict:
    rows = [i for i in get_db()["inventory_items"] if i["accountId"] == account_id]
    if search:
        needle = search.strip().lower()
        rows = [i for i in rows if needle in i["itemCode"].lower() or needle in i["itemName"].lower()]
    if category_id is not None:
        rows = [i for i in rows if i.get("categoryId") == int(category_id)]
    if active is not None:
        rows = [i for i in rows if i["isActive"] == bool(active)]
    rows = sorted(rows, key=lambda i: i["itemName"].lower())
    return paginate(rows, page, page_size, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)


def update_item(account_id: int, item_id: int, data: dict, user_id: int = None) -> dict:
    if "itemName" in data and not (data["itemName"] or "").strip():
        raise bad_request("itemName is required")
    changes = []
    with transaction() as db:
        item = _item_row(db, account_id, item_id)
        if "itemCode" in data:
            code = (data["itemCode"] or "").strip()
            if not code:
                raise bad_request("itemCode is required")
            if _code_taken(db, account_id, code, exclude_id=item_id):
                raise conflict("Item code already exists")
            data = {**data, "itemCode": code}
        if "reorderLevel" in data:
            data = {**data, "reorderLevel": _non_negative(data, "reorderLevel")}
        for k in ITEM_FIELDS:
            if k not in data or data[k] == item.get(k):
                continue
            new = data[k]
            changes.append({"field": k, "old": item.get(k), "new": new})
            _write_audit(db, item_id, f"UPDATE {k}", user_id, item.get(k), new)
            item[k] = new
        item["updatedAt"] = datetime.now().isoformat()
    if changes:
        log_audit_action("InventoryItems", item_id, "Update Inventory Item", user_id, account_id,
                         changes={c["field"]: {"old": c["old"], "new": c["new"]} for c in changes})
    return item


def can_delete(account_id: int, item_id: int) -> bool:
    item = _item_row(get_db(), account_id, item_id)
    return float(item["quantityOnHand"]) == 0


def soft_delete_item(account_id: int, item_id: int, user_id: int = None) -> dict:
    with transaction() as db:
        item = _item_row(db, account_id, item_id)
        if float(item["quantityOnHand"]) != 0:
            raise conflict("Cannot delete an item with stock on hand")
        item["isActive"] = False
        item["updatedAt"] = datetime.now().isoformat()
        _write_audit(db, item_id, "DELETE", user_id, old=item["itemName"])
    log_audit_action("InventoryItems", item_id, "Delete Inventory Item", user_id, account_id)
    return item


# ============================================================
# TRANSACTIONS
# ============================================================
def _signed_delta(tx_type: str, qty: float) -> float:
    if tx_type in ("Receive", "Return"):
        return abs(qty)
    if tx_type == "Issue":
        return -abs(qty)
    if tx_type == "Adjust":
        return qty
    return 0.0


def add_transaction(account_id: int, item_id: int, tx_type: str, qty, uom: str = None, note: str = None,
                    user_id: int = None, warehouse_id: int = None, to_warehouse_id: int = None) -> dict:
    if tx_type not in TRANSACTION_TYPES:
        raise bad_request(f"transactionType must be one of {', '.join(TRANSACTION_TYPES)}")
    try:
        qty = float(qty)
    except (TypeError, ValueError):
        raise bad_request("quantityChanged must be a number")
    if qty == 0:
        raise bad_request("quantityChanged must not be zero")
    if tx_type == "Transfer" and (warehouse_id is None or to_warehouse_id is None or warehouse_id == to_warehouse_id):
        raise bad_request("Transfer needs two different warehouses")
    with transaction() as db:
        item = _item_row(db, account_id, item_id)
        for wid in (warehouse_id, to_warehouse_id):
            if wid is not None:
                wh = find_one(db["warehouses"], warehouseId=int(wid))
                if not wh or wh.get("accountId") != account_id:
                    raise not_found("Warehouse")
        delta = _signed_delta(tx_type, qty)
        before = float(item["quantityOnHand"])
        if before + delta < 0:
            raise conflict("Insufficient stock")
        item["quantityOnHand"] = before + delta
        item["updatedAt"] = datetime.now().isoformat()
        tx = {
            "transactionId": next_id(db, "inventory_transactions"),
            "accountId": account_id,
            "inventoryId": item_id,
            "warehouseId": warehouse_id,
            "toWarehouseId": to_warehouse_id,
            "transactionType": tx_type,
            "quantityChanged": delta if tx_type != "Transfer" else abs(qty),
            "uom": uom or item.get("uom"),
            "referenceNote": note,
            "performedBy": user_id,
            "performedAt": datetime.now().isoformat(),
        }
        db["inventory_transactions"].append(tx)
        _write_audit(db, item_id, f"TRANSACTION {tx_type}", user_id, before, item["quantityOnHand"])
    log_audit_action("InventoryTransactions", tx["transactionId"], f"Inventory {tx_type}", user_id, account_id,
                     changes={"inventoryId": item_id, "quantityChanged": tx["quantityChanged"]})
    return tx


def list_transactions(account_id: int, item_id: int) -> list:
    db = get_db()
    _item_row(db, account_id, item_id)
    rows = [t for t in db["inventory_transactions"] if t["inventoryId"] == item_id]
    return sorted(rows, key=lambda t: (t["performedAt"], t["transactionId"]), reverse=True)


def _filtered_transactions(db: dict, account_id: int, filters: dict) -> list:
    f = filters or {}
    rows = [t for t in db["inventory_transactions"] if t["accountId"] == account_id]
    if f.get("warehouseId") is not None:
        rows = [t for t in rows if t.get("warehouseId") == int(f["warehouseId"])]
    if f.get("itemId") is not None:
        rows = [t for t in rows if t["inventoryId"] == int(f["itemId"])]
    if f.get("transactionType"):
        rows = [t for t in rows if t["transactionType"] == f["transactionType"]]
    if f.get("dateFrom"):
        rows = [t for t in rows if t["performedAt"][:10] >= f["dateFrom"][:10]]
    if f.get("dateTo"):
        rows = [t for t in rows if t["performedAt"][:10] <= f["dateTo"][:10]]
    return sorted(rows, key=lambda t: (t["performedAt"], t["transactionId"]), reverse=True)


def _with_names(db: dict, t: dict) -> dict:
    item = find_one(db["inventory_items"], inventoryId=t["inventoryId"])
    wh = find_one(db["warehouses"], warehouseId=t.get("warehouseId")) if t.get("warehouseId") else None
    user = find_one(db["users"], userId=t.get("performedBy")) if t.get("performedBy") else None
    return {**t, "itemName": item["itemName"] if item else None,
            "warehouseName": wh["warehouseName"] if wh else None,
            "performedByName": f"{user['firstName']} {user['lastName']}".strip() if user else None}


def list_all_transactions(account_id: int, filters: dict = None, page=1, page_size=DEFAULT_PAGE_SIZE) -> dict:
    db = get_db()
    result = paginate(_filtered_transactions(db, account_id, filters), page, page_size,
                      DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
    result["items"] = [_with_names(db, t) for t in result["items"]]
    return result


def count_transactions(account_id: int, filters: dict = None) -> int:
    return len(_filtered_transactions(get_db(), account_id, filters))


def transactions_for_csv(account_id: int, filters: dict = None, limit: int = None) -> list:
    db = get_db()
    rows = _filtered_transactions(db, account_id, filters)
    if limit is not None:
        rows = rows[:limit]
    return [_with_names(db, t) for t in rows]


# ============================================================
# MAINTENANCE
# ============================================================
def add_maintenance_log(account_id: int, item_id: int, data: dict, user_id: int = None) -> dict:
    date = (data.get("maintenanceDate") or "").strip()
    desc = (data.get("description") or "").strip()
    if not date or not desc:
        raise bad_request("maintenanceDate and description are required")
    with transaction() as db:
        _item_row(db, account_id, item_id)
        log = {
            "maintenanceId": next_id(db, "inventory_maintenance"),
            "accountId": account_id,
            "inventoryId": item_id,
            "maintenanceDate": date,
            "description": desc,
            "notes": data.get("notes"),
            "performedBy": user_id,
            "createdAt": datetime.now().isoformat(),
        }
        db["inventory_maintenance"].append(log)
    log_audit_action("InventoryMaintenance", log["maintenanceId"], "Add Maintenance Log", user_id, account_id,
                     changes={"inventoryId": item_id})
    return log


def list_maintenance_logs(account_id: int, item_id: int) -> list:
    db = get_db()
    _item_row(db, account_id, item_id)
    rows = [m for m in db["inventory_maintenance"] if m["inventoryId"] == item_id]
    return sorted(rows, key=lambda m: (m["maintenanceDate"], m["maintenanceId"]), reverse=True)


def list_all_maintenance(account_id: int) -> list:
    db = get_db()
    rows = [m for m in db["inventory_maintenance"] if m["accountId"] == account_id]
    out = []
    for m in sorted(rows, key=lambda m: (m["maintenanceDate"], m["maintenanceId"]), reverse=True):
        item = find_one(db["inventory_items"], inventoryId=m["inventoryId"])
        out.append({**m, "itemName": item["itemName"] if item else None})
    return out


# ============================================================
# AUDIT
# ============================================================
def list_inventory_audit(account_id: int, item_id: int) -> list:
    db = get_db()
    _item_row(db, account_id, item_id)
    rows = [a for a in db["inventory_audit"] if a["inventoryId"] == item_id]
    return sorted(rows, key=lambda a: a["inventoryAuditId"], reverse=True)


def list_all_inventory_audit(account_id: int) -> list:
    db = get_db()
    items = {i["inventoryId"]: i for i in db["inventory_items"] if i["accountId"] == account_id}
    rows = [{**a, "itemName": items[a["inventoryId"]]["itemName"]}
            for a in db["inventory_audit"] if a["inventoryId"] in items]
    return sorted(rows, key=lambda a: a["inventoryAuditId"], reverse=True)
