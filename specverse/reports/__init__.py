"""
SpecVerse — Dashboard Reports & Stats

Every aggregate is computed over one account's rows. Months are "YYYY-MM" buckets taken
from ISO timestamps; day spans are whole days between two ISO timestamps.

The inventory forecast fits a straight line (numpy.polyfit, degree 1) through each
item's monthly net quantity and projects it forward; items with a single month of
history are projected flat.
"""
from collections import defaultdict, OrderedDict
from datetime import datetime

import numpy as np

from specverse.config import ROLES
from specverse.db import get_db, _n
from specverse import datasheets as ds

SANKEY_NODES = ["Draft", "Verified", "Rejected", "Approved"]


def _sheets(account_id: int, is_template: bool = None) -> list:
    return [s for s in get_db()["sheets"] if s["accountId"] == account_id
            and (is_template is None or bool(s["isTemplate"]) == is_template)]


def _month(ts) -> str:
    return ts[:7] if ts else None


def _days_between(start, end):
    if not start or not end:
        return None
    return (datetime.fromisoformat(end[:19]) - datetime.fromisoformat(start[:19])).days


def _month_index(month: str) -> int:
    return int(month[:4]) * 12 + int(month[5:7]) - 1


def _add_month(month: str, n: int) -> str:
    total = _month_index(month) + n
    return f"{total // 12:04d}-{total % 12 + 1:02d}"


# ============================================================
# DATASHEETS
# ============================================================
def datasheets_by_status(account_id: int) -> list:
    counts = defaultdict(lambda: {"templates": 0, "filledSheets": 0})
    for s in _sheets(account_id):
        counts[s["status"]]["templates" if s["isTemplate"] else "filledSheets"] += 1
    return [{"status": k, **v, "total": v["templates"] + v["filledSheets"]} for k, v in sorted(counts.items())]


def templates_created_over_time(account_id: int) -> list:
    counts = defaultdict(int)
    for s in _sheets(account_id, is_template=True):
        month = _month(s.get("createdAt"))
        if month:
            counts[month] += 1
    return [{"month": m, "total": c} for m, c in sorted(counts.items())]


def pending_verifications(account_id: int) -> list:
    counts = OrderedDict([("Template", 0), ("Filled Sheet", 0)])
    for s in _sheets(account_id):
        if not s.get("verifiedById") and not s.get("rejectedById") and not s.get("isSuperseded"):
            counts["Template" if s["isTemplate"] else "Filled Sheet"] += 1
    return [{"type": k, "total": v} for k, v in counts.items()]


def rejected_over_time(account_id: int, is_template: bool = True) -> list:
    counts = defaultdict(int)
    for s in _sheets(account_id, is_template=is_template):
        if s["status"] == "Rejected" and s.get("rejectedByDate"):
            counts[_month(s["rejectedByDate"])] += 1
    return [{"month": m, "rejectedCount": c} for m, c in sorted(counts.items())]


def _template_stage(s: dict) -> str:
    if s.get("verifiedById") and s.get("approvedById"):
        return "Approved"
    if s.get("verifiedById"):
        return "Verified"
    if s.get("rejectedById"):
        return "Rejected"
    return "Draft"


def workflow_sankey(account_id: int, is_template: bool) -> dict:
    """Status flow diagram built from current per-stage counts.

    Templates are staged from their workflow stamps; filled sheets from status, with a
    flow into every stage that currently holds sheets.
    """
    nodes = [{"name": n, "id": f"{n}-{i}"} for i, n in enumerate(SANKEY_NODES)]
    idx = {n: i for i, n in enumerate(SANKEY_NODES)}
    counts = defaultdict(int)
    links = []
    if is_template:
        for s in _sheets(account_id, is_template=True):
            counts[_template_stage(s)] += 1
        if counts["Verified"]:
            links.append({"source": idx["Draft"], "target": idx["Verified"], "value": counts["Verified"]})
        if counts["Approved"]:
            links.append({"source": idx["Verified"], "target": idx["Approved"], "value": counts["Approved"]})
        if counts["Rejected"]:
            links.append({"source": idx["Draft"], "target": idx["Rejected"], "value": counts["Rejected"]})
        if counts["Draft"] and not counts["Verified"] and not counts["Rejected"]:
            links.append({"source": idx["Draft"], "target": idx["Draft"], "value": counts["Draft"]})
    else:
        for s in _sheets(account_id, is_template=False):
            counts[s["status"]] += 1
        for a, b in zip(SANKEY_NODES, SANKEY_NODES[1:]):
            if counts[b]:
                links.append({"source": idx[a], "target": idx[b], "value": counts[b]})
    return {"nodes": nodes, "links": links}


def datasheet_lifecycle_stats(account_id: int) -> list:
    spans = defaultdict(list)
    for s in _sheets(account_id):
        days = _days_between(s.get("preparedByDate"), s.get("approvedByDate"))
        if days is not None:
            spans["Template" if s["isTemplate"] else "Filled Sheet"].append(days)
    return [{"sheetType": k, "averageDays": round(float(np.mean(v)), 1), "count": len(v)}
            for k, v in sorted(spans.items())]


def verification_bottlenecks(account_id: int) -> list:
    db = get_db()
    areas = {a["areaId"]: a["areaName"] for a in db["areas"] if a["accountId"] == account_id}
    spans, pending = defaultdict(list), defaultdict(int)
    for s in _sheets(account_id):
        if s.get("areaId") not in areas:
            continue
        name = areas[s["areaId"]]
        days = _days_between(s.get("preparedByDate"), s.get("verifiedByDate"))
        if days is not None:
            spans[name].append(days)
        elif s["status"] in ("Draft", "Modified Draft"):
            pending[name] += 1
    out = [{"areaName": a, "avgVerificationDays": round(float(np.mean(spans[a])), 1) if spans[a] else None,
            "pending": pending[a]} for a in set(spans) | set(pending)]
    return sorted(out, key=lambda r: (r["avgVerificationDays"] is None, -(r["avgVerificationDays"] or 0), r["areaName"]))


def template_usage_trends(account_id: int) -> list:
    db = get_db()
    counts = defaultdict(int)
    for s in _sheets(account_id, is_template=False):
        tpl = next((t for t in db["sheets"] if t["sheetId"] == s.get("templateId")), None)
        if tpl and s.get("preparedByDate"):
            counts[(_month(s["preparedByDate"]), tpl["sheetName"])] += 1
    return [{"month": m, "templateName": t, "usageCount": c} for (m, t), c in sorted(counts.items())]


def team_performance(account_id: int) -> list:
    db = get_db()
    by_user = defaultdict(list)
    for s in _sheets(account_id, is_template=True):
        by_user[s.get("preparedById")].append(s)
    out = []
    for uid, rows in by_user.items():
        user = next((u for u in db["users"] if u["userId"] == uid), None)
        if not user:
            continue
        n = len(rows)
        out.append({
            "engineer": f"{user['firstName']} {user['lastName']}".strip(),
            "totalSheets": n,
            "verificationRate": round(100.0 * sum(1 for s in rows if s.get("verifiedById")) / n, 1),
            "rejectionRate": round(100.0 * sum(1 for s in rows if s["status"] == "Rejected") / n, 1),
        })
    return sorted(out, key=lambda r: r["engineer"])


def field_completion_trends(account_id: int) -> list:
    """Share of filled-sheet fields with a non-blank value, per field label and month."""
    totals = defaultdict(lambda: [0, 0])
    for s in _sheets(account_id, is_template=False):
        month = _month(s.get("preparedByDate"))
        for _, f in ds.iter_fields(s):
            bucket = totals[(f["label"], month)]
            bucket[1] += 1
            if f.get("value") is not None and str(f["value"]).strip():
                bucket[0] += 1
    return [{"fieldLabel": label, "month": month, "completionRate": round(100.0 * filled / total, 1)}
            for (label, month), (filled, total) in sorted(totals.items(), key=lambda kv: (kv[0][0], kv[0][1] or ""))]


# ============================================================
# PEOPLE
# ============================================================
def active_users_by_role(account_id: int) -> list:
    db = get_db()
    active_users = {u["userId"] for u in db["users"] if u.get("isActive", True)}
    counts = defaultdict(int)
    for m in db["account_members"]:
        if m["accountId"] == account_id and m["isActive"] and m["userId"] in active_users:
            counts[ROLES.get(m["roleId"], {}).get("roleName", f"Role {m['roleId']}")] += 1
    return [{"roleName": k, "total": v} for k, v in sorted(counts.items())]


# ============================================================
# INVENTORY
# ============================================================
def _items(account_id: int, active_only: bool = True) -> list:
    return [i for i in get_db()["inventory_items"] if i["accountId"] == account_id
            and (i["isActive"] or not active_only)]


def _category_names(account_id: int) -> dict:
    return {c["categoryId"]: c["categoryName"] for c in get_db()["categories"] if c["accountId"] == account_id}


def inventory_stock_levels(account_id: int) -> list:
    names = _category_names(account_id)
    totals = defaultdict(float)
    for i in _items(account_id):
        if i.get("categoryId") in names:
            totals[names[i["categoryId"]]] += _n(i["quantityOnHand"])
    return [{"categoryName": k, "totalStock": v} for k, v in sorted(totals.items())]


def inventory_contribution(account_id: int) -> list:
    names = _category_names(account_id)
    grouped = defaultdict(list)
    for i in _items(account_id):
        grouped[names.get(i.get("categoryId"), "Uncategorized")].append(
            {"itemName": i["itemName"], "quantity": _n(i["quantityOnHand"])})
    return [{"categoryName": cat, "items": sorted(items, key=lambda x: -x["quantity"])}
            for cat, items in sorted(grouped.items())]


def inventory_forecast(account_id: int, months_ahead: int = 3) -> list:
    """Per item: monthly net quantity history plus a linear projection."""
    db = get_db()
    items = {i["inventoryId"]: i["itemName"] for i in _items(account_id, active_only=False)}
    monthly = defaultdict(lambda: defaultdict(float))
    for t in db["inventory_transactions"]:
        if t["accountId"] == account_id and t["inventoryId"] in items and t.get("performedAt"):
            if t["transactionType"] != "Transfer":
                monthly[t["inventoryId"]][_month(t["performedAt"])] += _n(t["quantityChanged"])

    out = []
    for item_id, by_month in sorted(monthly.items(), key=lambda kv: items[kv[0]].lower()):
        months = sorted(by_month)
        y = np.array([by_month[m] for m in months], dtype=float)
        # x: calendar months since the first active month
        x = np.array([_month_index(m) - _month_index(months[0]) for m in months], dtype=float)
        if len(y) >= 2:
            slope, intercept = np.polyfit(x, y, 1)
        else:
            slope, intercept = 0.0, float(y[0])
        projected = [{"month": _add_month(months[-1], k),
                      "totalQuantity": round(float(intercept + slope * (x[-1] + k)), 2)}
                     for k in range(1, months_ahead + 1)]
        out.append({
            "itemName": items[item_id],
            "history": [{"month": m, "totalQuantity": by_month[m]} for m in months],
            "forecast": projected,
            "trend": round(float(slope), 4),
        })
    return out


# ============================================================
# SUMMARY
# ============================================================
def dashboard_summary(account_id: int) -> dict:
    sheets = _sheets(account_id)
    items = _items(account_id)
    return {
        "templates": sum(1 for s in sheets if s["isTemplate"] and not s.get("isSuperseded")),
        "filledSheets": sum(1 for s in sheets if not s["isTemplate"] and not s.get("isSuperseded")),
        "pendingVerification": sum(1 for s in sheets if s["status"] in ("Draft", "Modified Draft")),
        "awaitingApproval": sum(1 for s in sheets if s["status"] == "Verified"),
        "approved": sum(1 for s in sheets if s["status"] == "Approved"),
        "rejected": sum(1 for s in sheets if s["status"] == "Rejected"),
        "inventoryItems": len(items),
        "lowStockItems": sum(1 for i in items if _n(i.get("reorderLevel")) > 0
                             and _n(i["quantityOnHand"]) <= _n(i.get("reorderLevel"))),
        "activeUsers": sum(r["total"] for r in active_users_by_role(account_id)),
    }
