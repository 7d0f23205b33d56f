import pytest
from fastapi.testclient import TestClient

from specverse import inventory, reports
from specverse.db import transaction
from conftest import field_ids, template_payload


@pytest.fixture
def filled(client, admin, approved_template):
    ids = field_ids(approved_template)
    response = client.post("/api/filledsheets", headers=admin["headers"], json={
        "templateId": approved_template["sheetId"], "equipmentTagNum": "P-101A",
        "fieldValues": {str(ids["Flow"]): "12"}})
    return response.json()


def test_datasheets_by_status(client: TestClient, admin, filled):
    rows = client.get("/api/reports/datasheets-by-status", headers=admin["headers"]).json()
    assert rows == [
        {"status": "Approved", "templates": 1, "filledSheets": 0, "total": 1},
        {"status": "Draft", "templates": 0, "filledSheets": 1, "total": 1},
    ]


def test_pending_and_summary(admin, filled):
    assert reports.pending_verifications(admin["accountId"]) == [
        {"type": "Template", "total": 0}, {"type": "Filled Sheet", "total": 1}]
    summary = reports.dashboard_summary(admin["accountId"])
    assert summary["templates"] == 1
    assert summary["filledSheets"] == 1
    assert summary["pendingVerification"] == 1
    assert summary["approved"] == 1
    assert summary["activeUsers"] == 1


def test_workflow_sankey(client: TestClient, admin, filled):
    client.post("/api/templates", json=template_payload(tag="C-201"), headers=admin["headers"])
    body = reports.workflow_sankey(admin["accountId"], is_template=True)
    assert [n["name"] for n in body["nodes"]] == ["Draft", "Verified", "Rejected", "Approved"]
    assert {"source": 1, "target": 3, "value": 1} in body["links"]

    assert reports.workflow_sankey(admin["accountId"], is_template=False)["links"] == []
    client.post(f"/api/filledsheets/{filled['sheetId']}/verify", json={"action": "verify"}, headers=admin["headers"])
    links = client.get("/api/reports/workflow-sankey", params={"isTemplate": False}, headers=admin["headers"]).json()["links"]
    assert links == [{"source": 0, "target": 1, "value": 1}]


def test_rejected_over_time(client: TestClient, admin):
    tpl = client.post("/api/templates", json=template_payload(), headers=admin["headers"]).json()
    client.post(f"/api/templates/{tpl['sheetId']}/verify", json={"action": "reject", "comment": "No"},
                headers=admin["headers"])
    rows = client.get("/api/reports/rejected-over-time", headers=admin["headers"]).json()
    assert len(rows) == 1 and rows[0]["rejectedCount"] == 1
    assert client.get("/api/reports/rejected-over-time", params={"isTemplate": False},
                      headers=admin["headers"]).json() == []


def test_team_performance_and_field_completion(admin, filled):
    team = reports.team_performance(admin["accountId"])
    assert team == [{"engineer": "Ada Admin", "totalSheets": 1, "verificationRate": 100.0, "rejectionRate": 0.0}]

    rates = {r["fieldLabel"]: r["completionRate"] for r in reports.field_completion_trends(admin["accountId"])}
    assert rates["Flow"] == 100.0
    assert rates["Stages"] == 0.0


def test_active_users_by_role(client: TestClient, admin, add_member):
    add_member("eng@acme.test")
    viewer = add_member("view@acme.test", role_id=4)
    rows = client.get("/api/stats/active-users", headers=viewer["headers"]).json()
    assert rows == [{"roleName": "Admin", "total": 1}, {"roleName": "Engineer", "total": 1},
                    {"roleName": "Viewer", "total": 1}]


def _item_with_history(admin, code, monthly):
    item = inventory.create_item(admin["accountId"], {"itemCode": code, "itemName": f"Item {code}"}, admin["userId"])
    txs = [inventory.add_transaction(admin["accountId"], item["inventoryId"], "Receive", qty, user_id=admin["userId"])
           for qty in monthly.values()]
    with transaction() as db:
        by_id = {t["transactionId"]: t for t in db["inventory_transactions"]}
        for tx, month in zip(txs, monthly):
            by_id[tx["transactionId"]]["performedAt"] = f"{month}-15T10:00:00"
    return item


def test_inventory_forecast_fits_trend(client: TestClient, admin):
    _item_with_history(admin, "A", {"2026-01": 10, "2026-02": 20, "2026-03": 30})
    _item_with_history(admin, "B", {"2026-02": 7})

    rows = client.get("/api/reports/inventory-forecast", params={"monthsAhead": 2}, headers=admin["headers"]).json()
    assert [r["itemName"] for r in rows] == ["Item A", "Item B"]
    a, b = rows
    assert [h["month"] for h in a["history"]] == ["2026-01", "2026-02", "2026-03"]
    assert a["forecast"] == [{"month": "2026-04", "totalQuantity": 40.0}, {"month": "2026-05", "totalQuantity": 50.0}]
    assert a["trend"] == pytest.approx(10.0)
    assert b["forecast"] == [{"month": "2026-03", "totalQuantity": 7.0}, {"month": "2026-04", "totalQuantity": 7.0}]
    assert b["trend"] == 0.0


def test_forecast_month_wraps_year(admin):
    _item_with_history(admin, "C", {"2025-11": 1, "2025-12": 2})
    forecast = reports.inventory_forecast(admin["accountId"], months_ahead=2)[0]["forecast"]
    assert [f["month"] for f in forecast] == ["2026-01", "2026-02"]


def test_stock_levels_and_contribution(client: TestClient, admin):
    cat = client.post("/api/reference/categories", json={"categoryName": "Bearings"}, headers=admin["headers"]).json()
    item = inventory.create_item(admin["accountId"], {"itemCode": "B1", "itemName": "Bearing", "categoryId": cat["categoryId"]})
    inventory.add_transaction(admin["accountId"], item["inventoryId"], "Receive", 12)
    inventory.create_item(admin["accountId"], {"itemCode": "S1", "itemName": "Shim"})

    stock = client.get("/api/stats/inventory-stock", headers=admin["headers"]).json()
    assert stock == [{"categoryName": "Bearings", "totalStock": 12.0}]
    contribution = reports.inventory_contribution(admin["accountId"])
    assert [c["categoryName"] for c in contribution] == ["Bearings", "Uncategorized"]
    assert contribution[0]["items"] == [{"itemName": "Bearing", "quantity": 12.0}]


def test_forecast_spaces_history_by_calendar_month(admin):
    _item_with_history(admin, "G", {"2026-01": 10, "2026-02": 20, "2026-06": 60})
    row = reports.inventory_forecast(admin["accountId"], months_ahead=1)[0]
    assert row["forecast"] == [{"month": "2026-07", "totalQuantity": 70.0}]
    assert row["trend"] == pytest.approx(10.0)
