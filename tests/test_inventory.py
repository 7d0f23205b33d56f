import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def item(client, admin):
    response = client.post("/api/inventory", headers=admin["headers"], json={
        "itemCode": "BRG-6204", "itemName": "Bearing 6204", "uom": "ea", "reorderLevel": 5})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def warehouses(client, admin):
    out = []
    for name in ("Main Store", "Site Store"):
        response = client.post("/api/reference/warehouses", json={"warehouseName": name}, headers=admin["headers"])
        out.append(response.json()["warehouseId"])
    return out


def _tx(client, admin, item_id, tx_type, qty, **extra):
    return client.post(f"/api/inventory/{item_id}/transactions", headers=admin["headers"],
                       json={"transactionType": tx_type, "quantityChanged": qty, **extra})


def test_create_item_and_duplicate_code(client: TestClient, admin, item):
    assert item["quantityOnHand"] == 0
    assert item["isActive"] is True
    response = client.post("/api/inventory", json={"itemCode": "brg-6204 ", "itemName": "Dup"},
                           headers=admin["headers"])
    assert response.status_code == 409
    response = client.post("/api/inventory", json={"itemCode": "X-1"}, headers=admin["headers"])
    assert response.status_code == 400


def test_receive_then_issue(client: TestClient, admin, item):
    iid = item["inventoryId"]
    assert _tx(client, admin, iid, "Receive", 10).json()["quantityChanged"] == 10
    issued = _tx(client, admin, iid, "Issue", 4)
    assert issued.status_code == 201
    assert issued.json()["quantityChanged"] == -4
    assert client.get(f"/api/inventory/{iid}", headers=admin["headers"]).json()["quantityOnHand"] == 6

    response = _tx(client, admin, iid, "Issue", 7)
    assert response.status_code == 409
    assert response.json()["detail"] == "Insufficient stock"
    assert client.get(f"/api/inventory/{iid}", headers=admin["headers"]).json()["quantityOnHand"] == 6

    history = client.get(f"/api/inventory/{iid}/transactions", headers=admin["headers"]).json()
    assert [t["transactionType"] for t in history] == ["Issue", "Receive"]


def test_adjust_and_bad_transactions(client: TestClient, admin, item):
    iid = item["inventoryId"]
    _tx(client, admin, iid, "Receive", 3)
    assert _tx(client, admin, iid, "Adjust", -1).json()["quantityChanged"] == -1
    assert _tx(client, admin, iid, "Steal", 1).status_code == 400
    assert _tx(client, admin, iid, "Receive", 0).status_code == 400


def test_transfer_needs_two_warehouses(client: TestClient, admin, item, warehouses):
    iid = item["inventoryId"]
    _tx(client, admin, iid, "Receive", 5, warehouseId=warehouses[0])
    assert _tx(client, admin, iid, "Transfer", 2).status_code == 400
    assert _tx(client, admin, iid, "Transfer", 2, warehouseId=warehouses[0],
               toWarehouseId=warehouses[0]).status_code == 400

    response = _tx(client, admin, iid, "Transfer", 2, warehouseId=warehouses[0], toWarehouseId=warehouses[1])
    assert response.status_code == 201
    assert client.get(f"/api/inventory/{iid}", headers=admin["headers"]).json()["quantityOnHand"] == 5


def test_delete_only_without_stock(client: TestClient, admin, item):
    iid = item["inventoryId"]
    _tx(client, admin, iid, "Receive", 1)
    assert client.get(f"/api/inventory/{iid}/can-delete", headers=admin["headers"]).json() == {"canDelete": False}
    assert client.delete(f"/api/inventory/{iid}", headers=admin["headers"]).status_code == 409

    _tx(client, admin, iid, "Issue", 1)
    response = client.delete(f"/api/inventory/{iid}", headers=admin["headers"])
    assert response.status_code == 200
    assert response.json()["isActive"] is False
    active = client.get("/api/inventory", params={"active": True}, headers=admin["headers"]).json()
    assert active["total"] == 0


def test_engineer_cannot_delete(client: TestClient, admin, add_member, item):
    engineer = add_member("eng@acme.test")
    response = client.delete(f"/api/inventory/{item['inventoryId']}", headers=engineer["headers"])
    assert response.status_code == 403


def test_update_writes_audit(client: TestClient, admin, item):
    iid = item["inventoryId"]
    response = client.put(f"/api/inventory/{iid}", json={"location": "Bay 4", "reorderLevel": "8"},
                          headers=admin["headers"])
    assert response.json()["reorderLevel"] == 8.0
    audit = client.get(f"/api/inventory/{iid}/audit", headers=admin["headers"]).json()
    actions = [a["actionType"] for a in audit]
    assert actions[-1] == "CREATE"
    assert {"UPDATE location", "UPDATE reorderLevel"} <= set(actions)
    everywhere = client.get("/api/inventory/all/audit", headers=admin["headers"]).json()
    assert all(a["itemName"] == "Bearing 6204" for a in everywhere)


def test_maintenance_logs(client: TestClient, admin, item):
    iid = item["inventoryId"]
    response = client.post(f"/api/inventory/{iid}/maintenance", headers=admin["headers"],
                           json={"maintenanceDate": "2026-03-01", "description": "Regrease"})
    assert response.status_code == 201
    assert client.post(f"/api/inventory/{iid}/maintenance", json={"description": "x"},
                       headers=admin["headers"]).status_code == 422
    assert client.post(f"/api/inventory/{iid}/maintenance", json={"maintenanceDate": " ", "description": "x"},
                       headers=admin["headers"]).status_code == 400
    logs = client.get("/api/inventory/all/maintenance", headers=admin["headers"]).json()
    assert [(l["description"], l["itemName"]) for l in logs] == [("Regrease", "Bearing 6204")]


def test_transactions_listing_and_csv(client: TestClient, admin, item, warehouses):
    iid = item["inventoryId"]
    _tx(client, admin, iid, "Receive", 10, warehouseId=warehouses[0], referenceNote="PO 1")
    _tx(client, admin, iid, "Issue", 2, warehouseId=warehouses[1])

    page = client.get("/api/inventory/all/transactions", params={"transactionType": "Receive"},
                      headers=admin["headers"]).json()
    assert page["total"] == 1
    assert page["items"][0]["warehouseName"] == "Main Store"
    assert page["items"][0]["performedByName"] == "Ada Admin"

    response = client.get("/api/inventory/all/transactions.csv", headers=admin["headers"])
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.split("\n")
    assert lines[0].startswith("Transaction ID,Item ID,Item Name")
    assert len(lines) == 3
    assert ",Issue," in lines[1]


def test_negative_levels_are_rejected(client: TestClient, admin, item):
    for body in ({"quantityOnHand": -3}, {"reorderLevel": "-1"}):
        response = client.post("/api/inventory", headers=admin["headers"],
                               json={"itemCode": "NEG-1", "itemName": "Negative", **body})
        assert response.status_code == 400
    assert client.get("/api/inventory", params={"search": "NEG"}, headers=admin["headers"]).json()["total"] == 0

    response = client.put(f"/api/inventory/{item['inventoryId']}", json={"reorderLevel": -2}, headers=admin["headers"])
    assert response.status_code == 400
    assert response.json()["detail"] == "reorderLevel must not be negative"


def test_unchanged_reorder_level_is_not_audited(client: TestClient, admin, item):
    iid = item["inventoryId"]
    response = client.put(f"/api/inventory/{iid}", json={"reorderLevel": "5"}, headers=admin["headers"])
    assert response.status_code == 200
    assert response.json()["reorderLevel"] == 5.0
    actions = [a["actionType"] for a in client.get(f"/api/inventory/{iid}/audit", headers=admin["headers"]).json()]
    assert actions == ["CREATE"]
