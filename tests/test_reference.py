from fastapi.testclient import TestClient

from specverse import inventory


def _create(client, admin, kind, **body):
    response = client.post(f"/api/reference/{kind}", json=body, headers=admin["headers"])
    assert response.status_code == 201, response.text
    return response.json()


def test_create_list_and_duplicate_name(client: TestClient, admin):
    _create(client, admin, "areas", areaName="Utilities")
    _create(client, admin, "areas", areaName="Boiler House")
    names = [a["areaName"] for a in client.get("/api/reference/areas", headers=admin["headers"]).json()]
    assert names == ["Boiler House", "Utilities"]

    response = client.post("/api/reference/areas", json={"areaName": " utilities "}, headers=admin["headers"])
    assert response.status_code == 409
    assert client.get("/api/reference/colours", headers=admin["headers"]).status_code == 404


def test_category_in_use_cannot_be_deleted(client: TestClient, admin):
    cat = _create(client, admin, "categories", categoryName="Pumps")
    inventory.create_item(admin["accountId"], {"itemCode": "P1", "itemName": "Pump", "categoryId": cat["categoryId"]},
                          admin["userId"])
    response = client.delete(f"/api/reference/categories/{cat['categoryId']}", headers=admin["headers"])
    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot delete: still referenced by inventory items"
    assert client.get(f"/api/reference/categories/{cat['categoryId']}", headers=admin["headers"]).status_code == 200


def test_transfer_destination_warehouse_cannot_be_deleted(client: TestClient, admin):
    source = _create(client, admin, "warehouses", warehouseName="Main Store")["warehouseId"]
    target = _create(client, admin, "warehouses", warehouseName="Site Store")["warehouseId"]
    unused = _create(client, admin, "warehouses", warehouseName="Spare Yard")["warehouseId"]
    item = inventory.create_item(admin["accountId"], {"itemCode": "V1", "itemName": "Valve"}, admin["userId"])
    inventory.add_transaction(admin["accountId"], item["inventoryId"], "Receive", 4, user_id=admin["userId"])
    inventory.add_transaction(admin["accountId"], item["inventoryId"], "Transfer", 2, user_id=admin["userId"],
                              warehouse_id=source, to_warehouse_id=target)

    for wid in (source, target):
        response = client.delete(f"/api/reference/warehouses/{wid}", headers=admin["headers"])
        assert response.status_code == 409
    response = client.delete(f"/api/reference/warehouses/{unused}", headers=admin["headers"])
    assert response.status_code == 200
    assert [w["warehouseId"] for w in client.get("/api/reference/warehouses", headers=admin["headers"]).json()] \
        == [source, target]


def test_viewer_cannot_edit_reference_lists(client: TestClient, admin, add_member):
    viewer = add_member("view@acme.test", role_id=4)
    area = _create(client, admin, "areas", areaName="Tank Farm")
    assert client.post("/api/reference/areas", json={"areaName": "Jetty"}, headers=viewer["headers"]).status_code == 403
    assert client.delete(f"/api/reference/areas/{area['areaId']}", headers=viewer["headers"]).status_code == 403
