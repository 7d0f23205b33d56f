import pytest
from fastapi.testclient import TestClient

from specverse.layouts import SlotGrid, apply_slot_operation
from conftest import field_ids


# ---- slot grid ----
def _grid(widths):
    return SlotGrid([{"key": f"s{i}", "width": w, "subsheetId": i + 1} for i, w in enumerate(widths)])


def test_rows_pair_consecutive_singles():
    assert _grid([1, 1, 2, 1]).build_rows() == [[0, 1], [2], [3]]
    assert _grid([1, 2, 1, 1]).build_rows() == [[0], [1], [2, 3]]


def test_addresses_are_one_based():
    addresses = _grid([1, 1, 2]).addresses()
    assert [(a["rowNumber"], a["columnNumber"]) for a in addresses] == [(1, 1), (1, 2), (2, 1)]


def test_merge_keeps_slot_count_and_split_undoes_it():
    grid = _grid([1, 1, 1, 1])
    grid.merge_row(0)
    assert len(grid.slots) == 4
    assert grid.slots[0]["width"] == 2
    assert grid.slots[-1]["isAuto"] is True and grid.slots[-1]["subsheetId"] is None
    assert grid.build_rows() == [[0], [1, 2], [3]]

    grid.split_row(0)
    assert len(grid.slots) == 4
    assert [s["width"] for s in grid.slots] == [1, 1, 1, 1]
    assert grid.slots[1]["subsheetId"] is None
    assert all(not s["isAuto"] for s in grid.slots)
    assert grid.last_auto_key is None


def test_merge_refuses_single_slot_rows():
    with pytest.raises(ValueError):
        _grid([2, 1]).merge_row(0)
    with pytest.raises(ValueError):
        _grid([1, 1]).split_row(0)


def test_move_swaps_occupied_target():
    grid = _grid([1, 1, 1])
    grid.move(0, 2)
    assert [s["subsheetId"] for s in grid.slots] == [3, 2, 1]
    grid.unassign(1)
    with pytest.raises(ValueError):
        grid.move(1, 0)


def test_to_rows_requires_assignment():
    grid = SlotGrid.init(2, [{"slotIndex": 0, "subsheetId": 7, "width": 1}])
    with pytest.raises(ValueError):
        grid.to_rows()
    grid.assign(1, 8)
    assert grid.to_rows() == [
        {"slotIndex": 0, "subsheetId": 7, "columnNumber": 1, "rowNumber": 1, "width": 1},
        {"slotIndex": 1, "subsheetId": 8, "columnNumber": 2, "rowNumber": 1, "width": 1},
    ]


def test_init_pads_and_truncates():
    saved = [{"slotIndex": 2, "subsheetId": 3}, {"slotIndex": 0, "subsheetId": 1}, {"slotIndex": 1, "subsheetId": 2}]
    assert [s["subsheetId"] for s in SlotGrid.init(2, saved).slots] == [1, 2]
    assert [s["subsheetId"] for s in SlotGrid.init(4, saved).slots] == [1, 2, 3, None]


def test_slot_operation_round_trip():
    state = SlotGrid.init(3).to_state()
    state = apply_slot_operation(state, {"type": "merge", "row": 0})
    assert state["lastAutoKey"].startswith("auto-")
    state = apply_slot_operation(state, {"type": "split", "row": 0})
    assert state["lastAutoKey"] is None
    assert len(state["slots"]) == 3


# ---- API ----
@pytest.fixture
def layout(client, admin, approved_template):
    response = client.post("/api/layouts", json={"templateId": approved_template["sheetId"]},
                           headers=admin["headers"])
    assert response.status_code == 201, response.text
    return response.json()


def test_create_layout_defaults(client: TestClient, admin, layout):
    bundle = client.get(f"/api/layouts/{layout['layoutId']}", headers=admin["headers"]).json()
    assert bundle["meta"]["gridCols"] == 24
    assert [r["name"] for r in bundle["regions"]] == ["Header", "Body", "Footer"]
    assert bundle["bodySlots"] == []


def test_layout_meta_validation(client: TestClient, admin, layout):
    lid = layout["layoutId"]
    assert client.patch(f"/api/layouts/{lid}", json={"paperSize": "A0"}, headers=admin["headers"]).status_code == 400
    response = client.patch(f"/api/layouts/{lid}", json={"orientation": "landscape"}, headers=admin["headers"])
    assert response.json()["orientation"] == "landscape"
    assert response.json()["version"] == 2


def test_region_must_fit_grid(client: TestClient, admin, layout):
    lid = layout["layoutId"]
    body = {"name": "Side", "kind": "dynamic", "x": 20, "y": 0, "w": 8, "h": 2}
    assert client.post(f"/api/layouts/{lid}/regions", json=body, headers=admin["headers"]).status_code == 400
    body["w"] = 4
    region = client.post(f"/api/layouts/{lid}/regions", json=body, headers=admin["headers"]).json()
    block = client.post(f"/api/layouts/regions/{region['regionId']}/blocks",
                        json={"blockType": "Text", "x": 0, "y": 0, "w": 2, "h": 1, "props": {"text": "Notes"}},
                        headers=admin["headers"])
    assert block.status_code == 201


def test_body_slots_save_and_render(client: TestClient, admin, layout, approved_template):
    h = admin["headers"]
    lid = layout["layoutId"]
    process, mechanical = [s["id"] for s in approved_template["subsheets"]]

    bad = client.post(f"/api/layouts/{lid}/bodyslots", headers=h,
                      json={"slots": [{"slotIndex": 0, "subsheetId": 999, "rowNumber": 1}]})
    assert bad.status_code == 400

    slots = [{"slotIndex": 0, "subsheetId": mechanical, "rowNumber": 1, "columnNumber": 1, "width": 2},
             {"slotIndex": 1, "subsheetId": process, "rowNumber": 2, "columnNumber": 1, "width": 2}]
    saved = client.post(f"/api/layouts/{lid}/bodyslots", json={"slots": slots}, headers=h)
    assert saved.status_code == 200
    grid = client.get(f"/api/layouts/{lid}/bodyslots/grid", headers=h).json()
    assert [s["subsheetId"] for s in grid["slots"]] == [mechanical, process]

    ids = field_ids(approved_template)
    client.post(f"/api/layouts/{lid}/subsheets/{process}/slots", headers=h, json={
        "left": [{"index": 0, "infoTemplateId": ids["Stages"]}],
        "right": [{"index": 0, "infoTemplateId": ids["Flow"]}],
    })

    sheet = client.post("/api/filledsheets", headers=h, json={
        "templateId": approved_template["sheetId"], "equipmentTagNum": "P-101A",
        "fieldValues": {str(ids["Flow"]): "12", str(ids["Stages"]): "2"}}).json()
    rendered = client.get(f"/api/layouts/{lid}/render", params={"sheetId": sheet["sheetId"]}, headers=h).json()
    assert rendered["header"]["equipmentTagNum"] == "P-101A"
    assert [b["subsheetName"] for b in rendered["body"]] == ["Mechanical", "Process"]
    process_block = rendered["body"][1]
    assert [(f["label"], f["value"], f["columnNumber"]) for f in process_block["fields"]] == \
        [("Stages", "2", 1), ("Flow", "12", 2)]
    mech_block = rendered["body"][0]
    assert [f["label"] for f in mech_block["fields"]] == ["Casing Material"]


def test_subsheet_slots_reject_foreign_fields(client: TestClient, admin, layout, approved_template):
    process, mechanical = [s["id"] for s in approved_template["subsheets"]]
    ids = field_ids(approved_template)
    response = client.post(f"/api/layouts/{layout['layoutId']}/subsheets/{mechanical}/slots",
                           json={"left": [{"index": 0, "infoTemplateId": ids["Flow"]}]}, headers=admin["headers"])
    assert response.status_code == 400
    merged = client.get(f"/api/layouts/{layout['layoutId']}/subsheets/{mechanical}/slots", headers=admin["headers"])
    assert merged.json() == {"merged": True, "left": [], "right": []}


def test_slot_ops_endpoint(client: TestClient, admin):
    state = SlotGrid.init(2).to_state()
    response = client.post("/api/layouts/bodyslots/ops", json={"state": state, "op": {"type": "bogus"}},
                           headers=admin["headers"])
    assert response.status_code == 400
    response = client.post("/api/layouts/bodyslots/ops", json={"state": state, "op": {"type": "merge", "row": 0}},
                           headers=admin["headers"])
    assert [s["width"] for s in response.json()["slots"]] == [2, 1]
