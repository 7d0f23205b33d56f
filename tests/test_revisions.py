from fastapi.testclient import TestClient

from specverse.revisions import diff_unified_sheets
from conftest import field_ids


def _sheet(*subsheets):
    return {"subsheets": [{"id": sid, "originalId": oid, "name": name, "fields": fields}
                          for sid, oid, name, fields in subsheets]}


def test_diff_classifies_rows():
    old = _sheet((10, 1, "Process", [
        {"id": 100, "originalId": 5, "label": "Flow", "value": 10},
        {"id": 101, "originalId": 6, "label": "Head", "value": "30"},
        {"id": 102, "originalId": 7, "label": "Speed", "value": None},
    ]))
    new = _sheet((20, 1, "Process", [
        {"id": 200, "originalId": 5, "label": "Flow", "value": "10"},
        {"id": 201, "originalId": 6, "label": "Head", "value": "32"},
        {"id": 203, "originalId": 8, "label": "Power", "value": "7.5"},
    ]))
    result = diff_unified_sheets(old, new)
    kinds = [(r["key"], r["kind"]) for r in result["rows"]]
    assert kinds == [("1::5", "unchanged"), ("1::6", "changed"), ("1::7", "removed"), ("1::8", "added")]
    assert result["counts"] == {"total": 4, "changed": 1, "added": 1, "removed": 1, "unchanged": 1}
    removed = result["rows"][2]
    assert (removed["oldValue"], removed["newValue"]) == ("", "")


def test_diff_falls_back_to_ids_and_names():
    old = {"subsheets": [{"name": "Noise", "fields": [{"label": "dBA", "value": "85"}]}]}
    new = {"subsheets": [{"name": "Noise", "fields": [{"label": "dBA", "value": "82"}]}]}
    rows = diff_unified_sheets(old, new)["rows"]
    assert rows == [{"key": "Noise::dBA", "subsheetName": "Noise", "label": "dBA",
                     "oldValue": "85", "newValue": "82", "kind": "changed"}]


def test_diff_of_empty_sheets():
    assert diff_unified_sheets({}, None) == {"rows": [], "counts": {"total": 0, "changed": 0, "added": 0,
                                                                    "removed": 0, "unchanged": 0}}


def _filled(client, admin, template, flow="10"):
    ids = field_ids(template)
    body = {"templateId": template["sheetId"], "equipmentTagNum": "P-101A",
            "fieldValues": {str(ids["Flow"]): flow}}
    return client.post("/api/filledsheets", json=body, headers=admin["headers"]).json()


def test_restore_applies_snapshot_as_new_revision(client: TestClient, admin, approved_template):
    h = admin["headers"]
    flow = str(field_ids(approved_template)["Flow"])
    sheet = _filled(client, admin, approved_template)
    sid = sheet["sheetId"]
    client.put(f"/api/filledsheets/{sid}", json={"fieldValues": {flow: "20"}}, headers=h)

    revs = client.get(f"/api/filledsheets/{sid}/revisions", headers=h).json()["items"]
    first = revs[-1]
    assert first["revisionNumber"] == 1

    detail = client.get(f"/api/filledsheets/{sid}/revisions/{first['revisionId']}", headers=h).json()
    snap_flow = next(f for s in detail["snapshot"]["subsheets"] for f in s["fields"] if f["label"] == "Flow")
    assert snap_flow["value"] == "10"

    response = client.post(f"/api/filledsheets/{sid}/revisions/{first['revisionId']}/restore", json={}, headers=h)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["revision"]["revisionNumber"] == 3
    assert body["revision"]["comment"] == "Restored from revision #1"
    restored = next(f for s in body["sheet"]["subsheets"] for f in s["fields"] if f["label"] == "Flow")
    assert restored["value"] == "10"


def test_diff_endpoint_against_current(client: TestClient, admin, approved_template):
    h = admin["headers"]
    flow = str(field_ids(approved_template)["Flow"])
    sid = _filled(client, admin, approved_template)["sheetId"]
    client.put(f"/api/filledsheets/{sid}", json={"fieldValues": {flow: "25"}}, headers=h)
    first = client.get(f"/api/filledsheets/{sid}/revisions", headers=h).json()["items"][-1]

    response = client.get(f"/api/filledsheets/{sid}/revisions/diff", params={"from": first["revisionId"]}, headers=h)
    assert response.status_code == 200
    body = response.json()
    assert body["from"] == 1 and body["to"] == "current"
    changed = [r for r in body["rows"] if r["kind"] == "changed"]
    assert [(r["label"], r["oldValue"], r["newValue"]) for r in changed] == [("Flow", "10", "25")]

    assert client.get(f"/api/filledsheets/{sid}/revisions/diff", headers=h).status_code == 400


def test_revision_of_other_sheet_is_missing(client: TestClient, admin, approved_template):
    sid = _filled(client, admin, approved_template)["sheetId"]
    response = client.get(f"/api/filledsheets/{sid}/revisions/9999", headers=admin["headers"])
    assert response.status_code == 404


def test_restore_is_refused_on_approved_sheet(client: TestClient, admin, approved_template):
    h = admin["headers"]
    flow = str(field_ids(approved_template)["Flow"])
    sid = _filled(client, admin, approved_template)["sheetId"]
    client.put(f"/api/filledsheets/{sid}", json={"fieldValues": {flow: "20"}}, headers=h)
    client.post(f"/api/filledsheets/{sid}/verify", json={"action": "verify"}, headers=h)
    assert client.post(f"/api/filledsheets/{sid}/approve", json={"action": "approve"}, headers=h).status_code == 200

    revs = client.get(f"/api/filledsheets/{sid}/revisions", headers=h).json()["items"]
    response = client.post(f"/api/filledsheets/{sid}/revisions/{revs[-1]['revisionId']}/restore", json={}, headers=h)
    assert response.status_code == 409
    assert response.json()["detail"] == "Approved sheets are locked; create a revision to make changes"
    assert client.get(f"/api/filledsheets/{sid}/revisions", headers=h).json()["total"] == len(revs)


def test_diff_keys_keep_empty_strings_and_integral_floats():
    old = {"subsheets": [{"originalId": 1.0, "name": "Process", "fields": [
        {"originalId": 5.0, "label": "Flow", "value": "10"},
        {"originalId": None, "id": "", "label": "Head", "value": "30"},
    ]}]}
    new = {"subsheets": [{"originalId": 1, "name": "Process", "fields": [
        {"originalId": 5, "label": "Flow", "value": "12"},
        {"id": "", "label": "Head", "value": "30"},
    ]}]}
    rows = diff_unified_sheets(old, new)["rows"]
    assert [(r["key"], r["kind"]) for r in rows] == [("1::5", "changed"), ("1::", "unchanged")]

    unnamed = {"subsheets": [{"name": None, "fields": [{"id": 2.5, "label": "Speed", "value": 1}]}]}
    assert diff_unified_sheets(unnamed, {})["rows"][0]["key"] == "unknown-subsheet::2.5"
