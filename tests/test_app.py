def _new_sheet(client, **cells):
    resp = client.post("/sheets", json={"title": "Test", "cells": cells})
    assert resp.status_code == 200
    return resp.json()


def test_create_sheet_computes_values(client):
    sheet = _new_sheet(client, A1="5", A2="3", A3="=SUM(A1:A2)")
    assert sheet["cells"]["A3"]["value"] == 8
    assert sheet["cells"]["A3"]["display"] == "8"
    assert sheet["num_rows"] == 100 and sheet["num_cols"] == 26


def test_update_cell_reports_changed(client):
    sheet = _new_sheet(client, A1="1", B1="=A1+1")
    resp = client.put(f"/sheets/{sheet['id']}/cell", json={"address": "A1", "value": "41"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["changed"] == ["A1", "B1"]
    assert body["cells"]["B1"]["value"] == 42


def test_error_cells_expose_token(client):
    sheet = _new_sheet(client, A1="10", A2="0", A3="=A1/A2")
    cell = client.get(f"/sheets/{sheet['id']}/cells/A3").json()
    assert cell["error"] == "#DIV/0!"
    assert cell["display"] == "#DIV/0!"
    assert cell["value"] is None


def test_batch_edit(client):
    sheet = _new_sheet(client)
    edits = [{"address": "A1", "value": "2"}, {"address": "A2", "value": "=A1*A1"}]
    body = client.put(f"/sheets/{sheet['id']}/cells", json={"edits": edits}).json()
    assert set(body["changed"]) == {"A1", "A2"}
    assert body["cells"]["A2"]["value"] == 4


def test_range_values(client):
    sheet = _new_sheet(client, A1="1", B1="x", A2="=1/0")
    body = client.get(f"/sheets/{sheet['id']}/range", params={"start": "A1", "end": "B2"}).json()
    assert body["range"] == "A1:B2"
    assert body["values"] == [1, "x", "#DIV/0!", ""]


def test_style_and_title(client):
    sheet = _new_sheet(client, A1="1")
    resp = client.put(f"/sheets/{sheet['id']}/cells/A1/style", json={"bold": True})
    assert resp.json()["style"]["bold"] is True
    assert client.put(f"/sheets/{sheet['id']}/cells/C9/style", json={"bold": True}).status_code == 404
    assert client.put(f"/sheets/{sheet['id']}/title", json={"title": "Renamed"}).json()["title"] == "Renamed"


def test_recalculate_is_idempotent(client):
    sheet = _new_sheet(client, A1="3", A2="=A1*A1")
    body = client.post(f"/sheets/{sheet['id']}/recalculate").json()
    assert body["changed"] == []


def test_bad_requests(client):
    sheet = _new_sheet(client)
    assert client.put(f"/sheets/{sheet['id']}/cell", json={"address": "1A", "value": "1"}).status_code == 422
    assert client.get(f"/sheets/{sheet['id']}/cells/A0").status_code == 422
    assert client.get("/sheets/missing").status_code == 404
    assert client.put("/sheets/missing/cell", json={"address": "A1", "value": "1"}).status_code == 404
    assert client.post("/sheets", json={"cells": {"??": "1"}}).status_code == 422


def test_out_of_bounds_addresses_are_rejected(client):
    sheet = _new_sheet(client, A1="1")
    sid = sheet["id"]
    assert client.get(f"/sheets/{sid}/cells/XFE1").status_code == 422
    assert client.get(f"/sheets/{sid}/cells/A1048577").status_code == 422
    assert client.put(f"/sheets/{sid}/cells/XFE1/style", json={"bold": True}).status_code == 422
    assert client.get(f"/sheets/{sid}/range", params={"start": "A1", "end": "XFE2"}).status_code == 422
    edits = [{"address": "A1", "value": "5"}, {"address": "XFE1", "value": "1"}]
    assert client.put(f"/sheets/{sid}/cells", json={"edits": edits}).status_code == 422
    assert client.get(f"/sheets/{sid}/cells/A1").json()["raw_input"] == "1"


def test_delete_sheet(client):
    sheet = _new_sheet(client)
    assert client.delete(f"/sheets/{sheet['id']}").status_code == 200
    assert client.get(f"/sheets/{sheet['id']}").status_code == 404
    assert client.delete(f"/sheets/{sheet['id']}").status_code == 404


def test_formula_suggestions(client):
    names = [f["name"] for f in client.get("/formulas", params={"query": "=con"}).json()]
    assert names == ["CONCAT"]
    first = client.get("/formulas").json()[0]
    assert first["example"].startswith("=")
