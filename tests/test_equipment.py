import io

import crud
from csv_utils import csv_bytes_to_rows, normalize_header
from models import EquipmentUpdate


def _create_equipment(client, name, serial, total=1, **extra):
    body = {"name": name, "serial_number": serial, "total_quantity": total, **extra}
    r = client.post("/equipment", json=body)
    assert r.status_code == 201, r.text
    return r.json()


def test_new_equipment_starts_fully_available(client, login_as):
    login_as("becario")
    e = _create_equipment(client, "Oscilloscope", "OSC-1", total=4)
    assert e["available_quantity"] == 4
    assert e["version"] == 1
    assert e["status"] == "available"


def test_duplicate_serial_is_conflict(client, login_as):
    login_as("becario")
    _create_equipment(client, "Oscilloscope", "OSC-1")
    r = client.post("/equipment", json={"name": "Other", "serial_number": "OSC-1"})
    assert r.status_code == 409


def test_negative_total_is_rejected(client, login_as):
    login_as("becario")
    r = client.post("/equipment", json={"name": "Bad", "serial_number": "B-1", "total_quantity": -1})
    assert r.status_code == 422


def test_list_filter_sort_paging(client, login_as):
    login_as("becario")
    _create_equipment(client, "Beaker", "A-002", total=3)
    _create_equipment(client, "Anemometer", "A-001", total=1)
    _create_equipment(client, "Centrifuge", "A-003", total=2, brand="Eppendorf")

    r = client.get("/equipment?limit=2&offset=0&sort=name&order=asc")
    assert r.status_code == 200
    assert [e["name"] for e in r.json()] == ["Anemometer", "Beaker"]

    r = client.get("/equipment?q=eppen")
    assert [e["serial_number"] for e in r.json()] == ["A-003"]

    # 空文字フィルタでも落ちない
    r = client.get("/equipment?status=&sort=&order=")
    assert r.status_code == 200

    meta = client.get("/equipment/meta?limit=2").json()
    assert meta["total"] == 3
    assert meta["total_pages"] == 2


def test_total_change_shifts_available_by_same_delta(client, login_as, make_profile, lend):
    login_as("becario")
    user = make_profile()
    e = _create_equipment(client, "Pipette", "P-1", total=5)
    lend(user.id, e["id"], 2)

    r = client.patch(f"/equipment/{e['id']}", json={"total_quantity": 8})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["total_quantity"] == 8
    assert body["available_quantity"] == 6

    # 貸出中の分より小さくはできない
    r = client.patch(f"/equipment/{e['id']}", json={"total_quantity": 1})
    assert r.status_code == 400
    assert client.get(f"/equipment/{e['id']}").json()["total_quantity"] == 8


def test_version_bumps_on_every_available_write(db_session, make_profile, make_equipment, lend):
    user = make_profile()
    e = make_equipment(total=5)
    loan = lend(user.id, e.id, 1)
    crud.return_loan(db_session, loan.id, 1)
    crud.update_equipment(db_session, e.id, EquipmentUpdate(total_quantity=6))

    assert crud.get_equipment(db_session, e.id).version == e.version + 3


def test_stale_version_write_is_refused(db_session, make_equipment):
    e = make_equipment(total=5)

    assert crud.set_available_if_version(db_session, e.id, expected_version=e.version + 1, new_available=0) is False
    db_session.rollback()
    assert crud.get_equipment(db_session, e.id).available_quantity == 5


def test_delete_unused_equipment(client, login_as):
    login_as("becario")
    e = _create_equipment(client, "Beaker", "B-1")
    r = client.delete(f"/equipment/{e['id']}")
    assert r.status_code == 204
    assert client.get(f"/equipment/{e['id']}").status_code == 404


def test_ui_equipment_list_and_create(client, login_as):
    login_as("becario")
    r = client.post(
        "/ui/equipment",
        data={"name": "Spectrometer", "serial_number": "SP-1", "total_quantity": "2"},
        follow_redirects=False,
    )
    assert r.status_code == 303

    r = client.get("/ui/equipment?q=SP-1")
    assert r.status_code == 200
    assert "Spectrometer" in r.text


def test_ui_equipment_edit(client, login_as):
    login_as("becario")
    e = _create_equipment(client, "Spectrometer", "SP-1", total=2)

    r = client.get(f"/ui/equipment/{e['id']}/edit")
    assert r.status_code == 200
    assert "Spectrometer" in r.text

    r = client.post(
        f"/ui/equipment/{e['id']}/edit",
        data={
            "name": "Spectrometer v2",
            "serial_number": "SP-1",
            "total_quantity": "3",
            "status": "maintenance",
            "is_active": "on",
        },
        follow_redirects=False,
    )
    assert r.status_code == 303

    a = client.get(f"/equipment/{e['id']}").json()
    assert a["name"] == "Spectrometer v2"
    assert a["status"] == "maintenance"
    assert a["available_quantity"] == 3


def test_normal_user_cannot_create_equipment_from_ui(client, login_as):
    login_as("normal")
    r = client.post(
        "/ui/equipment",
        data={"name": "Spectrometer", "serial_number": "SP-1"},
        follow_redirects=False,
    )
    assert r.headers["location"] == "/unauthorized"
    assert client.get("/equipment").json() == []


def test_export_csv(client, login_as, make_equipment):
    login_as()
    make_equipment(name="Beaker", serial="A-001", total=2)
    make_equipment(name="Burette", serial="A-002", total=1)

    r = client.get("/ui/equipment/export?status=&sort=name&order=asc")
    assert r.status_code == 200, r.text
    assert "text/csv" in r.headers.get("content-type", "")

    lines = r.text.strip().splitlines()
    assert lines[0].startswith("id,name,serial_number,brand,model,location,total_quantity,available_quantity")
    assert len(lines) == 1 + 2


def test_import_csv(client, login_as):
    login_as("becario")
    _create_equipment(client, "Existing", "DUP-1")
    data = (
        "nombre,numero_serie,cantidad,marca\n"
        "Balanza,BAL-1,3,Ohaus\n"
        "Existing,DUP-1,1,\n"
        ",NO-NAME,1,\n"
    ).encode("utf-8")

    r = client.post(
        "/ui/equipment/import",
        files={"file": ("equipment.csv", io.BytesIO(data), "text/csv")},
    )
    assert r.status_code == 200
    assert "Created: 1, skipped: 1" in r.text

    items = client.get("/equipment?q=BAL-1").json()
    assert len(items) == 1
    assert items[0]["total_quantity"] == 3
    assert items[0]["available_quantity"] == 3
    assert items[0]["brand"] == "Ohaus"


def test_csv_header_aliases():
    assert normalize_header("Nombre") == "name"
    assert normalize_header(" serial ") == "serial_number"
    assert normalize_header("cantidad_total") == "total_quantity"
    assert normalize_header("unknown") == "unknown"


def test_csv_bytes_to_rows_handles_bom_and_missing_header():
    rows, err = csv_bytes_to_rows("\ufeffname,serial_number\nScale,S-1\n".encode("utf-8"))
    assert err is None
    assert rows == [{"name": "Scale", "serial_number": "S-1"}]

    rows, err = csv_bytes_to_rows(b"")
    assert rows == []
    assert err == "CSV header not found"
