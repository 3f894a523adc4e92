from urllib.parse import parse_qs, urlparse


def test_ui_flow_create_lend_return_export(client, login_as, make_profile):
    login_as("becario")
    borrower = make_profile(first_name="Marta")

    # 1) 追加（UI）
    r = client.post(
        "/ui/equipment",
        data={"name": "Multimeter", "serial_number": "MM-100", "total_quantity": "5", "location": "Lab 2"},
        follow_redirects=False,
    )
    assert r.status_code in (302, 303)

    # 2) APIからidを取る
    items = client.get("/equipment?q=MM-100").json()
    assert len(items) == 1
    equipment_id = items[0]["id"]

    # 3) 借り手を検索して選ぶ
    r = client.get("/ui/loans?q=Marta")
    assert r.status_code == 200
    assert borrower.student_id in r.text

    # 4) 貸出（UI）
    r = client.post(
        "/ui/loans",
        data={"user_id": borrower.id, "equipment_id": equipment_id, "quantity": "4", "due_date": ""},
        follow_redirects=False,
    )
    assert r.status_code == 303
    assert "error" not in r.headers["location"]
    assert client.get(f"/equipment/{equipment_id}").json()["available_quantity"] == 1

    r = client.get(f"/ui/loans?user_id={borrower.id}")
    assert r.status_code == 200
    assert "Multimeter" in r.text

    # 5) 一部返却（UI）
    r = client.post(
        "/ui/loans/return-partial",
        data={"user_id": borrower.id, "equipment_id": equipment_id, "quantity": "3"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    assert client.get(f"/equipment/{equipment_id}").json()["available_quantity"] == 4

    # 6) 返しすぎはエラーで戻る
    r = client.post(
        "/ui/loans/return-partial",
        data={"user_id": borrower.id, "equipment_id": equipment_id, "quantity": "2"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    error = parse_qs(urlparse(r.headers["location"]).query)["error"][0]
    assert error == "Cannot return more than was lent. Pending: 1, trying to return: 2"

    r = client.get(r.headers["location"])
    assert "Cannot return more than was lent" in r.text

    # 7) 整合性はずっと保たれている
    findings = client.app.state.monitor.checker.check()
    assert all(not f.mismatch for f in findings)

    # 8) CSV出力に対象が含まれること
    r = client.get("/ui/equipment/export?q=MM-100")
    assert r.status_code == 200
    assert "MM-100" in r.text


def test_dashboard_and_profile_show_own_loans(client, login_as, make_equipment, lend):
    me = login_as()
    e = make_equipment(name="Thermometer", serial="TH-1", total=3)
    lend(me.id, e.id, 2)

    r = client.get("/ui/dashboard")
    assert r.status_code == 200
    assert "Active loans: 1" in r.text

    r = client.get("/ui/profile")
    assert r.status_code == 200
    assert "Thermometer (pending 2 of 2)" in r.text


def test_ui_loan_over_available_shows_error(client, login_as, make_profile, make_equipment):
    login_as("admin")
    borrower = make_profile()
    e = make_equipment(total=1)

    r = client.post(
        "/ui/loans",
        data={"user_id": borrower.id, "equipment_id": e.id, "quantity": "2"},
        follow_redirects=False,
    )
    error = parse_qs(urlparse(r.headers["location"]).query)["error"][0]
    assert error == "Not enough quantity available. Available: 1, requested: 2"


def test_ui_loan_with_malformed_due_date_shows_error(client, login_as, make_profile, make_equipment):
    login_as("becario")
    borrower = make_profile()
    e = make_equipment(total=3)

    r = client.post(
        "/ui/loans",
        data={"user_id": borrower.id, "equipment_id": e.id, "quantity": "1", "due_date": "next friday"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    error = parse_qs(urlparse(r.headers["location"]).query)["error"][0]
    assert error == "Invalid due date: next friday"
    assert client.get(f"/equipment/{e.id}").json()["available_quantity"] == 3
