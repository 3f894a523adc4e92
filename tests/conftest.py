import os
import tempfile
from pathlib import Path

# ---- テスト用DBパス（アプリのモジュールを import する前に設定）----
_TMP_DIR = Path(tempfile.mkdtemp(prefix="lab_app_"))
os.environ["APP_DB_PATH"] = str(_TMP_DIR / "test_lab.db")
os.environ["MONITOR_ENABLED"] = "false"
os.environ["MONITOR_NOTIFY_ADMINS"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete

import crud
import dependencies
from integrity import EquipmentSnapshot
from models import EquipmentIn, LoanIn, ProfileIn
from orm import EquipmentORM, LoanORM, MovementORM, NotificationORM, ProfileORM

DEFAULT_PASSWORD = "secret123"


@pytest.fixture(scope="session")
def app_module():
    import main

    return main


@pytest.fixture()
def client(app_module):
    # get_db を override（テスト用SessionLocalを使う）
    def _get_db_override():
        db = app_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app_module.app.dependency_overrides[dependencies.get_db] = _get_db_override
    with TestClient(app_module.app) as c:
        yield c
    app_module.app.dependency_overrides.clear()


@pytest.fixture()
def db_session(app_module):
    db = app_module.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def clean_db(app_module, db_session):
    # 各テスト前にテーブルを全消し（順序注意：子テーブルから）
    db_session.execute(delete(NotificationORM))
    db_session.execute(delete(MovementORM))
    db_session.execute(delete(LoanORM))
    db_session.execute(delete(EquipmentORM))
    db_session.execute(delete(ProfileORM))
    db_session.commit()
    yield


@pytest.fixture()
def make_profile(db_session):
    counter = {"n": 0}

    def _make(role="normal", email=None, first_name="Ana"):
        counter["n"] += 1
        n = counter["n"]
        return crud.register_profile(
            db_session,
            ProfileIn(
                email=email or f"user{n}@lab.test",
                password=DEFAULT_PASSWORD,
                first_name=first_name,
                last_name=f"Tester{n}",
                student_id=f"S-{n:04d}",
            ),
            role=role,
        )

    return _make


@pytest.fixture()
def make_equipment(db_session):
    def _make(name="Microscope", serial="SN-001", total=10):
        return crud.create_equipment(
            db_session,
            EquipmentIn(name=name, serial_number=serial, total_quantity=total),
        )

    return _make


@pytest.fixture()
def lend(db_session):
    def _lend(user_id, equipment_id, quantity, **kwargs):
        return crud.create_loan(
            db_session,
            LoanIn(user_id=user_id, equipment_id=equipment_id, quantity=quantity, **kwargs),
        )

    return _lend


def login(client, profile, password=DEFAULT_PASSWORD):
    r = client.post(
        "/login",
        data={"email": profile.email, "password": password},
        follow_redirects=False,
    )
    assert r.status_code == 303, r.text
    return r


@pytest.fixture()
def login_as(client, make_profile):
    def _login(role="normal"):
        profile = make_profile(role=role)
        login(client, profile)
        return profile

    return _login


class FakeStore:
    """In-memory inventory store."""

    def __init__(self):
        self.equipment = {}
        self.loans = {}
        self.corrections = []
        self.notifications = []
        self.low = []
        self.overdue = []
        self.fail_loans_for = set()
        self.fail_update_for = set()
        self.fail_notify = False

    def add(self, eid, name, total, available, loans=(), version=1):
        self.equipment[eid] = EquipmentSnapshot(eid, name, total, available, version)
        self.loans[eid] = list(loans)

    def list_equipment(self):
        return list(self.equipment.values())

    def get_equipment(self, equipment_id):
        return self.equipment.get(equipment_id)

    def open_loan_quantities(self, equipment_id):
        if equipment_id in self.fail_loans_for:
            raise RuntimeError("loan query failed")
        return self.loans.get(equipment_id, [])

    def update_available(self, equipment_id, *, expected_version, new_available):
        if equipment_id in self.fail_update_for:
            raise RuntimeError("write failed")
        e = self.equipment[equipment_id]
        if e.version != expected_version:
            return False
        self.equipment[equipment_id] = EquipmentSnapshot(
            e.id, e.name, e.total_quantity, new_available, e.version + 1
        )
        return True

    def record_correction(self, record):
        self.corrections.append(record)

    def notify_admins(self, subject, content):
        if self.fail_notify:
            raise RuntimeError("notification insert failed")
        self.notifications.append((subject, content))
        return 1

    def low_availability(self, threshold_percent):
        return list(self.low)

    def overdue_loans(self, now):
        return list(self.overdue)


@pytest.fixture()
def fake_store():
    return FakeStore()
