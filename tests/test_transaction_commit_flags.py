import crud
from models import EquipmentIn, LoanIn


def test_create_equipment_commit_false_requires_manual_commit(db_session):
    body = EquipmentIn(name="Tablet", serial_number="T-001", total_quantity=2)
    created = crud.create_equipment(db_session, body, commit=False)

    db_session.commit()
    db_session.expire_all()

    loaded = crud.get_equipment(db_session, created.id)
    assert loaded is not None
    assert loaded.serial_number == "T-001"


def test_create_equipment_commit_false_rollback_discards_change(db_session):
    body = EquipmentIn(name="Tablet", serial_number="T-002")
    created = crud.create_equipment(db_session, body, commit=False)

    db_session.rollback()
    db_session.expire_all()

    assert crud.get_equipment(db_session, created.id) is None


def test_create_loan_commit_false_rollback_restores_available(db_session, make_profile, make_equipment):
    user = make_profile()
    e = make_equipment(total=4)

    loan = crud.create_loan(
        db_session,
        LoanIn(user_id=user.id, equipment_id=e.id, quantity=3),
        commit=False,
    )

    db_session.rollback()
    db_session.expire_all()

    assert crud.get_loan(db_session, loan.id) is None
    restored = crud.get_equipment(db_session, e.id)
    assert restored.available_quantity == 4
    assert restored.version == e.version
    assert crud.list_movements(db_session, e.id) == []


def test_return_loan_commit_false_requires_manual_commit(db_session, make_profile, make_equipment, lend):
    user = make_profile()
    e = make_equipment(total=4)
    loan = lend(user.id, e.id, 2)

    crud.return_loan(db_session, loan.id, 2, commit=False)
    db_session.commit()
    db_session.expire_all()

    assert crud.get_loan(db_session, loan.id).status == "returned"
    assert crud.get_equipment(db_session, e.id).available_quantity == 4


def test_update_profile_commit_false_rollback_discards_change(db_session, make_profile):
    from models import ProfileUpdate

    p = make_profile()
    crud.update_profile(db_session, p.id, ProfileUpdate(role="admin"), commit=False)

    db_session.rollback()
    db_session.expire_all()

    assert crud.get_profile(db_session, p.id).role == "normal"


def test_delete_notification_commit_false_rollback_keeps_row(db_session, make_profile):
    p = make_profile()
    n = crud.create_notification(db_session, recipient_id=p.id, subject="s", content="c")

    assert crud.delete_notification(db_session, n.id, p.id, commit=False) is True
    db_session.rollback()

    assert len(crud.list_notifications(db_session, p.id)) == 1
