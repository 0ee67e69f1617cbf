from datetime import date, time, timedelta
from decimal import Decimal

from database.models import (
    Clinic, User, Patient, ClinicBilling, Notification, ScheduledSession, PatientProgramProgress
)
from api import super_admin as super_admin_api


def test_create_clinic_with_pending_admin(client, db, super_admin, headers):
    response = client.post(
        "/api/super-admin/clinics",
        json={"clinic_name": "Clínica Nova", "max_patients": 30, "admin_name": "Ana", "admin_username": "ana"},
        headers=headers(super_admin),
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["max_patients"] == 30
    assert data["admin_username"] == "ana"
    assert data["admin_password_set"] is False

    admin = db.query(User).filter(User.username == "ana").one()
    assert admin.is_admin is True
    assert admin.password_hash is None

    check = client.post("/api/auth/check-user", json={"username": "ana"})
    assert check.json()["action"] == "SET_PASSWORD"


def test_create_clinic_duplicate_username(client, super_admin, admin, headers):
    response = client.post(
        "/api/super-admin/clinics",
        json={"clinic_name": "Outra", "admin_name": "Dup", "admin_username": "admin"},
        headers=headers(super_admin),
    )
    assert response.status_code == 400


def test_create_clinic_validation(client, super_admin, headers):
    response = client.post(
        "/api/super-admin/clinics",
        json={"clinic_name": "Sem vagas", "max_patients": 0, "admin_name": "X", "admin_username": "x"},
        headers=headers(super_admin),
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["param"] == "max_patients"


def test_list_and_search_clinics(client, super_admin, clinic, admin, patient, headers):
    response = client.get("/api/super-admin/clinics", params={"search": "admin"}, headers=headers(super_admin))
    assert response.status_code == 200
    data = response.json()["data"]
    assert len(data) == 1
    assert data[0]["patient_count"] == 1
    assert data[0]["therapist_count"] == 2
    assert data[0]["slot_usage"] == 10.0

    none = client.get("/api/super-admin/clinics", params={"status": "suspended"}, headers=headers(super_admin))
    assert none.json()["data"] == []


def test_suspend_and_reactivate(client, db, super_admin, clinic, therapist, headers):
    response = client.put(
        f"/api/super-admin/clinics/{clinic.id}/suspend",
        json={"reason": "Pagamento em atraso"},
        headers=headers(super_admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "suspended"
    assert response.json()["data"]["suspension_reason"] == "Pagamento em atraso"

    again = client.put(
        f"/api/super-admin/clinics/{clinic.id}/suspend",
        json={"reason": "Outra vez"},
        headers=headers(super_admin),
    )
    assert again.status_code == 400

    blocked = client.post("/api/auth/login", json={"username": "therapist", "password": "secret123"})
    assert blocked.status_code == 403

    response = client.put(f"/api/super-admin/clinics/{clinic.id}/reactivate", headers=headers(super_admin))
    data = response.json()["data"]
    assert data["status"] == "active"
    assert data["suspended_at"] is None
    assert data["suspension_reason"] is None
    assert data["reactivated_at"] is not None

    allowed = client.post("/api/auth/login", json={"username": "therapist", "password": "secret123"})
    assert allowed.status_code == 200


def test_patient_limit(client, super_admin, clinic, patient, headers):
    response = client.put(
        f"/api/super-admin/clinics/{clinic.id}/patient-limit",
        json={"max_patients": 25},
        headers=headers(super_admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["max_patients"] == 25


def test_reset_admin_password(client, db, super_admin, clinic, admin, headers):
    response = client.put(f"/api/super-admin/clinics/{clinic.id}/reset-admin-password", headers=headers(super_admin))
    assert response.status_code == 200
    db.refresh(admin)
    assert admin.password_hash is None


def test_reset_admin_password_without_admin(client, super_admin, clinic, therapist, headers):
    response = client.put(f"/api/super-admin/clinics/{clinic.id}/reset-admin-password", headers=headers(super_admin))
    assert response.status_code == 404


def test_metrics(client, super_admin, clinic, admin, therapist, patient, headers):
    response = client.get("/api/super-admin/metrics", headers=headers(super_admin))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_clinics"] == 1
    assert data["total_users"] == 2
    assert data["total_patients"] == 1
    assert data["monthly_revenue"] == 349.0
    assert data["default_rate"] == 0.0
    assert data["utilization_rate"] == 10.0


def test_activity_log_and_growth(client, super_admin, clinic, therapist, headers):
    log = client.get("/api/super-admin/activity-log", params={"limit": 5}, headers=headers(super_admin))
    assert log.status_code == 200
    actions = {event["action_type"] for event in log.json()["data"]}
    assert actions == {"clinic_created", "user_created"}

    growth = client.get("/api/super-admin/growth-stats", params={"months": 3}, headers=headers(super_admin))
    months = growth.json()["data"]
    assert len(months) == 4
    current = months[-1]
    assert current["month"] == date.today().strftime("%Y-%m")
    assert current["new_clinics"] == 1
    assert current["new_users"] == 1


def seed_clinic_data(db, clinic, therapist, make_session, make_progress):
    progress = make_progress(date.today() - timedelta(days=1))
    make_session(date.today() + timedelta(days=1), time(9, 0))
    db.add(Notification(user_id=therapist.id, type="orphan_session", title="t", message="m"))
    db.add(ClinicBilling(clinic_id=clinic.id, amount=Decimal("349.00"), due_date=date.today()))
    db.commit()
    return progress


def test_delete_clinic_cascade(client, db, super_admin, clinic, therapist, make_session, make_progress, headers):
    seed_clinic_data(db, clinic, therapist, make_session, make_progress)
    clinic_id = clinic.id

    response = client.delete(f"/api/super-admin/clinics/{clinic_id}", headers=headers(super_admin))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["deleted"]["clinic"] == 1
    assert data["deleted"]["scheduled_sessions"] == 1
    assert data["deleted"]["progress_records"] == 1
    assert data["deleted"]["users"] == 2
    assert data["total_deleted"] == sum(data["deleted"].values())

    assert db.query(Clinic).filter(Clinic.id == clinic_id).first() is None
    assert db.query(Patient).count() == 0
    assert db.query(ScheduledSession).count() == 0
    assert db.query(User).filter(User.username == "root").count() == 1


def test_delete_clinic_rolls_back_on_failure(client, db, super_admin, clinic, therapist, make_session, make_progress, headers, monkeypatch):
    seed_clinic_data(db, clinic, therapist, make_session, make_progress)
    clinic_id = clinic.id

    def explode(db, clinic_id):
        raise RuntimeError("constraint violation")

    steps = list(super_admin_api.CASCADE_STEPS)
    steps.insert(3, ("explode", explode))
    monkeypatch.setattr(super_admin_api, "CASCADE_STEPS", steps)

    response = client.delete(f"/api/super-admin/clinics/{clinic_id}", headers=headers(super_admin))
    assert response.status_code == 500

    assert db.query(Clinic).filter(Clinic.id == clinic_id).count() == 1
    assert db.query(Notification).count() == 1
    assert db.query(ScheduledSession).count() == 1
    assert db.query(PatientProgramProgress).count() == 1


def test_delete_unknown_clinic(client, super_admin, headers):
    response = client.delete("/api/super-admin/clinics/9999", headers=headers(super_admin))
    assert response.status_code == 404
