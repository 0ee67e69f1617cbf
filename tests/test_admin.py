from datetime import date, time, timedelta

from database.models import (
    User, UserRole, Patient, TherapistPatientAssignment, PatientProgramAssignment,
    PatientProgramProgress, ScheduledSession
)


def new_therapist(db, clinic, username="carla", full_name="Carla Therapist"):
    user = User(clinic_id=clinic.id, username=username, full_name=full_name,
                role=UserRole.THERAPIST.value)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def test_admin_routes_require_admin(client, therapist, headers):
    for path in ("/api/admin/users", "/api/admin/patients"):
        assert client.get(path, headers=headers(therapist)).status_code == 403


def test_create_therapist_and_login(client, admin, headers):
    payload = {"full_name": "Carla Souza", "username": "carla", "password": "carla123", "role": "therapist"}

    response = client.post("/api/admin/users", json=payload, headers=headers(admin))
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["role"] == "therapist"
    assert data["is_admin"] is False
    assert data["password_set"] is True

    login = client.post("/api/auth/login", json={"username": "carla", "password": "carla123"})
    assert login.status_code == 200

    duplicate = client.post("/api/admin/users", json=payload, headers=headers(admin))
    assert duplicate.status_code == 409
    assert duplicate.json()["errors"][0]["param"] == "username"


def test_create_parent_requires_patient(client, admin, patient, headers):
    payload = {"full_name": "Mãe do Lucas", "username": "mae.lucas", "password": "lucas123", "role": "parent"}

    missing = client.post("/api/admin/users", json=payload, headers=headers(admin))
    assert missing.status_code == 400

    payload["associated_patient_id"] = patient.id
    response = client.post("/api/admin/users", json=payload, headers=headers(admin))
    assert response.status_code == 201
    assert response.json()["data"]["associated_patient_id"] == patient.id


def test_create_user_rejects_admin_role(client, admin, headers):
    payload = {"full_name": "Outro Admin", "username": "admin2", "password": "admin123", "role": "super_admin"}
    response = client.post("/api/admin/users", json=payload, headers=headers(admin))
    assert response.status_code == 400
    assert response.json()["errors"][0]["param"] == "role"


def test_update_user(client, admin, therapist, headers):
    payload = {"full_name": "Bruno Lima", "username": "bruno", "role": "therapist"}

    response = client.put(f"/api/admin/users/{therapist.id}", json=payload, headers=headers(admin))
    assert response.status_code == 200
    assert response.json()["data"]["full_name"] == "Bruno Lima"
    assert response.json()["data"]["username"] == "bruno"

    own = client.put(f"/api/admin/users/{admin.id}", json=payload, headers=headers(admin))
    assert own.status_code == 403


def test_reset_password_enables_login(client, db, admin, therapist, headers):
    therapist.password_hash = None
    db.commit()

    response = client.put(
        f"/api/admin/users/{therapist.id}/reset-password",
        json={"password": "novasenha"},
        headers=headers(admin),
    )
    assert response.status_code == 200

    login = client.post("/api/auth/login", json={"username": "therapist", "password": "novasenha"})
    assert login.status_code == 200


def test_delete_user(client, db, admin, therapist, patient, headers):
    response = client.delete(f"/api/admin/users/{therapist.id}", headers=headers(admin))
    assert response.status_code == 200
    assert db.query(TherapistPatientAssignment).count() == 0
    assert db.query(User).filter(User.username == "therapist").count() == 0

    own = client.delete(f"/api/admin/users/{admin.id}", headers=headers(admin))
    assert own.status_code == 403


def test_delete_user_with_history_is_refused(client, admin, therapist, make_progress, yesterday, headers):
    make_progress(yesterday)
    response = client.delete(f"/api/admin/users/{therapist.id}", headers=headers(admin))
    assert response.status_code == 409


def test_create_patient_respects_slot_limit(client, db, clinic, admin, patient, headers):
    created = client.post(
        "/api/admin/patients",
        json={"name": "Sofia Ramos", "date_of_birth": "2019-05-02"},
        headers=headers(admin),
    )
    assert created.status_code == 201
    assert created.json()["data"]["date_of_birth"] == "2019-05-02"

    clinic.max_patients = 2
    db.commit()

    blocked = client.post("/api/admin/patients", json={"name": "Pedro"}, headers=headers(admin))
    assert blocked.status_code == 403
    body = blocked.json()
    assert body["code"] == "PATIENT_LIMIT_REACHED"
    assert body["current_patients"] == 2
    assert db.query(Patient).count() == 2


def test_list_and_update_patient(client, admin, patient, headers):
    listing = client.get("/api/admin/patients", headers=headers(admin))
    data = listing.json()
    assert data["count"] == 1
    assert data["max_patients"] == 10
    assert data["data"][0]["therapists"][0]["full_name"] == "Bruno Therapist"

    response = client.put(
        f"/api/admin/patients/{patient.id}",
        json={"name": "Lucas A. Almeida", "diagnosis": "TEA"},
        headers=headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["diagnosis"] == "TEA"


def test_update_patient_therapists(client, db, clinic, admin, therapist, patient, headers):
    carla = new_therapist(db, clinic)

    response = client.put(
        f"/api/admin/assignments/{patient.id}",
        json={"therapist_ids": [carla.id, therapist.id, carla.id]},
        headers=headers(admin),
    )
    assert response.status_code == 200
    assert [t["full_name"] for t in response.json()["data"]] == ["Bruno Therapist", "Carla Therapist"]

    unknown = client.put(
        f"/api/admin/assignments/{patient.id}",
        json={"therapist_ids": [9999]},
        headers=headers(admin),
    )
    assert unknown.status_code == 400

    cleared = client.put(f"/api/admin/assignments/{patient.id}", json={"therapist_ids": []}, headers=headers(admin))
    assert cleared.json()["data"] == []
    assert client.get(f"/api/admin/assignments/{patient.id}", headers=headers(admin)).json()["data"] == []


def test_transfer_therapist_patients(client, db, clinic, admin, therapist, patient, headers):
    carla = new_therapist(db, clinic)

    links = client.get(f"/api/admin/users/{therapist.id}/assignments", headers=headers(admin)).json()["data"]
    assert [link["patient_name"] for link in links] == ["Lucas Almeida"]

    response = client.post(
        f"/api/admin/users/{therapist.id}/transfer",
        json={"transfers": [{"assignment_id": links[0]["assignment_id"], "to_therapist_id": carla.id}]},
        headers=headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["transferred"] == 1

    remaining = db.query(TherapistPatientAssignment).all()
    assert [(link.patient_id, link.therapist_id) for link in remaining] == [(patient.id, carla.id)]


def test_transfer_to_unknown_therapist(client, admin, therapist, patient, headers):
    links = client.get(f"/api/admin/users/{therapist.id}/assignments", headers=headers(admin)).json()["data"]
    response = client.post(
        f"/api/admin/users/{therapist.id}/transfer",
        json={"transfers": [{"assignment_id": links[0]["assignment_id"], "to_therapist_id": 9999}]},
        headers=headers(admin),
    )
    assert response.status_code == 400


def test_delete_patient_cascade(client, db, clinic, admin, patient, assignment, make_session, make_progress, yesterday, headers):
    progress = make_progress(yesterday)
    make_session(yesterday, time(10, 0), status="completed", progress_session_id=progress.id)
    parent = User(clinic_id=clinic.id, username="parent", full_name="Mãe do Lucas",
                  role=UserRole.PARENT.value, associated_patient_id=patient.id)
    db.add(parent)
    db.commit()
    parent_id = parent.id
    patient_id = patient.id

    response = client.delete(f"/api/admin/patients/{patient_id}", headers=headers(admin))
    assert response.status_code == 200
    deleted = response.json()["data"]["deleted"]
    assert deleted["patient"] == 1
    assert deleted["scheduled_sessions"] == 1
    assert deleted["progress_records"] == 1

    assert db.query(Patient).count() == 0
    assert db.query(PatientProgramAssignment).count() == 0
    assert db.query(PatientProgramProgress).count() == 0
    assert db.query(ScheduledSession).count() == 0
    assert db.query(User).filter(User.id == parent_id).one().associated_patient_id is None

    missing = client.delete(f"/api/admin/patients/{patient_id}", headers=headers(admin))
    assert missing.status_code == 404


def test_new_clinic_onboards_staff_and_patients(client, db, super_admin, headers):
    created = client.post(
        "/api/super-admin/clinics",
        json={"clinic_name": "Clínica Aurora", "max_patients": 5, "admin_name": "Ana", "admin_username": "ana"},
        headers=headers(super_admin),
    )
    assert created.status_code == 201

    first_access = client.post("/api/auth/set-password", json={"username": "ana", "password": "ana12345"})
    admin_headers = {"Authorization": f"Bearer {first_access.json()['token']}"}

    therapist = client.post(
        "/api/admin/users",
        json={"full_name": "Davi Costa", "username": "davi", "password": "davi1234", "role": "therapist"},
        headers=admin_headers,
    ).json()["data"]
    patient = client.post("/api/admin/patients", json={"name": "Helena"}, headers=admin_headers).json()["data"]
    client.put(f"/api/admin/assignments/{patient['id']}", json={"therapist_ids": [therapist["id"]]}, headers=admin_headers)

    appointment = client.post(
        "/api/admin/scheduling/appointments",
        json={
            "patient_id": patient["id"],
            "therapist_id": therapist["id"],
            "scheduled_date": (date.today() + timedelta(days=1)).isoformat(),
            "scheduled_time": "10:00",
        },
        headers=admin_headers,
    )
    assert appointment.status_code == 201
