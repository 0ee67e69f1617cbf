import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from database.connection import get_db
from database.models import (
    User, UserRole, Patient, Notification, TherapistPatientAssignment,
    PatientProgramAssignment, PatientProgramProgress, ScheduledSession
)
from api.auth import require_admin, hash_password
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["Clinic Admin"])

# ==================== CONFIG ====================

STAFF_ROLE_PATTERN = r"^(therapist|parent)$"

# ==================== PYDANTIC MODELS ====================

class CreateUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=150)
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=6, max_length=128)
    role: str = Field(..., pattern=STAFF_ROLE_PATTERN)
    associated_patient_id: Optional[int] = None

class UpdateUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=150)
    username: str = Field(..., min_length=1, max_length=100)
    password: Optional[str] = Field(None, min_length=6, max_length=128)
    role: str = Field(..., pattern=STAFF_ROLE_PATTERN)
    associated_patient_id: Optional[int] = None

class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=6, max_length=128)

class TransferItem(BaseModel):
    assignment_id: int
    to_therapist_id: int

class TransferRequest(BaseModel):
    transfers: List[TransferItem] = Field(..., min_length=1)

class PatientRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    date_of_birth: Optional[date] = None
    diagnosis: Optional[str] = None
    general_notes: Optional[str] = None

class PatientTherapistsRequest(BaseModel):
    therapist_ids: List[int]

# ==================== HELPER FUNCTIONS ====================

def serialize_staff(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "full_name": user.full_name,
        "role": user.role,
        "is_admin": bool(user.is_admin),
        "associated_patient_id": user.associated_patient_id,
        "password_set": user.password_hash is not None,
        "last_login": user.last_login.isoformat() if user.last_login else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }

def serialize_patient(db: Session, patient: Patient) -> dict:
    therapists = db.query(User).join(
        TherapistPatientAssignment, TherapistPatientAssignment.therapist_id == User.id
    ).filter(
        TherapistPatientAssignment.patient_id == patient.id
    ).order_by(User.full_name).all()
    return {
        "id": patient.id,
        "name": patient.name,
        "date_of_birth": patient.date_of_birth.isoformat() if patient.date_of_birth else None,
        "diagnosis": patient.diagnosis,
        "general_notes": patient.general_notes,
        "therapists": [{"id": t.id, "full_name": t.full_name} for t in therapists],
        "created_at": patient.created_at.isoformat() if patient.created_at else None,
    }

def get_user_or_404(db: Session, clinic_id: int, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id, User.clinic_id == clinic_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found in this clinic.")
    return user

def get_patient_or_404(db: Session, clinic_id: int, patient_id: int) -> Patient:
    patient = db.query(Patient).filter(Patient.id == patient_id, Patient.clinic_id == clinic_id).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found in this clinic.")
    return patient

def get_clinic_therapists(db: Session, clinic_id: int, therapist_ids) -> dict:
    therapists = db.query(User).filter(
        User.id.in_(therapist_ids),
        User.clinic_id == clinic_id,
        User.role == UserRole.THERAPIST.value
    ).all()
    return {t.id: t for t in therapists}

def ensure_username_free(db: Session, username: str, user_id: Optional[int] = None):
    query = db.query(User).filter(User.username == username)
    if user_id is not None:
        query = query.filter(User.id != user_id)
    if query.first():
        raise HTTPException(
            status_code=409,
            detail={"msg": "This username is already in use.", "param": "username"}
        )

def resolve_associated_patient(db: Session, clinic_id: int, role: str, patient_id: Optional[int]) -> Optional[int]:
    """Parents must point at a patient of the clinic; other roles never do"""
    if role != UserRole.PARENT.value:
        return None
    if not patient_id:
        raise HTTPException(
            status_code=400,
            detail={"msg": "Parents must be associated with a patient.", "param": "associated_patient_id"}
        )
    return get_patient_or_404(db, clinic_id, patient_id).id

def ensure_not_self(current_user: User, user_id: int, action: str):
    if user_id == current_user.id:
        raise HTTPException(status_code=403, detail=f"You cannot {action} your own account here.")

# ==================== PATIENT REMOVAL ====================
# Ordered leaves -> root, same as the clinic cascade.

def _assignment_ids(patient_id: int):
    return select(PatientProgramAssignment.id).where(PatientProgramAssignment.patient_id == patient_id)

PATIENT_CASCADE_STEPS = [
    ("notifications", lambda db, pid: db.query(Notification).filter(
        Notification.patient_id == pid).delete(synchronize_session=False)),
    ("scheduled_sessions", lambda db, pid: db.query(ScheduledSession).filter(
        ScheduledSession.patient_id == pid).delete(synchronize_session=False)),
    ("progress_records", lambda db, pid: db.query(PatientProgramProgress).filter(
        PatientProgramProgress.assignment_id.in_(_assignment_ids(pid))).delete(synchronize_session=False)),
    ("program_assignments", lambda db, pid: db.query(PatientProgramAssignment).filter(
        PatientProgramAssignment.patient_id == pid).delete(synchronize_session=False)),
    ("therapist_assignments", lambda db, pid: db.query(TherapistPatientAssignment).filter(
        TherapistPatientAssignment.patient_id == pid).delete(synchronize_session=False)),
    ("unlinked_parents", lambda db, pid: db.query(User).filter(
        User.associated_patient_id == pid).update({User.associated_patient_id: None}, synchronize_session=False)),
    ("patient", lambda db, pid: db.query(Patient).filter(
        Patient.id == pid).delete(synchronize_session=False)),
]

# ==================== USER ENDPOINTS ====================

@router.get("/users", response_model=dict)
async def list_users(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    users = db.query(User).filter(User.clinic_id == current_user.clinic_id).order_by(
        User.is_admin.desc(), User.role, User.full_name
    ).all()
    return {"success": True, "data": [serialize_staff(u) for u in users]}

@router.post("/users", response_model=dict, status_code=201)
async def create_user(
    request: CreateUserRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Add a therapist or a parent to the admin's clinic"""
    username = request.username.strip()
    ensure_username_free(db, username)
    associated_patient_id = resolve_associated_patient(
        db, current_user.clinic_id, request.role, request.associated_patient_id
    )

    user = User(
        clinic_id=current_user.clinic_id,
        username=username,
        full_name=request.full_name.strip(),
        password_hash=hash_password(request.password),
        role=request.role,
        is_admin=False,
        associated_patient_id=associated_patient_id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info("User %s (%s) created by admin %s", user.id, user.role, current_user.id)
    return {
        "success": True,
        "message": f"User \"{user.full_name}\" created successfully.",
        "data": serialize_staff(user)
    }

@router.put("/users/{user_id}", response_model=dict)
async def update_user(
    user_id: int,
    request: UpdateUserRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    ensure_not_self(current_user, user_id, "edit")
    user = get_user_or_404(db, current_user.clinic_id, user_id)

    username = request.username.strip()
    ensure_username_free(db, username, user_id=user.id)

    user.full_name = request.full_name.strip()
    user.username = username
    user.role = request.role
    user.associated_patient_id = resolve_associated_patient(
        db, current_user.clinic_id, request.role, request.associated_patient_id
    )
    if request.password:
        user.password_hash = hash_password(request.password)
    db.commit()
    db.refresh(user)

    return {
        "success": True,
        "message": f"User \"{user.full_name}\" updated successfully.",
        "data": serialize_staff(user)
    }

@router.put("/users/{user_id}/reset-password", response_model=dict)
async def reset_user_password(
    user_id: int,
    request: ResetPasswordRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, current_user.clinic_id, user_id)
    user.password_hash = hash_password(request.password)
    db.commit()

    logger.info("Password of user %s reset by admin %s", user.id, current_user.id)
    return {"success": True, "message": "Password updated successfully."}

@router.delete("/users/{user_id}", response_model=dict)
async def delete_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Remove a clinic user and its patient links.
    Therapists with recorded sessions or appointments are kept: transfer their patients instead.
    """
    ensure_not_self(current_user, user_id, "delete")
    user = get_user_or_404(db, current_user.clinic_id, user_id)

    history = (
        db.query(func.count(PatientProgramProgress.id)).filter(PatientProgramProgress.therapist_id == user.id).scalar()
        + db.query(func.count(ScheduledSession.id)).filter(ScheduledSession.therapist_id == user.id).scalar()
    )
    if history:
        raise HTTPException(
            status_code=409,
            detail="This user has clinical history and cannot be removed. Transfer the patients instead."
        )

    try:
        db.query(TherapistPatientAssignment).filter(
            TherapistPatientAssignment.therapist_id == user.id
        ).delete(synchronize_session=False)
        db.query(Notification).filter(Notification.user_id == user.id).delete(synchronize_session=False)
        db.query(PatientProgramAssignment).filter(
            PatientProgramAssignment.assigned_by_id == user.id
        ).update({PatientProgramAssignment.assigned_by_id: None}, synchronize_session=False)
        for column in (ScheduledSession.created_by, ScheduledSession.justified_by, ScheduledSession.cancelled_by):
            db.query(ScheduledSession).filter(column == user.id).update({column: None}, synchronize_session=False)
        db.delete(user)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to delete user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error.")

    logger.info("User %s removed by admin %s", user_id, current_user.id)
    return {"success": True, "message": "User removed successfully."}

@router.get("/users/{user_id}/assignments", response_model=dict)
async def get_therapist_assignments(
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Patients currently linked to a therapist"""
    therapist = get_user_or_404(db, current_user.clinic_id, user_id)
    rows = db.query(TherapistPatientAssignment, Patient).join(
        Patient, TherapistPatientAssignment.patient_id == Patient.id
    ).filter(
        TherapistPatientAssignment.therapist_id == therapist.id
    ).order_by(Patient.name).all()

    return {
        "success": True,
        "data": [
            {"assignment_id": link.id, "patient_id": patient.id, "patient_name": patient.name}
            for link, patient in rows
        ]
    }

@router.post("/users/{user_id}/transfer", response_model=dict)
async def transfer_therapist_assignments(
    user_id: int,
    request: TransferRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Move patient links from one therapist to others; all or nothing"""
    therapist = get_user_or_404(db, current_user.clinic_id, user_id)

    links = {
        link.id: link for link in db.query(TherapistPatientAssignment).filter(
            TherapistPatientAssignment.therapist_id == therapist.id,
            TherapistPatientAssignment.id.in_([t.assignment_id for t in request.transfers])
        ).all()
    }
    targets = get_clinic_therapists(db, current_user.clinic_id, [t.to_therapist_id for t in request.transfers])

    for item in request.transfers:
        if item.assignment_id not in links:
            raise HTTPException(status_code=404, detail=f"Assignment {item.assignment_id} not found for this therapist.")
        if item.to_therapist_id not in targets or item.to_therapist_id == therapist.id:
            raise HTTPException(status_code=400, detail=f"Invalid destination therapist {item.to_therapist_id}.")

    transferred = 0
    try:
        for item in request.transfers:
            link = links[item.assignment_id]
            already_linked = db.query(TherapistPatientAssignment).filter(
                TherapistPatientAssignment.patient_id == link.patient_id,
                TherapistPatientAssignment.therapist_id == item.to_therapist_id
            ).first()
            if already_linked:
                db.delete(link)
            else:
                link.therapist_id = item.to_therapist_id
            transferred += 1
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Transfer from therapist %s rolled back", therapist.id)
        raise HTTPException(status_code=500, detail="Internal server error.")

    logger.info("%s patient link(s) transferred from therapist %s", transferred, therapist.id)
    return {
        "success": True,
        "message": f"{transferred} patient(s) transferred successfully.",
        "data": {"transferred": transferred}
    }

# ==================== PATIENT ENDPOINTS ====================

@router.get("/patients", response_model=dict)
async def list_patients(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    patients = db.query(Patient).filter(
        Patient.clinic_id == current_user.clinic_id
    ).order_by(Patient.name).all()
    return {
        "success": True,
        "data": [serialize_patient(db, p) for p in patients],
        "count": len(patients),
        "max_patients": current_user.clinic.max_patients
    }

@router.post("/patients", response_model=dict, status_code=201)
async def create_patient(
    request: PatientRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Register a patient; the clinic cannot go over its contracted slots"""
    clinic = current_user.clinic
    current_patients = db.query(func.count(Patient.id)).filter(Patient.clinic_id == clinic.id).scalar() or 0
    if current_patients >= clinic.max_patients:
        raise HTTPException(
            status_code=403,
            detail={
                "msg": f"Patient limit reached ({clinic.max_patients}). Contact support to contract more slots.",
                "code": "PATIENT_LIMIT_REACHED",
                "max_patients": clinic.max_patients,
                "current_patients": current_patients
            }
        )

    patient = Patient(
        clinic_id=clinic.id,
        name=request.name.strip(),
        date_of_birth=request.date_of_birth,
        diagnosis=request.diagnosis,
        general_notes=request.general_notes,
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)

    logger.info("Patient %s created in clinic %s", patient.id, clinic.id)
    return {
        "success": True,
        "message": f"Patient \"{patient.name}\" created successfully.",
        "data": serialize_patient(db, patient)
    }

@router.put("/patients/{patient_id}", response_model=dict)
async def update_patient(
    patient_id: int,
    request: PatientRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, current_user.clinic_id, patient_id)
    patient.name = request.name.strip()
    patient.date_of_birth = request.date_of_birth
    patient.diagnosis = request.diagnosis
    patient.general_notes = request.general_notes
    db.commit()
    db.refresh(patient)

    return {
        "success": True,
        "message": "Patient updated successfully.",
        "data": serialize_patient(db, patient)
    }

@router.delete("/patients/{patient_id}", response_model=dict)
async def delete_patient(
    patient_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Remove a patient with its programs, progress and appointments"""
    patient = get_patient_or_404(db, current_user.clinic_id, patient_id)

    counts = {}
    try:
        for label, step in PATIENT_CASCADE_STEPS:
            counts[label] = step(db, patient.id)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to delete patient %s", patient_id)
        raise HTTPException(status_code=500, detail="Internal server error.")
    db.expire_all()

    logger.info("Patient %s removed by admin %s: %s", patient_id, current_user.id, counts)
    return {
        "success": True,
        "message": "Patient removed successfully.",
        "data": {"deleted": counts}
    }

# ==================== THERAPIST-PATIENT LINKS ====================

@router.get("/assignments/{patient_id}", response_model=dict)
async def get_patient_therapists(
    patient_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, current_user.clinic_id, patient_id)
    return {"success": True, "data": serialize_patient(db, patient)["therapists"]}

@router.put("/assignments/{patient_id}", response_model=dict)
async def update_patient_therapists(
    patient_id: int,
    request: PatientTherapistsRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Replace the set of therapists attending a patient"""
    patient = get_patient_or_404(db, current_user.clinic_id, patient_id)

    wanted = list(dict.fromkeys(request.therapist_ids))
    therapists = get_clinic_therapists(db, current_user.clinic_id, wanted)
    unknown = [tid for tid in wanted if tid not in therapists]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Therapists not found in this clinic: {unknown}")

    try:
        db.query(TherapistPatientAssignment).filter(
            TherapistPatientAssignment.patient_id == patient.id
        ).delete(synchronize_session=False)
        for therapist_id in wanted:
            db.add(TherapistPatientAssignment(patient_id=patient.id, therapist_id=therapist_id))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to update therapists of patient %s", patient_id)
        raise HTTPException(status_code=500, detail="Internal server error.")

    return {
        "success": True,
        "message": "Patient assignments updated successfully.",
        "data": serialize_patient(db, patient)["therapists"]
    }
