import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session
from database.connection import get_db
from database.models import (
    Clinic, ClinicStatus, User, UserRole, Patient, Notification,
    TherapistPatientAssignment, PatientProgramAssignment, PatientProgramProgress,
    ScheduledSession, ClinicBilling, BillingStatus
)
from api.auth import require_super_admin
from api.billing import get_financial_metrics, shift_month
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, date, timedelta
import logging

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/super-admin",
    tags=["Super Admin"],
    dependencies=[Depends(require_super_admin)]
)

# ==================== CONFIG ====================

DEFAULT_MAX_PATIENTS = 50
ACTIVITY_WINDOW_DAYS = 30

# ==================== PYDANTIC MODELS ====================

class CreateClinicRequest(BaseModel):
    clinic_name: str = Field(..., min_length=1, max_length=200)
    max_patients: int = Field(DEFAULT_MAX_PATIENTS, ge=1)
    admin_name: str = Field(..., min_length=1, max_length=150)
    admin_username: str = Field(..., min_length=1, max_length=100)

class SuspendClinicRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)

class PatientLimitRequest(BaseModel):
    max_patients: int = Field(..., ge=1)

# ==================== CASCADE DELETE ====================
# Ordered leaves -> root; each step returns the number of rows removed.

def _patient_ids(clinic_id: int):
    return select(Patient.id).where(Patient.clinic_id == clinic_id)

def _user_ids(clinic_id: int):
    return select(User.id).where(User.clinic_id == clinic_id)

def _assignment_ids(clinic_id: int):
    return select(PatientProgramAssignment.id).where(
        PatientProgramAssignment.patient_id.in_(_patient_ids(clinic_id))
    )

def delete_notifications(db: Session, clinic_id: int) -> int:
    return db.query(Notification).filter(or_(
        Notification.user_id.in_(_user_ids(clinic_id)),
        Notification.patient_id.in_(_patient_ids(clinic_id))
    )).delete(synchronize_session=False)

def delete_scheduled_sessions(db: Session, clinic_id: int) -> int:
    return db.query(ScheduledSession).filter(
        ScheduledSession.patient_id.in_(_patient_ids(clinic_id))
    ).delete(synchronize_session=False)

def delete_progress(db: Session, clinic_id: int) -> int:
    return db.query(PatientProgramProgress).filter(
        PatientProgramProgress.assignment_id.in_(_assignment_ids(clinic_id))
    ).delete(synchronize_session=False)

def delete_therapist_assignments(db: Session, clinic_id: int) -> int:
    return db.query(TherapistPatientAssignment).filter(
        TherapistPatientAssignment.patient_id.in_(_patient_ids(clinic_id))
    ).delete(synchronize_session=False)

def delete_program_assignments(db: Session, clinic_id: int) -> int:
    return db.query(PatientProgramAssignment).filter(
        PatientProgramAssignment.patient_id.in_(_patient_ids(clinic_id))
    ).delete(synchronize_session=False)

def delete_billings(db: Session, clinic_id: int) -> int:
    return db.query(ClinicBilling).filter(
        ClinicBilling.clinic_id == clinic_id
    ).delete(synchronize_session=False)

def delete_users(db: Session, clinic_id: int) -> int:
    return db.query(User).filter(User.clinic_id == clinic_id).delete(synchronize_session=False)

def delete_patients(db: Session, clinic_id: int) -> int:
    return db.query(Patient).filter(Patient.clinic_id == clinic_id).delete(synchronize_session=False)

def delete_clinic_row(db: Session, clinic_id: int) -> int:
    return db.query(Clinic).filter(Clinic.id == clinic_id).delete(synchronize_session=False)

CASCADE_STEPS = [
    ("notifications", delete_notifications),
    ("scheduled_sessions", delete_scheduled_sessions),
    ("progress_records", delete_progress),
    ("therapist_assignments", delete_therapist_assignments),
    ("program_assignments", delete_program_assignments),
    ("billings", delete_billings),
    ("users", delete_users),
    ("patients", delete_patients),
    ("clinic", delete_clinic_row),
]

def delete_clinic_cascade(db: Session, clinic_id: int) -> dict:
    """Remove a clinic and everything scoped to it in one transaction"""
    counts = {}
    try:
        for label, step in CASCADE_STEPS:
            counts[label] = step(db, clinic_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.expire_all()
    return counts

# ==================== HELPER FUNCTIONS ====================

def count(db: Session, column, *criteria) -> int:
    return db.query(func.count(column)).filter(*criteria).scalar() or 0

def get_clinic_or_404(db: Session, clinic_id: int) -> Clinic:
    clinic = db.query(Clinic).filter(Clinic.id == clinic_id).first()
    if not clinic:
        raise HTTPException(status_code=404, detail="Clinic not found.")
    return clinic

def clinic_admin(db: Session, clinic_id: int) -> Optional[User]:
    return db.query(User).filter(
        User.clinic_id == clinic_id,
        User.is_admin.is_(True)
    ).order_by(User.id).first()

def serialize_clinic(db: Session, clinic: Clinic) -> dict:
    admin = clinic_admin(db, clinic.id)
    next_bill = db.query(ClinicBilling).filter(
        ClinicBilling.clinic_id == clinic.id,
        ClinicBilling.status.in_([BillingStatus.PENDING.value, BillingStatus.OVERDUE.value])
    ).order_by(ClinicBilling.due_date).first()
    patients = count(db, Patient.id, Patient.clinic_id == clinic.id)

    return {
        "id": clinic.id,
        "name": clinic.name,
        "status": clinic.status,
        "max_patients": clinic.max_patients,
        "patient_count": patients,
        "slot_usage": round(patients / clinic.max_patients * 100, 2) if clinic.max_patients else 0.0,
        "user_count": count(db, User.id, User.clinic_id == clinic.id),
        "therapist_count": count(db, User.id, User.clinic_id == clinic.id, User.role == UserRole.THERAPIST.value),
        "admin_name": admin.full_name if admin else None,
        "admin_username": admin.username if admin else None,
        "admin_password_set": bool(admin and admin.password_hash),
        "suspended_at": clinic.suspended_at.isoformat() if clinic.suspended_at else None,
        "suspension_reason": clinic.suspension_reason,
        "reactivated_at": clinic.reactivated_at.isoformat() if clinic.reactivated_at else None,
        "next_due_date": next_bill.due_date.isoformat() if next_bill else None,
        "next_due_status": next_bill.status if next_bill else None,
        "created_at": clinic.created_at.isoformat() if clinic.created_at else None,
    }

# ==================== METRICS ENDPOINTS ====================

@router.get("/metrics", response_model=dict)
async def get_system_metrics(db: Session = Depends(get_db)):
    """System counters merged with billing metrics"""
    month_ago = datetime.now() - timedelta(days=ACTIVITY_WINDOW_DAYS)
    clinic_users = User.clinic_id.isnot(None)

    total_clinics = count(db, Clinic.id)
    total_patients = count(db, Patient.id)
    metrics = {
        "total_clinics": total_clinics,
        "active_clinics": count(db, Clinic.id, Clinic.status == ClinicStatus.ACTIVE.value),
        "suspended_clinics": count(db, Clinic.id, Clinic.status == ClinicStatus.SUSPENDED.value),
        "total_users": count(db, User.id, clinic_users),
        "total_therapists": count(db, User.id, clinic_users, User.role == UserRole.THERAPIST.value),
        "total_parents": count(db, User.id, clinic_users, User.role == UserRole.PARENT.value),
        "total_admins": count(db, User.id, clinic_users, User.is_admin.is_(True)),
        "total_patients": total_patients,
        "new_clinics_month": count(db, Clinic.id, Clinic.created_at >= month_ago),
        "new_users_month": count(db, User.id, clinic_users, User.created_at >= month_ago),
        "avg_patients_per_clinic": round(total_patients / total_clinics, 2) if total_clinics else 0.0,
    }
    metrics.update(get_financial_metrics(db))
    return {"success": True, "data": metrics}

@router.get("/activity-log", response_model=dict)
async def get_activity_log(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    since = datetime.now() - timedelta(days=ACTIVITY_WINDOW_DAYS)
    events = []

    for clinic in db.query(Clinic).filter(Clinic.created_at >= since).all():
        events.append({
            "action_type": "clinic_created",
            "entity_id": clinic.id,
            "entity_name": clinic.name,
            "action_date": clinic.created_at,
            "description": "New clinic created",
        })

    for clinic in db.query(Clinic).filter(Clinic.suspended_at.isnot(None), Clinic.suspended_at >= since).all():
        events.append({
            "action_type": "clinic_suspended",
            "entity_id": clinic.id,
            "entity_name": clinic.name,
            "action_date": clinic.suspended_at,
            "description": f"Clinic suspended: {clinic.suspension_reason or 'no reason given'}",
        })

    for user in db.query(User).filter(User.clinic_id.isnot(None), User.created_at >= since).all():
        events.append({
            "action_type": "user_created",
            "entity_id": user.id,
            "entity_name": user.full_name,
            "action_date": user.created_at,
            "description": f"New user: {user.role}",
        })

    events.sort(key=lambda e: e["action_date"], reverse=True)
    events = events[:limit]
    for event in events:
        event["action_date"] = event["action_date"].isoformat()

    return {"success": True, "data": events}

@router.get("/growth-stats", response_model=dict)
async def get_growth_stats(
    months: int = Query(6, ge=1, le=24),
    db: Session = Depends(get_db)
):
    start = shift_month(date.today(), -months)
    since = datetime.combine(start, datetime.min.time())

    buckets = {}
    for offset in range(months + 1):
        month_start = shift_month(start, offset)
        key = month_start.strftime("%Y-%m")
        buckets[key] = {
            "month": key,
            "month_label": month_start.strftime("%b/%y"),
            "new_clinics": 0,
            "new_users": 0,
            "new_patients": 0,
        }

    sources = [
        ("new_clinics", db.query(Clinic.created_at).filter(Clinic.created_at >= since)),
        ("new_users", db.query(User.created_at).filter(User.clinic_id.isnot(None), User.created_at >= since)),
        ("new_patients", db.query(Patient.created_at).filter(Patient.created_at >= since)),
    ]
    for field, query in sources:
        for (created_at,) in query.all():
            bucket = buckets.get(created_at.strftime("%Y-%m"))
            if bucket:
                bucket[field] += 1

    return {"success": True, "data": list(buckets.values())}

# ==================== CLINIC ENDPOINTS ====================

@router.get("/clinics", response_model=dict)
async def list_clinics(
    status: Optional[str] = Query(None, pattern=r"^(active|suspended|inactive)$"),
    search: Optional[str] = Query(None, max_length=100),
    db: Session = Depends(get_db)
):
    query = db.query(Clinic)
    if status:
        query = query.filter(Clinic.status == status)
    if search:
        term = f"%{search.strip()}%"
        admin_match = select(User.clinic_id).where(
            User.username.ilike(term),
            User.clinic_id.isnot(None)
        )
        query = query.filter(or_(Clinic.name.ilike(term), Clinic.id.in_(admin_match)))

    clinics = query.order_by(Clinic.created_at.desc(), Clinic.id.desc()).all()
    return {"success": True, "data": [serialize_clinic(db, c) for c in clinics]}

@router.post("/clinics", response_model=dict, status_code=201)
async def create_clinic(
    request: CreateClinicRequest,
    db: Session = Depends(get_db)
):
    """Create a tenant and its first administrator (password defined on first login)"""
    username = request.admin_username.strip()
    if db.query(User).filter(User.username == username).first():
        raise HTTPException(status_code=400, detail="This username is already in use.")

    try:
        clinic = Clinic(
            name=request.clinic_name.strip(),
            max_patients=request.max_patients,
            status=ClinicStatus.ACTIVE.value,
        )
        db.add(clinic)
        db.flush()

        admin = User(
            clinic_id=clinic.id,
            username=username,
            full_name=request.admin_name.strip(),
            password_hash=None,
            role=UserRole.THERAPIST.value,
            is_admin=True,
        )
        db.add(admin)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to create clinic %s", request.clinic_name)
        raise HTTPException(status_code=500, detail="Internal server error.")

    db.refresh(clinic)
    logger.info("Clinic %s created with admin %s", clinic.id, username)
    return {
        "success": True,
        "message": "Clinic created successfully.",
        "data": serialize_clinic(db, clinic)
    }

@router.get("/clinics/{clinic_id}", response_model=dict)
async def get_clinic(clinic_id: int, db: Session = Depends(get_db)):
    clinic = get_clinic_or_404(db, clinic_id)
    return {"success": True, "data": serialize_clinic(db, clinic)}

@router.put("/clinics/{clinic_id}/suspend", response_model=dict)
async def suspend_clinic(
    clinic_id: int,
    request: SuspendClinicRequest,
    db: Session = Depends(get_db)
):
    clinic = get_clinic_or_404(db, clinic_id)
    if clinic.status == ClinicStatus.SUSPENDED.value:
        raise HTTPException(status_code=400, detail="Clinic is already suspended.")

    clinic.status = ClinicStatus.SUSPENDED.value
    clinic.suspended_at = datetime.now()
    clinic.suspension_reason = request.reason.strip()
    db.commit()
    db.refresh(clinic)

    logger.info("Clinic %s suspended: %s", clinic.id, clinic.suspension_reason)
    return {"success": True, "message": "Clinic suspended.", "data": serialize_clinic(db, clinic)}

@router.put("/clinics/{clinic_id}/reactivate", response_model=dict)
async def reactivate_clinic(clinic_id: int, db: Session = Depends(get_db)):
    clinic = get_clinic_or_404(db, clinic_id)

    clinic.status = ClinicStatus.ACTIVE.value
    clinic.suspended_at = None
    clinic.suspension_reason = None
    clinic.reactivated_at = datetime.now()
    db.commit()
    db.refresh(clinic)

    logger.info("Clinic %s reactivated", clinic.id)
    return {"success": True, "message": "Clinic reactivated.", "data": serialize_clinic(db, clinic)}

@router.put("/clinics/{clinic_id}/patient-limit", response_model=dict)
async def update_patient_limit(
    clinic_id: int,
    request: PatientLimitRequest,
    db: Session = Depends(get_db)
):
    clinic = get_clinic_or_404(db, clinic_id)
    clinic.max_patients = request.max_patients
    db.commit()
    db.refresh(clinic)

    data = serialize_clinic(db, clinic)
    message = "Patient limit updated."
    if data["patient_count"] > clinic.max_patients:
        message += " The clinic currently has more patients than the new limit."
    return {"success": True, "message": message, "data": data}

@router.put("/clinics/{clinic_id}/reset-admin-password", response_model=dict)
async def reset_admin_password(clinic_id: int, db: Session = Depends(get_db)):
    """Clear the admin password so it is defined again on the next login"""
    get_clinic_or_404(db, clinic_id)
    admin = clinic_admin(db, clinic_id)
    if not admin:
        raise HTTPException(status_code=404, detail="No administrator found for this clinic.")

    admin.password_hash = None
    db.commit()

    logger.info("Admin password reset for clinic %s (user %s)", clinic_id, admin.username)
    return {
        "success": True,
        "message": "Administrator password reset. A new one will be requested on next login.",
        "data": {"user_id": admin.id, "username": admin.username}
    }

@router.delete("/clinics/{clinic_id}", response_model=dict)
async def delete_clinic(clinic_id: int, db: Session = Depends(get_db)):
    clinic = get_clinic_or_404(db, clinic_id)
    clinic_name = clinic.name

    try:
        counts = delete_clinic_cascade(db, clinic_id)
    except Exception:
        logger.exception("Cascade delete of clinic %s rolled back", clinic_id)
        raise HTTPException(status_code=500, detail="Internal server error.")

    total = sum(counts.values())
    logger.info("Clinic %s (%s) deleted, %s rows removed", clinic_id, clinic_name, total)
    return {
        "success": True,
        "message": f"Clinic '{clinic_name}' and all related data removed.",
        "data": {
            "clinic_id": clinic_id,
            "clinic_name": clinic_name,
            "deleted": counts,
            "total_deleted": total
        }
    }
