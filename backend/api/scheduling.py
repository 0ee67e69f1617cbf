import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from database.connection import get_db
from database.models import (
    User, Patient, Discipline, ScheduledSession, SessionStatus, DetectionSource, MissedBy, UserRole,
    PatientProgramAssignment
)
from api.auth import require_admin, require_clinic_user, require_staff
from api.assignments import get_patient_or_404
from services.session_linking import (
    SchedulingError,
    serialize_session,
    serialize_progress,
    clinic_sessions_query,
    get_clinic_session,
    get_clinic_progress,
    is_therapist_assigned,
    find_conflicts,
    find_candidates,
    orphan_sessions_query,
    create_retroactive_appointment,
    mark_missed_appointments,
)
from jobs.session_maintenance import run_session_maintenance
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, date, time, timedelta
import logging
import math

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/api/admin/scheduling", tags=["Scheduling (Admin)"])
router = APIRouter(prefix="/api/scheduling", tags=["Scheduling"])

# ==================== CONFIG ====================

TIME_PATTERN = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"
STATUS_PATTERN = r"^(scheduled|completed|missed|cancelled)$"
PAST_TOLERANCE = timedelta(minutes=5)
MAX_BATCH_SIZE = 50
PENDING_ORPHAN_DAYS = 7
PENDING_MISSED_LIMIT = 100

# ==================== PYDANTIC MODELS ====================

class AppointmentCreateRequest(BaseModel):
    patient_id: int
    therapist_id: int
    discipline_id: Optional[int] = None
    scheduled_date: date
    scheduled_time: str = Field(..., pattern=TIME_PATTERN, description="HH:MM")
    duration_minutes: int = Field(60, ge=15, le=240)
    notes: Optional[str] = Field(None, max_length=500)

class AppointmentUpdateRequest(BaseModel):
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    duration_minutes: Optional[int] = Field(None, ge=15, le=240)
    status: Optional[str] = Field(None, pattern=STATUS_PATTERN)
    notes: Optional[str] = Field(None, max_length=500)

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)

class MarkMissedRequest(BaseModel):
    hours_after: float = Field(2, ge=0.5, le=24)

class JustifyAbsenceRequest(BaseModel):
    missed_reason: str = Field(..., min_length=5, max_length=500)
    missed_by: MissedBy

class BatchRetroactiveRequest(BaseModel):
    session_ids: List[int]

class CompleteSessionRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)

# ==================== HELPER FUNCTIONS ====================

def parse_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))

def get_session_or_404(db: Session, clinic_id: int, session_id: int) -> ScheduledSession:
    session = get_clinic_session(db, clinic_id, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Appointment not found.")
    return session

def ensure_no_conflicts(db: Session, patient_id, therapist_id, scheduled_date, scheduled_time, duration, exclude_id=None):
    conflicts = find_conflicts(db, patient_id, therapist_id, scheduled_date, scheduled_time, duration, exclude_id)
    if conflicts:
        raise HTTPException(
            status_code=409,
            detail={
                "msg": "Scheduling conflict: therapist or patient already has an appointment at this time.",
                "conflicts": [serialize_session(c) for c in conflicts]
            }
        )

def scope_to_parent(query, current_user: User, patient_column):
    # Parents only see records of their associated patient
    if current_user.role == UserRole.PARENT.value:
        query = query.filter(patient_column == current_user.associated_patient_id)
    return query

def rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0

def summarize(sessions: List[ScheduledSession]) -> dict:
    counts = {s.value: 0 for s in SessionStatus}
    for session in sessions:
        counts[session.status] = counts.get(session.status, 0) + 1
    total = len(sessions)
    return {
        "total": total,
        "scheduled": counts["scheduled"],
        "completed": counts["completed"],
        "missed": counts["missed"],
        "cancelled": counts["cancelled"],
        "retroactive": sum(1 for s in sessions if s.is_retroactive),
        "completion_rate": rate(counts["completed"], total),
        "attendance_rate": rate(counts["completed"], counts["completed"] + counts["missed"]),
    }

# ==================== ADMIN ENDPOINTS ====================

@admin_router.post("/appointments", response_model=dict, status_code=201)
async def create_appointment(
    request: AppointmentCreateRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Schedule a new therapy appointment"""
    scheduled_time = parse_time(request.scheduled_time)
    if datetime.combine(request.scheduled_date, scheduled_time) < datetime.now() - PAST_TOLERANCE:
        raise HTTPException(status_code=400, detail="Cannot schedule appointments in the past.")

    patient = db.query(Patient).filter(
        Patient.id == request.patient_id,
        Patient.clinic_id == current_user.clinic_id
    ).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found in this clinic.")

    therapist = db.query(User).filter(
        User.id == request.therapist_id,
        User.clinic_id == current_user.clinic_id,
        User.role == UserRole.THERAPIST.value
    ).first()
    if not therapist:
        raise HTTPException(status_code=404, detail="Therapist not found in this clinic.")

    if therapist.id != current_user.id and not is_therapist_assigned(db, patient.id, therapist.id):
        raise HTTPException(status_code=400, detail="Therapist is not assigned to this patient.")

    if request.discipline_id is not None:
        if not db.query(Discipline).filter(Discipline.id == request.discipline_id).first():
            raise HTTPException(status_code=404, detail="Discipline not found.")

    ensure_no_conflicts(
        db, patient.id, therapist.id, request.scheduled_date, scheduled_time, request.duration_minutes
    )

    try:
        session = ScheduledSession(
            patient_id=patient.id,
            therapist_id=therapist.id,
            discipline_id=request.discipline_id,
            scheduled_date=request.scheduled_date,
            scheduled_time=scheduled_time,
            duration_minutes=request.duration_minutes,
            notes=request.notes,
            created_by=current_user.id,
            detection_source=DetectionSource.MANUAL.value,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
    except Exception:
        db.rollback()
        logger.exception("Failed to create appointment")
        raise HTTPException(status_code=500, detail="Internal server error.")

    logger.info("Appointment %s created by user %s", session.id, current_user.id)
    return {
        "success": True,
        "message": "Appointment created successfully.",
        "data": serialize_session(session)
    }

@admin_router.get("/appointments", response_model=dict)
async def list_appointments(
    therapist_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[str] = Query(None, pattern=STATUS_PATTERN),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    query = clinic_sessions_query(db, current_user.clinic_id)
    if therapist_id:
        query = query.filter(ScheduledSession.therapist_id == therapist_id)
    if patient_id:
        query = query.filter(ScheduledSession.patient_id == patient_id)
    if status:
        query = query.filter(ScheduledSession.status == status)
    if start_date:
        query = query.filter(ScheduledSession.scheduled_date >= start_date)
    if end_date:
        query = query.filter(ScheduledSession.scheduled_date <= end_date)

    total = query.count()
    sessions = query.order_by(
        ScheduledSession.scheduled_date.desc(),
        ScheduledSession.scheduled_time.desc()
    ).offset((page - 1) * limit).limit(limit).all()

    return {
        "success": True,
        "data": [serialize_session(s) for s in sessions],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0
        }
    }

@admin_router.get("/appointments/{appointment_id}", response_model=dict)
async def get_appointment(
    appointment_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, current_user.clinic_id, appointment_id)
    data = serialize_session(session)
    if session.progress_session:
        data["progress"] = serialize_progress(session.progress_session)
    return {"success": True, "data": data}

@admin_router.put("/appointments/{appointment_id}", response_model=dict)
async def update_appointment(
    appointment_id: int,
    request: AppointmentUpdateRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, current_user.clinic_id, appointment_id)
    changes = request.model_dump(exclude_unset=True)

    new_date = changes.get("scheduled_date") or session.scheduled_date
    new_time = parse_time(changes["scheduled_time"]) if changes.get("scheduled_time") else session.scheduled_time
    new_duration = changes.get("duration_minutes") or session.duration_minutes
    new_status = changes.get("status") or session.status

    slot_changed = {"scheduled_date", "scheduled_time", "duration_minutes"} & changes.keys()
    if slot_changed and new_status != SessionStatus.CANCELLED.value:
        ensure_no_conflicts(
            db, session.patient_id, session.therapist_id, new_date, new_time, new_duration,
            exclude_id=session.id
        )

    try:
        session.scheduled_date = new_date
        session.scheduled_time = new_time
        session.duration_minutes = new_duration
        session.status = new_status
        if "notes" in changes:
            session.notes = changes["notes"]
        if new_status == SessionStatus.CANCELLED.value and session.cancelled_at is None:
            session.cancelled_at = datetime.now()
            session.cancelled_by = current_user.id
        db.commit()
        db.refresh(session)
    except Exception:
        db.rollback()
        logger.exception("Failed to update appointment %s", appointment_id)
        raise HTTPException(status_code=500, detail="Internal server error.")

    return {
        "success": True,
        "message": "Appointment updated successfully.",
        "data": serialize_session(session)
    }

@admin_router.delete("/appointments/{appointment_id}", response_model=dict)
async def cancel_appointment(
    appointment_id: int,
    request: Optional[CancelRequest] = None,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Soft cancel: keeps the row with cancellation metadata"""
    session = get_session_or_404(db, current_user.clinic_id, appointment_id)

    if session.status == SessionStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Appointment is already cancelled.")
    if session.status == SessionStatus.COMPLETED.value:
        raise HTTPException(status_code=400, detail="Completed appointments cannot be cancelled.")

    session.status = SessionStatus.CANCELLED.value
    session.cancelled_at = datetime.now()
    session.cancelled_by = current_user.id
    session.cancellation_reason = request.reason if request else None
    db.commit()
    db.refresh(session)

    return {
        "success": True,
        "message": "Appointment cancelled successfully.",
        "data": serialize_session(session)
    }

@admin_router.delete("/appointments/{appointment_id}/permanent", response_model=dict)
async def delete_appointment(
    appointment_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, current_user.clinic_id, appointment_id)
    db.delete(session)
    db.commit()
    logger.info("Appointment %s permanently removed by user %s", appointment_id, current_user.id)
    return {"success": True, "message": "Appointment permanently removed."}

@admin_router.post("/mark-missed", response_model=dict)
async def mark_missed(
    request: Optional[MarkMissedRequest] = None,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    hours_after = request.hours_after if request else 2
    try:
        missed = mark_missed_appointments(db, clinic_id=current_user.clinic_id, hours_after=hours_after)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to mark missed appointments")
        raise HTTPException(status_code=500, detail="Internal server error.")

    return {
        "success": True,
        "message": f"{len(missed)} appointment(s) marked as missed.",
        "data": {
            "count": len(missed),
            "appointments": [serialize_session(s) for s in missed]
        }
    }

@admin_router.get("/statistics", response_model=dict)
async def get_statistics(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Completion and attendance rates for the clinic and per therapist"""
    query = clinic_sessions_query(db, current_user.clinic_id)
    if start_date:
        query = query.filter(ScheduledSession.scheduled_date >= start_date)
    if end_date:
        query = query.filter(ScheduledSession.scheduled_date <= end_date)
    sessions = query.all()

    by_therapist = {}
    for session in sessions:
        by_therapist.setdefault(session.therapist_id, []).append(session)

    therapists = []
    for therapist_id, items in by_therapist.items():
        stats = summarize(items)
        stats["therapist_id"] = therapist_id
        stats["therapist_name"] = items[0].therapist.full_name
        therapists.append(stats)
    therapists.sort(key=lambda t: t["therapist_name"])

    return {
        "success": True,
        "data": {
            "period": {
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None
            },
            "overall": summarize(sessions),
            "by_therapist": therapists
        }
    }

# ==================== CLINIC ENDPOINTS ====================

@router.post("/justify-absence/{appointment_id}", response_model=dict)
async def justify_absence(
    appointment_id: int,
    request: JustifyAbsenceRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, current_user.clinic_id, appointment_id)
    if session.status != SessionStatus.MISSED.value:
        raise HTTPException(status_code=400, detail="Only missed appointments can be justified.")

    session.missed_reason = request.missed_reason.strip()
    session.missed_by = request.missed_by.value
    session.justified_by = current_user.id
    session.justified_at = datetime.now()
    db.commit()
    db.refresh(session)

    return {
        "success": True,
        "message": "Absence justified successfully.",
        "data": serialize_session(session)
    }

@router.get("/pending-actions", response_model=dict)
async def get_pending_actions(
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    """Orphan records, unjustified absences and today's detections in one call"""
    orphans = scope_to_parent(
        orphan_sessions_query(db, current_user.clinic_id, lookback_days=PENDING_ORPHAN_DAYS),
        current_user, PatientProgramAssignment.patient_id
    ).all()

    missed_query = scope_to_parent(
        clinic_sessions_query(db, current_user.clinic_id).filter(
            ScheduledSession.status == SessionStatus.MISSED.value
        ),
        current_user, ScheduledSession.patient_id
    )
    unjustified = missed_query.filter(
        ScheduledSession.missed_reason.is_(None)
    ).order_by(ScheduledSession.scheduled_date.desc()).limit(PENDING_MISSED_LIMIT).all()

    today_start = datetime.combine(date.today(), time.min)
    detected_today = missed_query.filter(ScheduledSession.updated_at >= today_start).count()

    return {
        "success": True,
        "data": {
            "orphan_sessions": [serialize_progress(p) for p in orphans],
            "missed_without_justification": [serialize_session(s) for s in unjustified],
            "detected_today": detected_today,
            "total_pending": len(orphans) + len(unjustified)
        }
    }

@router.post("/retroactive/batch", response_model=dict)
async def create_batch_retroactive(
    request: BatchRetroactiveRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """
    Create retroactive appointments for several orphan progress records.
    Each id is handled on its own: a failing item is reported and the loop keeps going.
    """
    session_ids = request.session_ids
    if not session_ids:
        raise HTTPException(status_code=400, detail="session_ids must be a non-empty list.")
    if len(session_ids) > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"Maximum of {MAX_BATCH_SIZE} sessions per batch.")

    created = []
    errors = []
    for session_id in session_ids:
        progress = get_clinic_progress(db, current_user.clinic_id, session_id)
        if not progress:
            errors.append(f"Session {session_id}: not found or does not belong to this clinic")
            continue

        linked = db.query(ScheduledSession).filter(
            ScheduledSession.progress_session_id == progress.id
        ).first()
        if linked:
            errors.append(f"Session {session_id}: already linked to appointment {linked.id}")
            continue

        try:
            appointment = create_retroactive_appointment(db, progress, created_by=current_user.id)
            db.commit()
            created.append(serialize_session(appointment))
        except Exception:
            db.rollback()
            logger.exception("Retroactive creation failed for progress %s", session_id)
            errors.append(f"Session {session_id}: could not create the retroactive appointment")

    data = {
        "total": len(session_ids),
        "created": len(created),
        "failed": len(errors),
        "appointments": created,
        "errors": errors
    }
    return JSONResponse(
        status_code=200 if created else 400,
        content={
            "success": bool(created),
            "message": f"{len(created)} of {len(session_ids)} retroactive appointments created.",
            "data": data
        }
    )

@router.post("/run-maintenance", response_model=dict)
async def run_maintenance(
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Only administrators can run maintenance.")

    result = run_session_maintenance(
        db,
        clinic_id=current_user.clinic_id,
        lookback_hours=24,
        missed_after_hours=2,
        notify_users=False
    )
    return {
        "success": result["success"],
        "message": "Maintenance finished.",
        "data": result
    }

@router.get("/patient/{patient_id}/today", response_model=dict)
async def get_patient_sessions_today(
    patient_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, current_user, patient_id)
    sessions = clinic_sessions_query(db, current_user.clinic_id).filter(
        ScheduledSession.patient_id == patient.id,
        ScheduledSession.scheduled_date == date.today()
    ).order_by(ScheduledSession.scheduled_time).all()

    return {"success": True, "data": [serialize_session(s) for s in sessions]}

@router.get("/orphans", response_model=dict)
async def list_orphan_sessions(
    days: int = Query(2, ge=1, le=90),
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    orphans = scope_to_parent(
        orphan_sessions_query(db, current_user.clinic_id, lookback_days=days),
        current_user, PatientProgramAssignment.patient_id
    ).all()
    return {
        "success": True,
        "data": [serialize_progress(p) for p in orphans],
        "count": len(orphans)
    }

@router.get("/candidates/{progress_id}", response_model=dict)
async def list_candidates(
    progress_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    progress = get_clinic_progress(db, current_user.clinic_id, progress_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Session record not found.")
    if current_user.role == UserRole.PARENT.value and current_user.associated_patient_id != progress.assignment.patient_id:
        raise HTTPException(status_code=403, detail="Access denied to this patient.")

    return {
        "success": True,
        "data": [serialize_session(s) for s in find_candidates(db, progress)]
    }

@router.post("/sessions/{appointment_id}/complete", response_model=dict)
async def complete_session(
    appointment_id: int,
    request: CompleteSessionRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Close an appointment with session notes (notes only if it is already completed)"""
    session = get_session_or_404(db, current_user.clinic_id, appointment_id)

    try:
        if session.status == SessionStatus.CANCELLED.value:
            raise SchedulingError("Cancelled appointments cannot be completed.")
        if session.status != SessionStatus.COMPLETED.value:
            if session.scheduled_at > datetime.now():
                raise SchedulingError("Future appointments cannot be completed yet.")
            session.status = SessionStatus.COMPLETED.value
        if request.notes is not None:
            session.notes = request.notes
        session.updated_at = datetime.now()
        db.commit()
        db.refresh(session)
    except SchedulingError as e:
        db.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {
        "success": True,
        "message": "Session completed successfully.",
        "data": serialize_session(session)
    }
