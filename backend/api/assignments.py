import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from database.connection import get_db
from database.models import (
    User, UserRole, Patient, Program, ProgramStep,
    PatientProgramAssignment, PatientProgramProgress, ScheduledSession, AssignmentStatus
)
from api.auth import require_clinic_user
from services.session_linking import (
    SchedulingError,
    serialize_progress,
    get_clinic_progress,
    resolve_progress_link,
)
from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import date, datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/assignments", tags=["Program Assignments"])

# ==================== PYDANTIC MODELS ====================

class AssignProgramRequest(BaseModel):
    patient_id: int
    program_id: int
    therapist_id: Optional[int] = Field(None, description="Responsible therapist; defaults to the caller")

class AssignmentStatusRequest(BaseModel):
    status: AssignmentStatus

class CustomTrialsRequest(BaseModel):
    custom_trials: Optional[int] = Field(None, ge=1, le=100, description="null restores the program default")

class ProgressRequest(BaseModel):
    assignment_id: int
    step_id: Optional[int] = None
    session_date: date
    attempts: int = Field(..., ge=0, le=1000)
    successes: int = Field(..., ge=0, le=1000)
    score: Optional[float] = Field(None, ge=0, le=100)
    details: Optional[Any] = None
    notes: Optional[str] = Field(None, max_length=2000)

class ProgressWithLinkRequest(ProgressRequest):
    patient_id: Optional[int] = None
    progress_id: Optional[int] = Field(None, description="Reuse an already saved record instead of creating one")
    create_retroactive: bool = False
    selected_appointment_id: Optional[int] = None

# ==================== HELPER FUNCTIONS ====================

def get_patient_or_404(db: Session, current_user: User, patient_id: int) -> Patient:
    patient = db.query(Patient).filter(
        Patient.id == patient_id,
        Patient.clinic_id == current_user.clinic_id
    ).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found.")

    # Parents only see their own child
    if current_user.role == UserRole.PARENT.value and current_user.associated_patient_id != patient.id:
        raise HTTPException(status_code=403, detail="Access denied to this patient.")
    return patient

def get_assignment_or_404(db: Session, current_user: User, assignment_id: int) -> PatientProgramAssignment:
    assignment = db.query(PatientProgramAssignment).join(
        Patient, PatientProgramAssignment.patient_id == Patient.id
    ).filter(
        PatientProgramAssignment.id == assignment_id,
        Patient.clinic_id == current_user.clinic_id
    ).first()
    if not assignment:
        raise HTTPException(status_code=404, detail="Program assignment not found.")

    if current_user.role == UserRole.PARENT.value and current_user.associated_patient_id != assignment.patient_id:
        raise HTTPException(status_code=403, detail="Access denied to this patient.")
    return assignment

def serialize_assignment(assignment: PatientProgramAssignment) -> dict:
    program = assignment.program
    discipline = program.sub_area.area.discipline if program and program.sub_area else None
    return {
        "assignment_id": assignment.id,
        "patient_id": assignment.patient_id,
        "program_id": assignment.program_id,
        "program_name": program.name if program else None,
        "objective": program.objective if program else None,
        "discipline_id": discipline.id if discipline else None,
        "discipline_name": discipline.name if discipline else None,
        "status": assignment.status,
        "custom_trials": assignment.custom_trials,
        "default_trials": program.default_trials if program else None,
        "trials": assignment.effective_trials,
        "assigned_by_id": assignment.assigned_by_id,
        "created_at": assignment.created_at.isoformat() if assignment.created_at else None,
    }

def assignment_details(assignment: PatientProgramAssignment, with_progress: bool = False) -> dict:
    data = serialize_assignment(assignment)
    data["steps"] = [
        {"id": s.id, "step_number": s.step_number, "name": s.name, "description": s.description}
        for s in assignment.program.steps
    ]
    if with_progress:
        data["progress"] = [serialize_progress(p) for p in assignment.progress]
    return data

def ensure_can_record(current_user: User):
    if current_user.role != UserRole.THERAPIST.value:
        raise HTTPException(status_code=403, detail="Only therapists can record sessions.")

def build_progress(db: Session, request: ProgressRequest, assignment: PatientProgramAssignment, therapist: User) -> PatientProgramProgress:
    if assignment.status != AssignmentStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail="Progress can only be recorded for active programs.")
    if request.successes > request.attempts:
        raise HTTPException(status_code=400, detail="Successes cannot exceed attempts.")
    if request.step_id is not None:
        step = db.query(ProgramStep).filter(
            ProgramStep.id == request.step_id,
            ProgramStep.program_id == assignment.program_id
        ).first()
        if not step:
            raise HTTPException(status_code=400, detail="Step does not belong to this program.")

    score = request.score
    if score is None and request.attempts:
        score = round(request.successes / request.attempts * 100, 2)

    return PatientProgramProgress(
        assignment=assignment,
        step_id=request.step_id,
        therapist=therapist,
        session_date=request.session_date,
        attempts=request.attempts,
        successes=request.successes,
        score=score,
        details=request.details,
        notes=request.notes,
    )

# ==================== API ENDPOINTS ====================

@router.post("/", response_model=dict, status_code=201)
async def assign_program(
    request: AssignProgramRequest,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, current_user, request.patient_id)
    program = db.query(Program).filter(Program.id == request.program_id).first()
    if not program:
        raise HTTPException(status_code=404, detail="Program not found.")

    existing = db.query(PatientProgramAssignment).filter(
        PatientProgramAssignment.patient_id == patient.id,
        PatientProgramAssignment.program_id == program.id
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail="This program is already assigned to the patient.")

    assigned_by_id = current_user.id
    if request.therapist_id is not None:
        therapist = db.query(User).filter(
            User.id == request.therapist_id,
            User.clinic_id == current_user.clinic_id,
            User.role == UserRole.THERAPIST.value
        ).first()
        if not therapist:
            raise HTTPException(status_code=404, detail="Therapist not found in this clinic.")
        assigned_by_id = therapist.id

    assignment = PatientProgramAssignment(
        patient_id=patient.id,
        program_id=program.id,
        assigned_by_id=assigned_by_id,
    )
    try:
        db.add(assignment)
        db.commit()
        db.refresh(assignment)
    except IntegrityError:
        # Concurrent duplicate hit the unique constraint
        db.rollback()
        raise HTTPException(status_code=409, detail="This program is already assigned to the patient.")

    logger.info("Program %s assigned to patient %s", program.id, patient.id)
    return {
        "success": True,
        "message": "Program assigned successfully.",
        "data": serialize_assignment(assignment)
    }

@router.delete("/{assignment_id}", response_model=dict)
async def remove_assignment(
    assignment_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    """Remove a program from a patient together with its recorded progress"""
    assignment = get_assignment_or_404(db, current_user, assignment_id)

    try:
        progress_ids = [p.id for p in assignment.progress]
        if progress_ids:
            db.query(ScheduledSession).filter(
                ScheduledSession.progress_session_id.in_(progress_ids)
            ).update({ScheduledSession.progress_session_id: None}, synchronize_session=False)
        db.delete(assignment)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to remove assignment %s", assignment_id)
        raise HTTPException(status_code=500, detail="Internal server error.")

    return {"success": True, "message": "Program removed from patient."}

@router.get("/patient/{patient_id}", response_model=dict)
async def get_patient_assignments(
    patient_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, current_user, patient_id)
    assignments = sorted(
        patient.program_assignments,
        key=lambda a: (a.status == AssignmentStatus.ARCHIVED.value, a.program.name)
    )
    return {"success": True, "data": [serialize_assignment(a) for a in assignments]}

@router.post("/progress", response_model=dict, status_code=201)
async def record_progress(
    request: ProgressRequest,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    ensure_can_record(current_user)
    assignment = get_assignment_or_404(db, current_user, request.assignment_id)
    progress = build_progress(db, request, assignment, current_user)

    db.add(progress)
    db.commit()
    db.refresh(progress)
    return {"success": True, "data": serialize_progress(progress)}

@router.post("/progress-with-link", response_model=dict)
async def record_progress_with_link(
    request: ProgressWithLinkRequest,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    """
    Record a session and tie it to the patient's appointment.

    The response carries a `result` tag telling the client what happened:
    linked, same_session, manually_selected, retroactive, ask_therapist or
    suggest_retroactive. For the last two the client resubmits with
    `progress_id` plus `selected_appointment_id` or `create_retroactive`.
    """
    ensure_can_record(current_user)
    assignment = get_assignment_or_404(db, current_user, request.assignment_id)
    if request.patient_id is not None and request.patient_id != assignment.patient_id:
        raise HTTPException(status_code=400, detail="Patient does not match the program assignment.")

    try:
        if request.progress_id is not None:
            progress = get_clinic_progress(db, current_user.clinic_id, request.progress_id)
            if not progress or progress.assignment_id != assignment.id:
                raise HTTPException(status_code=404, detail="Session record not found.")
            created = False
        else:
            progress = build_progress(db, request, assignment, current_user)
            progress.created_at = datetime.now()
            db.add(progress)
            db.flush()
            created = True

        outcome = resolve_progress_link(
            db,
            progress,
            current_user,
            selected_appointment_id=request.selected_appointment_id,
            create_retroactive=request.create_retroactive
        )
        db.commit()
        db.refresh(progress)
    except SchedulingError as e:
        db.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except HTTPException:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.exception("Failed to record progress with link")
        raise HTTPException(status_code=500, detail="Internal server error.")

    logger.info("Progress %s recorded, link result: %s", progress.id, outcome.result.value)
    return JSONResponse(
        status_code=201 if created else 200,
        content={
            "success": True,
            "progress": serialize_progress(progress),
            **outcome.model_dump(mode="json")
        }
    )

@router.get("/{assignment_id}", response_model=dict)
async def get_assignment_details(
    assignment_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    assignment = get_assignment_or_404(db, current_user, assignment_id)
    if assignment.status != AssignmentStatus.ACTIVE.value:
        raise HTTPException(
            status_code=404,
            detail={"msg": "This program is archived or paused.", "code": "PROGRAM_ARCHIVED"}
        )
    return {"success": True, "data": assignment_details(assignment)}

@router.get("/{assignment_id}/history", response_model=dict)
async def get_assignment_history(
    assignment_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    assignment = get_assignment_or_404(db, current_user, assignment_id)
    return {"success": True, "data": assignment_details(assignment, with_progress=True)}

@router.patch("/{assignment_id}/status", response_model=dict)
async def update_assignment_status(
    assignment_id: int,
    request: AssignmentStatusRequest,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    assignment = get_assignment_or_404(db, current_user, assignment_id)
    assignment.status = request.status.value
    db.commit()
    db.refresh(assignment)
    return {"success": True, "data": serialize_assignment(assignment)}

@router.put("/{assignment_id}/custom-trials", response_model=dict)
async def update_custom_trials(
    assignment_id: int,
    request: CustomTrialsRequest,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    assignment = get_assignment_or_404(db, current_user, assignment_id)
    assignment.custom_trials = request.custom_trials
    db.commit()
    db.refresh(assignment)

    message = "Custom trials restored to program default." if request.custom_trials is None else "Custom trials updated."
    return {"success": True, "message": message, "data": serialize_assignment(assignment)}

@router.get("/{assignment_id}/progress", response_model=dict)
async def get_assignment_progress(
    assignment_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    assignment = get_assignment_or_404(db, current_user, assignment_id)
    return {"success": True, "data": [serialize_progress(p) for p in assignment.progress]}
