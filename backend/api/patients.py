import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from database.connection import get_db
from database.models import User, UserRole, Patient, TherapistPatientAssignment
from api.auth import require_clinic_user, require_staff
from api.admin import serialize_patient
from services.session_linking import is_therapist_assigned
from pydantic import BaseModel, Field
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/patients", tags=["Patients"])

# ==================== PYDANTIC MODELS ====================

class PatientNotesRequest(BaseModel):
    general_notes: Optional[str] = Field(..., max_length=10000)

# ==================== HELPER FUNCTIONS ====================

def get_accessible_patient(db: Session, current_user: User, patient_id: int) -> Patient:
    """
    Admins reach every patient of the clinic, therapists only the ones
    assigned to them and parents only their own child.
    """
    patient = db.query(Patient).filter(
        Patient.id == patient_id,
        Patient.clinic_id == current_user.clinic_id
    ).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found.")

    if current_user.role == UserRole.PARENT.value:
        if current_user.associated_patient_id != patient.id:
            raise HTTPException(status_code=403, detail="Access denied to this patient.")
    elif not current_user.is_admin and not is_therapist_assigned(db, patient.id, current_user.id):
        raise HTTPException(status_code=403, detail="Access denied. Therapist is not assigned to this patient.")
    return patient

# ==================== API ENDPOINTS ====================

@router.get("/", response_model=dict)
async def list_my_patients(
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    query = db.query(Patient).filter(Patient.clinic_id == current_user.clinic_id)
    if current_user.role == UserRole.PARENT.value:
        query = query.filter(Patient.id == current_user.associated_patient_id)
    elif not current_user.is_admin:
        query = query.join(
            TherapistPatientAssignment, TherapistPatientAssignment.patient_id == Patient.id
        ).filter(TherapistPatientAssignment.therapist_id == current_user.id)

    patients = query.order_by(Patient.name).all()
    return {"success": True, "data": [serialize_patient(db, p) for p in patients]}

@router.get("/{patient_id}", response_model=dict)
async def get_patient(
    patient_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    patient = get_accessible_patient(db, current_user, patient_id)
    return {"success": True, "data": serialize_patient(db, patient)}

@router.patch("/{patient_id}/notes", response_model=dict)
async def update_patient_notes(
    patient_id: int,
    request: PatientNotesRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db)
):
    patient = get_accessible_patient(db, current_user, patient_id)
    patient.general_notes = request.general_notes
    db.commit()
    db.refresh(patient)

    logger.info("Notes of patient %s updated by user %s", patient.id, current_user.id)
    return {
        "success": True,
        "message": "Notes updated successfully.",
        "data": {
            "id": patient.id,
            "general_notes": patient.general_notes,
            "updated_at": patient.updated_at.isoformat() if patient.updated_at else None
        }
    }
