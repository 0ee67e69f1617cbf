import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session, joinedload
from database.connection import get_db
from database.models import (
    User, Discipline, ProgramArea, ProgramSubArea, Program,
    PatientProgramAssignment, PatientProgramProgress
)
from api.auth import require_clinic_user
from api.assignments import get_patient_or_404, get_assignment_or_404, serialize_assignment
from collections import OrderedDict

router = APIRouter(prefix="/api/programs", tags=["Programs"])

# ==================== HELPER FUNCTIONS ====================

def serialize_program(program: Program, with_steps: bool = False) -> dict:
    sub_area = program.sub_area
    area = sub_area.area if sub_area else None
    discipline = area.discipline if area else None
    data = {
        "id": program.id,
        "name": program.name,
        "objective": program.objective,
        "skill": program.skill,
        "materials": program.materials or [],
        "default_trials": program.default_trials,
        "sub_area": sub_area.name if sub_area else None,
        "area": area.name if area else None,
        "discipline_id": discipline.id if discipline else None,
        "discipline": discipline.name if discipline else None,
    }
    if with_steps:
        data["steps"] = [
            {
                "id": step.id,
                "step_number": step.step_number,
                "name": step.name,
                "description": step.description
            }
            for step in program.steps
        ]
    return data

def success_rate(successes: int, attempts: int) -> float:
    return round(successes / attempts * 100, 2) if attempts else 0.0

# ==================== API ENDPOINTS ====================

@router.get("/", response_model=dict)
async def get_all_programs(
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    """Program library as discipline -> area -> sub-area -> programs"""
    disciplines = db.query(Discipline).options(
        joinedload(Discipline.areas)
        .joinedload(ProgramArea.sub_areas)
        .joinedload(ProgramSubArea.programs)
    ).order_by(Discipline.name).all()

    tree = {}
    for discipline in disciplines:
        areas = {}
        for area in discipline.areas:
            areas[area.name] = {
                sub_area.name: [
                    {
                        "id": p.id,
                        "name": p.name,
                        "objective": p.objective,
                        "default_trials": p.default_trials
                    }
                    for p in sub_area.programs
                ]
                for sub_area in area.sub_areas
            }
        tree[discipline.name] = areas

    return {"success": True, "data": tree}

@router.get("/assignment/{assignment_id}", response_model=dict)
async def get_program_assignment(
    assignment_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    assignment = get_assignment_or_404(db, current_user, assignment_id)
    data = serialize_assignment(assignment)
    data["program"] = serialize_program(assignment.program, with_steps=True)
    return {"success": True, "data": data}

@router.get("/evolution/{patient_id}/{program_id}", response_model=dict)
async def get_evolution_for_patient(
    patient_id: int,
    program_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    get_patient_or_404(db, current_user, patient_id)

    records = db.query(PatientProgramProgress).join(
        PatientProgramAssignment, PatientProgramProgress.assignment_id == PatientProgramAssignment.id
    ).filter(
        PatientProgramAssignment.patient_id == patient_id,
        PatientProgramAssignment.program_id == program_id
    ).order_by(PatientProgramProgress.session_date, PatientProgramProgress.id).all()

    evolution = []
    for record in records:
        step = next((s for s in record.assignment.program.steps if s.id == record.step_id), None)
        evolution.append({
            "id": record.id,
            "session_date": record.session_date.isoformat(),
            "attempts": record.attempts,
            "successes": record.successes,
            "score": record.score,
            "details": record.details,
            "step_id": record.step_id,
            "step_number": step.step_number if step else None,
            "step_name": step.name if step else None,
        })

    return {"success": True, "data": evolution}

@router.get("/consolidated-evolution/{patient_id}", response_model=dict)
async def get_consolidated_evolution(
    patient_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    """Per program totals and a daily success-rate series for charts"""
    get_patient_or_404(db, current_user, patient_id)

    assignments = db.query(PatientProgramAssignment).filter(
        PatientProgramAssignment.patient_id == patient_id
    ).all()

    programs = []
    for assignment in assignments:
        records = assignment.progress
        attempts = sum(r.attempts or 0 for r in records)
        successes = sum(r.successes or 0 for r in records)

        daily = OrderedDict()
        for record in sorted(records, key=lambda r: r.session_date):
            day = daily.setdefault(record.session_date.isoformat(), [0, 0])
            day[0] += record.attempts or 0
            day[1] += record.successes or 0

        programs.append({
            "assignment_id": assignment.id,
            "program_id": assignment.program_id,
            "program_name": assignment.program.name,
            "status": assignment.status,
            "sessions": len(records),
            "total_attempts": attempts,
            "total_successes": successes,
            "success_rate": success_rate(successes, attempts),
            "last_session_date": max(r.session_date for r in records).isoformat() if records else None,
            "series": [
                {"date": day, "success_rate": success_rate(s, a)}
                for day, (a, s) in daily.items()
            ]
        })

    programs.sort(key=lambda p: p["program_name"])
    return {"success": True, "data": programs}

@router.get("/{program_id}", response_model=dict)
async def get_program_details(
    program_id: int,
    current_user: User = Depends(require_clinic_user),
    db: Session = Depends(get_db)
):
    program = db.query(Program).filter(Program.id == program_id).first()
    if not program:
        raise HTTPException(status_code=404, detail="Program not found.")
    return {"success": True, "data": serialize_program(program, with_steps=True)}
