"""
Session linking: ties recorded therapy progress to scheduled appointments.

Used by the scheduling and assignments routers and by the maintenance job.
Functions here only add/flush; the caller owns the transaction and commits.
"""

import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import enum
import logging
from datetime import datetime, date, time, timedelta
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, or_, exists
from sqlalchemy.orm import Session

from database.models import (
    Patient,
    PatientProgramAssignment,
    PatientProgramProgress,
    ScheduledSession,
    TherapistPatientAssignment,
    SessionStatus,
    DetectionSource,
    User,
)

logger = logging.getLogger(__name__)

# ==================== CONFIG ====================

DETECTION_WINDOW_BEFORE = timedelta(hours=1)   # progress saved up to 1h before the appointment
DETECTION_WINDOW_AFTER = timedelta(hours=3)    # ...or up to 3h after it
SAME_SESSION_WINDOW = timedelta(hours=1)
DELAYED_REGISTRATION_HOURS = 4
MAX_CANDIDATES = 5
DEFAULT_ORPHAN_LOOKBACK_DAYS = 2
RETROACTIVE_DEFAULT_TIME = time(10, 0)
RETROACTIVE_DEFAULT_DURATION = 60


class SchedulingError(Exception):
    """Business rule violation; carries the HTTP status the router should answer with"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LinkOutcome(str, enum.Enum):
    LINKED = "linked"
    SAME_SESSION = "same_session"
    MANUALLY_SELECTED = "manually_selected"
    RETROACTIVE = "retroactive"
    ASK_THERAPIST = "ask_therapist"
    SUGGEST_RETROACTIVE = "suggest_retroactive"


class LinkResult(BaseModel):
    result: LinkOutcome
    message: str
    appointment: Optional[dict] = None
    available_appointments: List[dict] = []
    delayed_registration: bool = False
    hours_since_appointment: Optional[float] = None


# ==================== SERIALIZERS ====================

def format_time(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value else None


def serialize_session(session: ScheduledSession) -> dict:
    return {
        "id": session.id,
        "patient_id": session.patient_id,
        "patient_name": session.patient.name if session.patient else None,
        "therapist_id": session.therapist_id,
        "therapist_name": session.therapist.full_name if session.therapist else None,
        "discipline_id": session.discipline_id,
        "discipline_name": session.discipline.name if session.discipline else None,
        "scheduled_date": session.scheduled_date.isoformat(),
        "scheduled_time": format_time(session.scheduled_time),
        "duration_minutes": session.duration_minutes,
        "status": session.status,
        "notes": session.notes,
        "progress_session_id": session.progress_session_id,
        "detection_source": session.detection_source,
        "is_retroactive": bool(session.is_retroactive),
        "missed_reason": session.missed_reason,
        "missed_by": session.missed_by,
        "justified_at": session.justified_at.isoformat() if session.justified_at else None,
        "cancelled_at": session.cancelled_at.isoformat() if session.cancelled_at else None,
        "cancellation_reason": session.cancellation_reason,
        "created_at": session.created_at.isoformat() if session.created_at else None,
    }


def serialize_progress(progress: PatientProgramProgress) -> dict:
    assignment = progress.assignment
    return {
        "id": progress.id,
        "assignment_id": progress.assignment_id,
        "patient_id": assignment.patient_id if assignment else None,
        "patient_name": assignment.patient.name if assignment else None,
        "program_id": assignment.program_id if assignment else None,
        "program_name": assignment.program.name if assignment else None,
        "step_id": progress.step_id,
        "therapist_id": progress.therapist_id,
        "therapist_name": progress.therapist.full_name if progress.therapist else None,
        "session_date": progress.session_date.isoformat(),
        "attempts": progress.attempts,
        "successes": progress.successes,
        "score": progress.score,
        "details": progress.details,
        "notes": progress.notes,
        "created_at": progress.created_at.isoformat() if progress.created_at else None,
    }


# ==================== CLINIC-SCOPED QUERIES ====================

def clinic_sessions_query(db: Session, clinic_id: int):
    return db.query(ScheduledSession).join(
        Patient, ScheduledSession.patient_id == Patient.id
    ).filter(Patient.clinic_id == clinic_id)


def clinic_progress_query(db: Session, clinic_id: int):
    return db.query(PatientProgramProgress).join(
        PatientProgramAssignment, PatientProgramProgress.assignment_id == PatientProgramAssignment.id
    ).join(
        Patient, PatientProgramAssignment.patient_id == Patient.id
    ).filter(Patient.clinic_id == clinic_id)


def get_clinic_session(db: Session, clinic_id: int, session_id: int) -> Optional[ScheduledSession]:
    return clinic_sessions_query(db, clinic_id).filter(ScheduledSession.id == session_id).first()


def get_clinic_progress(db: Session, clinic_id: int, progress_id: int) -> Optional[PatientProgramProgress]:
    return clinic_progress_query(db, clinic_id).filter(PatientProgramProgress.id == progress_id).first()


# ==================== VALIDATION ====================

def is_therapist_assigned(db: Session, patient_id: int, therapist_id: int) -> bool:
    return db.query(TherapistPatientAssignment).filter(
        TherapistPatientAssignment.patient_id == patient_id,
        TherapistPatientAssignment.therapist_id == therapist_id
    ).first() is not None


def find_conflicts(
    db: Session,
    patient_id: int,
    therapist_id: int,
    scheduled_date: date,
    scheduled_time: time,
    duration_minutes: int,
    exclude_id: Optional[int] = None
) -> List[ScheduledSession]:
    """Non-cancelled sessions of the same therapist or patient overlapping the given slot"""
    query = db.query(ScheduledSession).filter(
        ScheduledSession.scheduled_date == scheduled_date,
        ScheduledSession.status != SessionStatus.CANCELLED.value,
        or_(
            ScheduledSession.therapist_id == therapist_id,
            ScheduledSession.patient_id == patient_id
        )
    )
    if exclude_id is not None:
        query = query.filter(ScheduledSession.id != exclude_id)

    start = datetime.combine(scheduled_date, scheduled_time)
    end = start + timedelta(minutes=duration_minutes)

    conflicts = []
    for other in query.all():
        other_start = other.scheduled_at
        other_end = other_start + timedelta(minutes=other.duration_minutes or 0)
        if start < other_end and other_start < end:
            conflicts.append(other)
    return conflicts


# ==================== MATCHING ====================

def progress_patient_id(progress: PatientProgramProgress) -> int:
    return progress.assignment.patient_id


def find_candidates(db: Session, progress: PatientProgramProgress) -> List[ScheduledSession]:
    """Open appointments that this progress record could fulfil, nearest first"""
    sessions = db.query(ScheduledSession).filter(
        ScheduledSession.patient_id == progress_patient_id(progress),
        ScheduledSession.therapist_id == progress.therapist_id,
        ScheduledSession.scheduled_date == progress.session_date,
        ScheduledSession.status == SessionStatus.SCHEDULED.value,
        ScheduledSession.progress_session_id.is_(None)
    ).all()

    reference = progress.created_at or datetime.now()
    sessions.sort(key=lambda s: abs((s.scheduled_at - reference).total_seconds()))
    return sessions[:MAX_CANDIDATES]


def find_same_session(db: Session, progress: PatientProgramProgress) -> Optional[ScheduledSession]:
    """
    A completed appointment already linked to this record, or to another
    record of the same sitting (created within an hour of this one).
    """
    completed = db.query(ScheduledSession).filter(
        ScheduledSession.patient_id == progress_patient_id(progress),
        ScheduledSession.therapist_id == progress.therapist_id,
        ScheduledSession.scheduled_date == progress.session_date,
        ScheduledSession.status == SessionStatus.COMPLETED.value,
        ScheduledSession.progress_session_id.isnot(None)
    ).all()

    reference = progress.created_at or datetime.now()
    for session in completed:
        if session.progress_session_id == progress.id:
            return session
        linked = session.progress_session
        if linked and linked.created_at and abs(linked.created_at - reference) <= SAME_SESSION_WINDOW:
            return session
    return None


def link_session(session: ScheduledSession, progress: PatientProgramProgress) -> ScheduledSession:
    session.status = SessionStatus.COMPLETED.value
    session.progress_session_id = progress.id
    session.updated_at = datetime.now()
    return session


def registration_delay(session: ScheduledSession, progress: PatientProgramProgress) -> float:
    recorded_at = progress.created_at or datetime.now()
    return round((recorded_at - session.scheduled_at).total_seconds() / 3600, 1)


def program_discipline_id(progress: PatientProgramProgress) -> Optional[int]:
    program = progress.assignment.program
    return program.discipline_id if program else None


def create_retroactive_appointment(
    db: Session,
    progress: PatientProgramProgress,
    created_by: Optional[int] = None,
    detection_source: DetectionSource = DetectionSource.ORPHAN_CONVERTED,
    scheduled_time: Optional[time] = None,
    notes: Optional[str] = None
) -> ScheduledSession:
    """Backfill a completed appointment for a progress record that had none"""
    session = ScheduledSession(
        patient_id=progress_patient_id(progress),
        therapist_id=progress.therapist_id,
        discipline_id=program_discipline_id(progress),
        scheduled_date=progress.session_date,
        scheduled_time=scheduled_time or RETROACTIVE_DEFAULT_TIME,
        duration_minutes=RETROACTIVE_DEFAULT_DURATION,
        status=SessionStatus.COMPLETED.value,
        notes=notes or "Retroactive appointment created from a recorded session",
        created_by=created_by,
        progress_session_id=progress.id,
        detection_source=detection_source.value,
        is_retroactive=True,
    )
    db.add(session)
    db.flush()
    return session


def resolve_progress_link(
    db: Session,
    progress: PatientProgramProgress,
    current_user: User,
    selected_appointment_id: Optional[int] = None,
    create_retroactive: bool = False
) -> LinkResult:
    """Decide which appointment (if any) a freshly recorded session belongs to"""
    if selected_appointment_id is not None:
        session = get_clinic_session(db, current_user.clinic_id, selected_appointment_id)
        if (
            not session
            or session.patient_id != progress_patient_id(progress)
            or session.status != SessionStatus.SCHEDULED.value
            or session.progress_session_id is not None
        ):
            raise SchedulingError("Selected appointment is not available for this session.", 400)
        link_session(session, progress)
        db.flush()
        return LinkResult(
            result=LinkOutcome.MANUALLY_SELECTED,
            message="Session linked to the selected appointment.",
            appointment=serialize_session(session),
        )

    same = find_same_session(db, progress)
    if same:
        return LinkResult(
            result=LinkOutcome.SAME_SESSION,
            message="Appointment already completed by another record of the same session.",
            appointment=serialize_session(same),
        )

    candidates = find_candidates(db, progress)
    chosen = None
    if len(candidates) == 1:
        chosen = candidates[0]
    elif candidates:
        discipline_id = program_discipline_id(progress)
        matching = [
            s for s in candidates
            if s.discipline_id is None or s.discipline_id == discipline_id
        ]
        if not matching:
            return LinkResult(
                result=LinkOutcome.ASK_THERAPIST,
                message="More than one appointment found. Select which one this session belongs to.",
                available_appointments=[serialize_session(s) for s in candidates],
            )
        chosen = matching[0]

    if chosen:
        link_session(chosen, progress)
        db.flush()
        hours = registration_delay(chosen, progress)
        return LinkResult(
            result=LinkOutcome.LINKED,
            message="Session linked to the scheduled appointment.",
            appointment=serialize_session(chosen),
            delayed_registration=hours > DELAYED_REGISTRATION_HOURS,
            hours_since_appointment=hours,
        )

    if create_retroactive:
        session = create_retroactive_appointment(db, progress, created_by=current_user.id)
        return LinkResult(
            result=LinkOutcome.RETROACTIVE,
            message="No appointment found. A retroactive appointment was created.",
            appointment=serialize_session(session),
        )

    return LinkResult(
        result=LinkOutcome.SUGGEST_RETROACTIVE,
        message="No appointment found for this session. You can create a retroactive one.",
    )


# ==================== ORPHANS ====================

def orphan_sessions_query(
    db: Session,
    clinic_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    lookback_days: int = DEFAULT_ORPHAN_LOOKBACK_DAYS
):
    """Progress records with no completed or linked appointment on the same day"""
    end_date = end_date or date.today()
    start_date = start_date or (end_date - timedelta(days=lookback_days))

    has_appointment = exists().where(and_(
        ScheduledSession.patient_id == PatientProgramAssignment.patient_id,
        ScheduledSession.therapist_id == PatientProgramProgress.therapist_id,
        ScheduledSession.scheduled_date == PatientProgramProgress.session_date,
        or_(
            ScheduledSession.status == SessionStatus.COMPLETED.value,
            ScheduledSession.progress_session_id == PatientProgramProgress.id
        )
    ))

    return clinic_progress_query(db, clinic_id).filter(
        PatientProgramProgress.session_date >= start_date,
        PatientProgramProgress.session_date <= end_date,
        ~has_appointment
    ).order_by(PatientProgramProgress.session_date.desc(), PatientProgramProgress.id.desc())


def find_orphan_sessions(db: Session, clinic_id: int, **kwargs) -> List[PatientProgramProgress]:
    return orphan_sessions_query(db, clinic_id, **kwargs).all()


# ==================== MAINTENANCE PRIMITIVES ====================

def mark_missed_appointments(
    db: Session,
    clinic_id: Optional[int] = None,
    hours_after: float = 2,
    now: Optional[datetime] = None
) -> List[ScheduledSession]:
    """Scheduled appointments whose start is more than `hours_after` in the past become missed"""
    now = now or datetime.now()
    cutoff = now - timedelta(hours=hours_after)

    if clinic_id is not None:
        query = clinic_sessions_query(db, clinic_id)
    else:
        query = db.query(ScheduledSession)

    pending = query.filter(
        ScheduledSession.status == SessionStatus.SCHEDULED.value,
        ScheduledSession.scheduled_date <= cutoff.date()
    ).all()

    missed = []
    for session in pending:
        if session.scheduled_at < cutoff:
            session.status = SessionStatus.MISSED.value
            session.updated_at = now
            missed.append(session)

    db.flush()
    return missed


def detect_completed_sessions(
    db: Session,
    clinic_id: int,
    start_date: date,
    end_date: date
) -> List[dict]:
    """Close open appointments that already have a matching progress record"""
    pending = clinic_sessions_query(db, clinic_id).filter(
        ScheduledSession.status == SessionStatus.SCHEDULED.value,
        ScheduledSession.scheduled_date >= start_date,
        ScheduledSession.scheduled_date <= end_date,
        ScheduledSession.progress_session_id.is_(None)
    ).order_by(ScheduledSession.scheduled_date, ScheduledSession.scheduled_time).all()

    already_linked = exists().where(ScheduledSession.progress_session_id == PatientProgramProgress.id)

    detected = []
    for session in pending:
        start = session.scheduled_at
        progress = db.query(PatientProgramProgress).join(
            PatientProgramAssignment, PatientProgramProgress.assignment_id == PatientProgramAssignment.id
        ).filter(
            PatientProgramAssignment.patient_id == session.patient_id,
            PatientProgramProgress.therapist_id == session.therapist_id,
            PatientProgramProgress.session_date == session.scheduled_date,
            PatientProgramProgress.created_at >= start - DETECTION_WINDOW_BEFORE,
            PatientProgramProgress.created_at <= start + DETECTION_WINDOW_AFTER,
            ~already_linked
        ).order_by(PatientProgramProgress.created_at.desc()).first()

        if progress:
            link_session(session, progress)
            db.flush()
            detected.append({
                "appointment_id": session.id,
                "session_id": progress.id,
                "patient_name": session.patient.name,
                "therapist_name": session.therapist.full_name,
                "scheduled_date": session.scheduled_date.isoformat(),
            })
            logger.info("Detected session: appointment %s -> progress %s", session.id, progress.id)

    return detected
