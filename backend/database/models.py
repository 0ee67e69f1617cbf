"""
Therapy Clinic Platform - Database Models
Multi-tenant schema: clinics, staff, patients, program library,
assignments/progress, scheduled sessions and clinic billing
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Boolean, Numeric, Time, Date, Float, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
from .connection import Base
import enum


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


# ============================================
# ENUMS
# ============================================

class UserRole(str, enum.Enum):
    THERAPIST = "therapist"
    PARENT = "parent"
    SUPER_ADMIN = "super_admin"


class ClinicStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class AssignmentStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class DetectionSource(str, enum.Enum):
    MANUAL = "manual"
    AUTO_DETECTED = "auto_detected"
    ORPHAN_CONVERTED = "orphan_converted"


class MissedBy(str, enum.Enum):
    PATIENT = "patient"
    THERAPIST = "therapist"
    BOTH = "both"
    OTHER = "other"


class BillingStatus(str, enum.Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


# ============================================
# CLINIC (TENANT)
# ============================================

class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    max_patients = Column(Integer, nullable=False, default=50)  # contracted slots
    status = Column(String(20), default=ClinicStatus.ACTIVE.value, nullable=False)  # active | suspended | inactive

    suspended_at = Column(DateTime, nullable=True)
    suspension_reason = Column(Text, nullable=True)
    reactivated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    users = relationship("User", back_populates="clinic")
    patients = relationship("Patient", back_populates="clinic")
    billings = relationship("ClinicBilling", back_populates="clinic")


# ============================================
# USER MANAGEMENT
# ============================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True, index=True)  # NULL only for super admins
    username = Column(String(100), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=True)  # NULL until first password is set
    full_name = Column(String(150), nullable=False)

    role = Column(String(30), default=UserRole.THERAPIST.value)  # therapist | parent | super_admin
    is_admin = Column(Boolean, default=False)

    # Parents are linked to their child's record
    associated_patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)

    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    clinic = relationship("Clinic", back_populates="users")
    notifications = relationship("Notification", back_populates="user")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    type = Column(String(50))  # orphan_session | missed_session | ...
    title = Column(String(200))
    message = Column(Text)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    user = relationship("User", back_populates="notifications")


# ============================================
# PATIENTS
# ============================================

class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    date_of_birth = Column(Date, nullable=True)
    diagnosis = Column(Text, nullable=True)
    general_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    clinic = relationship("Clinic", back_populates="patients")
    program_assignments = relationship("PatientProgramAssignment", back_populates="patient")


class TherapistPatientAssignment(Base):
    """Which therapists attend which patients"""
    __tablename__ = "therapist_patient_assignments"
    __table_args__ = (UniqueConstraint("patient_id", "therapist_id", name="uq_therapist_patient"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.now)


# ============================================
# PROGRAM LIBRARY
# discipline -> area -> sub-area -> program -> steps
# ============================================

class Discipline(Base):
    __tablename__ = "disciplines"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)

    areas = relationship("ProgramArea", back_populates="discipline", order_by="ProgramArea.name")


class ProgramArea(Base):
    __tablename__ = "program_areas"

    id = Column(Integer, primary_key=True, index=True)
    discipline_id = Column(Integer, ForeignKey("disciplines.id"), nullable=False)
    name = Column(String(150), nullable=False)

    discipline = relationship("Discipline", back_populates="areas")
    sub_areas = relationship("ProgramSubArea", back_populates="area", order_by="ProgramSubArea.name")


class ProgramSubArea(Base):
    __tablename__ = "program_sub_areas"

    id = Column(Integer, primary_key=True, index=True)
    area_id = Column(Integer, ForeignKey("program_areas.id"), nullable=False)
    name = Column(String(150), nullable=False)

    area = relationship("ProgramArea", back_populates="sub_areas")
    programs = relationship("Program", back_populates="sub_area", order_by="Program.name")


class Program(Base):
    __tablename__ = "programs"

    id = Column(Integer, primary_key=True, index=True)
    sub_area_id = Column(Integer, ForeignKey("program_sub_areas.id"), nullable=False)
    name = Column(String(200), nullable=False)
    objective = Column(Text)
    skill = Column(String(200))
    materials = Column(JSONType)  # ["cards", "toy car"]
    default_trials = Column(Integer, default=10)
    created_at = Column(DateTime, default=datetime.now)

    sub_area = relationship("ProgramSubArea", back_populates="programs")
    steps = relationship("ProgramStep", back_populates="program", order_by="ProgramStep.step_number")

    @property
    def discipline_id(self):
        return self.sub_area.area.discipline_id if self.sub_area else None


class ProgramStep(Base):
    __tablename__ = "program_steps"

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(Integer, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    step_number = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text)

    program = relationship("Program", back_populates="steps")


# ============================================
# ASSIGNMENTS & PROGRESS
# ============================================

class PatientProgramAssignment(Base):
    __tablename__ = "patient_program_assignments"
    __table_args__ = (UniqueConstraint("patient_id", "program_id", name="uq_patient_program"),)

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False)
    assigned_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(String(20), default=AssignmentStatus.ACTIVE.value)  # active | paused | archived
    custom_trials = Column(Integer, nullable=True)  # NULL -> program default
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient = relationship("Patient", back_populates="program_assignments")
    program = relationship("Program")
    progress = relationship("PatientProgramProgress", back_populates="assignment",
                            order_by="PatientProgramProgress.session_date", cascade="all, delete-orphan")

    @property
    def effective_trials(self):
        if self.custom_trials is not None:
            return self.custom_trials
        return self.program.default_trials if self.program else None


class PatientProgramProgress(Base):
    """One recorded therapy session for an assignment"""
    __tablename__ = "patient_program_progress"

    id = Column(Integer, primary_key=True, index=True)
    assignment_id = Column(Integer, ForeignKey("patient_program_assignments.id", ondelete="CASCADE"), nullable=False, index=True)
    step_id = Column(Integer, ForeignKey("program_steps.id"), nullable=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    session_date = Column(Date, nullable=False, index=True)
    attempts = Column(Integer, default=0)
    successes = Column(Integer, default=0)
    score = Column(Float, nullable=True)
    details = Column(JSONType)  # per-trial prompt levels etc.
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    assignment = relationship("PatientProgramAssignment", back_populates="progress")
    therapist = relationship("User")


# ============================================
# SCHEDULING
# ============================================

class ScheduledSession(Base):
    __tablename__ = "scheduled_sessions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    discipline_id = Column(Integer, ForeignKey("disciplines.id"), nullable=True)

    scheduled_date = Column(Date, nullable=False, index=True)
    scheduled_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, default=60)
    status = Column(String(20), default=SessionStatus.SCHEDULED.value, index=True)  # scheduled | completed | missed | cancelled
    notes = Column(Text)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Link to the progress record that fulfilled this appointment
    progress_session_id = Column(Integer, ForeignKey("patient_program_progress.id"), nullable=True, index=True)
    detection_source = Column(String(30), default=DetectionSource.MANUAL.value)
    is_retroactive = Column(Boolean, default=False)

    # Absence tracking
    missed_reason = Column(Text)
    missed_by = Column(String(20))  # patient | therapist | both | other
    justified_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    justified_at = Column(DateTime)

    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime)
    cancellation_reason = Column(String(255))

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient = relationship("Patient")
    therapist = relationship("User", foreign_keys=[therapist_id])
    discipline = relationship("Discipline")
    progress_session = relationship("PatientProgramProgress")

    @property
    def scheduled_at(self) -> datetime:
        return datetime.combine(self.scheduled_date, self.scheduled_time)


# ============================================
# BILLING
# ============================================

class ClinicBilling(Base):
    __tablename__ = "clinic_billing"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(String(20), default=BillingStatus.PENDING.value)  # pending | overdue | paid
    plan_type = Column(String(30), default="per_patient")
    payment_date = Column(Date, nullable=True)
    payment_method = Column(String(50), nullable=True)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    clinic = relationship("Clinic", back_populates="billings")
