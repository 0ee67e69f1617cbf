# Database Package - Centralized imports
# Allows easy importing of models, connection utilities, and ORM objects

from .connection import (
    engine,
    Base,
    SessionLocal,
    get_db,
)

from .models import (
    # Enums
    UserRole,
    ClinicStatus,
    AssignmentStatus,
    SessionStatus,
    DetectionSource,
    MissedBy,
    BillingStatus,

    # Tenant & Users
    Clinic,
    User,
    Notification,

    # Patients
    Patient,
    TherapistPatientAssignment,

    # Program Library
    Discipline,
    ProgramArea,
    ProgramSubArea,
    Program,
    ProgramStep,

    # Assignments & Progress
    PatientProgramAssignment,
    PatientProgramProgress,

    # Scheduling
    ScheduledSession,

    # Billing
    ClinicBilling,
)

__all__ = [
    # Connection
    "engine",
    "Base",
    "SessionLocal",
    "get_db",

    # Enums
    "UserRole",
    "ClinicStatus",
    "AssignmentStatus",
    "SessionStatus",
    "DetectionSource",
    "MissedBy",
    "BillingStatus",

    # Tenant & Users
    "Clinic",
    "User",
    "Notification",

    # Patients
    "Patient",
    "TherapistPatientAssignment",

    # Program Library
    "Discipline",
    "ProgramArea",
    "ProgramSubArea",
    "Program",
    "ProgramStep",

    # Assignments & Progress
    "PatientProgramAssignment",
    "PatientProgramProgress",

    # Scheduling
    "ScheduledSession",

    # Billing
    "ClinicBilling",
]
