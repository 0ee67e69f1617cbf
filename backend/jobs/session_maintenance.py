"""Session maintenance routine: detect realized sessions, mark missed appointments, find orphans."""

import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import argparse
import logging
import math
import os
from datetime import datetime, date, timedelta
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from database.models import Clinic, ClinicStatus, Notification, DetectionSource
from services.session_linking import (
    detect_completed_sessions,
    mark_missed_appointments,
    find_orphan_sessions,
    create_retroactive_appointment,
)

logger = logging.getLogger(__name__)


def notify_orphans(db: Session, orphans) -> int:
    created = 0
    for progress in orphans:
        db.add(Notification(
            user_id=progress.therapist_id,
            patient_id=progress.assignment.patient_id,
            type="orphan_session",
            title="Session without appointment",
            message=(
                f"The session recorded on {progress.session_date.isoformat()} for "
                f"{progress.assignment.patient.name} has no matching appointment."
            ),
        ))
        created += 1
    return created


def run_clinic_maintenance(
    db: Session,
    clinic_id: int,
    lookback_hours: float,
    missed_after_hours: float,
    auto_create_retroactive: bool,
    notify_users: bool
) -> dict:
    today = date.today()
    start_date = (datetime.now() - timedelta(hours=lookback_hours)).date()

    detected = detect_completed_sessions(db, clinic_id, start_date, today)
    missed = mark_missed_appointments(db, clinic_id=clinic_id, hours_after=missed_after_hours)
    orphans = find_orphan_sessions(db, clinic_id, lookback_days=math.ceil(lookback_hours / 24))

    retroactive = []
    if auto_create_retroactive:
        for progress in orphans:
            appointment = create_retroactive_appointment(
                db, progress,
                detection_source=DetectionSource.AUTO_DETECTED,
                notes="Created automatically by session maintenance"
            )
            retroactive.append(appointment.id)

    notifications = notify_orphans(db, orphans) if notify_users and not auto_create_retroactive else 0

    return {
        "clinic_id": clinic_id,
        "detected_sessions": detected,
        "missed_appointments": [s.id for s in missed],
        "orphan_sessions": [p.id for p in orphans],
        "retroactive_created": retroactive,
        "notifications_created": notifications,
    }


def run_session_maintenance(
    db: Session,
    clinic_id: Optional[int] = None,
    lookback_hours: float = 24,
    missed_after_hours: float = 2,
    auto_create_retroactive: bool = False,
    notify_users: bool = False
) -> dict:
    """
    Run the full routine for one clinic or for every active clinic.

    Each clinic is committed on its own; a failing clinic is rolled back,
    logged and reported while the loop moves on to the next one.
    """
    started_at = datetime.now()
    logger.info("Session maintenance starting (lookback=%sh, missed_after=%sh)", lookback_hours, missed_after_hours)

    query = db.query(Clinic.id).filter(Clinic.status == ClinicStatus.ACTIVE.value)
    if clinic_id is not None:
        query = db.query(Clinic.id).filter(Clinic.id == clinic_id)
    clinic_ids = [row.id for row in query.order_by(Clinic.id).all()]

    clinics = []
    errors = []
    for current_id in clinic_ids:
        try:
            stats = run_clinic_maintenance(
                db, current_id, lookback_hours, missed_after_hours,
                auto_create_retroactive, notify_users
            )
            db.commit()
            clinics.append(stats)
        except Exception as e:
            db.rollback()
            logger.error("Maintenance failed for clinic %s: %s", current_id, e, exc_info=True)
            errors.append({"clinic_id": current_id, "error": str(e)})

    completed_at = datetime.now()
    totals = {
        "detected_sessions": sum(len(c["detected_sessions"]) for c in clinics),
        "missed_appointments": sum(len(c["missed_appointments"]) for c in clinics),
        "orphan_sessions": sum(len(c["orphan_sessions"]) for c in clinics),
        "retroactive_created": sum(len(c["retroactive_created"]) for c in clinics),
        "notifications_created": sum(c["notifications_created"] for c in clinics),
    }
    logger.info(
        "Session maintenance finished: %s detected, %s missed, %s orphans, %s clinic errors",
        totals["detected_sessions"], totals["missed_appointments"], totals["orphan_sessions"], len(errors)
    )

    return {
        "started_at": started_at.isoformat(),
        "completed_at": completed_at.isoformat(),
        "duration_ms": int((completed_at - started_at).total_seconds() * 1000),
        "success": not errors,
        "clinics_processed": len(clinics),
        "totals": totals,
        "clinics": clinics,
        "errors": errors,
    }


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the scheduling maintenance routine")
    parser.add_argument("--clinic-id", type=int, default=None, help="Only process this clinic")
    parser.add_argument("--lookback-hours", type=float, default=24, help="Detection window (default: 24)")
    parser.add_argument("--missed-after-hours", type=float, default=2, help="Hours before an open appointment is missed (default: 2)")
    parser.add_argument("--auto-retroactive", action="store_true", help="Create retroactive appointments for orphan sessions")
    parser.add_argument("--notify", action="store_true", help="Notify therapists about orphan sessions")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    args = parse_args(argv)

    from database.connection import SessionLocal

    db = SessionLocal()
    try:
        result = run_session_maintenance(
            db,
            clinic_id=args.clinic_id,
            lookback_hours=args.lookback_hours,
            missed_after_hours=args.missed_after_hours,
            auto_create_retroactive=args.auto_retroactive,
            notify_users=args.notify,
        )
    finally:
        db.close()

    print(f"Processed {result['clinics_processed']} clinic(s) in {result['duration_ms']}ms")
    for key, value in result["totals"].items():
        print(f"  {key}: {value}")
    return 0 if result["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
