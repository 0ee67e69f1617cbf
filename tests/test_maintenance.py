from datetime import date, datetime, time, timedelta

from database.models import (
    Clinic, ClinicStatus, Notification, ScheduledSession, SessionStatus, DetectionSource
)
from services.session_linking import mark_missed_appointments
from jobs import session_maintenance
from jobs.session_maintenance import run_session_maintenance, parse_args


def test_mark_missed_only_past_cutoff(db, clinic, make_session):
    now = datetime.combine(date.today(), time(12, 0))
    old = make_session(date.today(), time(9, 0))
    recent = make_session(date.today(), time(11, 0))
    tomorrow = make_session(date.today() + timedelta(days=1), time(9, 0))

    missed = mark_missed_appointments(db, clinic_id=clinic.id, hours_after=2, now=now)
    db.commit()

    assert [s.id for s in missed] == [old.id]
    for session, expected in ((old, "missed"), (recent, "scheduled"), (tomorrow, "scheduled")):
        db.refresh(session)
        assert session.status == expected


def test_maintenance_detects_and_marks(db, clinic, make_session, make_progress, yesterday):
    realized = make_session(yesterday, time(10, 0))
    forgotten = make_session(yesterday, time(16, 0))
    progress = make_progress(yesterday, created_at=datetime.combine(yesterday, time(10, 45)))

    result = run_session_maintenance(db, lookback_hours=48)

    assert result["success"] is True
    assert result["clinics_processed"] == 1
    assert result["totals"]["detected_sessions"] == 1
    assert result["totals"]["missed_appointments"] == 1

    db.refresh(realized)
    db.refresh(forgotten)
    assert realized.status == SessionStatus.COMPLETED.value
    assert realized.progress_session_id == progress.id
    assert realized.detection_source == DetectionSource.MANUAL.value
    assert forgotten.status == SessionStatus.MISSED.value


def test_detection_window_excludes_distant_records(db, clinic, make_session, make_progress, yesterday):
    appointment = make_session(yesterday, time(8, 0))
    make_progress(yesterday, created_at=datetime.combine(yesterday, time(13, 0)))

    result = run_session_maintenance(db, clinic_id=clinic.id, lookback_hours=48)

    assert result["totals"]["detected_sessions"] == 0
    db.refresh(appointment)
    assert appointment.progress_session_id is None


def test_orphans_become_retroactive_when_requested(db, clinic, make_progress, yesterday):
    orphan = make_progress(yesterday)

    result = run_session_maintenance(db, lookback_hours=48, auto_create_retroactive=True)

    assert result["totals"]["orphan_sessions"] == 1
    assert result["totals"]["retroactive_created"] == 1
    session = db.query(ScheduledSession).filter(ScheduledSession.progress_session_id == orphan.id).one()
    assert session.detection_source == DetectionSource.AUTO_DETECTED.value
    assert session.is_retroactive is True


def test_orphans_notify_therapist(db, clinic, therapist, make_progress, yesterday):
    make_progress(yesterday)

    result = run_session_maintenance(db, lookback_hours=48, notify_users=True)

    assert result["totals"]["notifications_created"] == 1
    notification = db.query(Notification).one()
    assert notification.user_id == therapist.id
    assert notification.type == "orphan_session"


def test_suspended_clinics_are_skipped(db, clinic, make_session, yesterday):
    make_session(yesterday, time(9, 0))
    clinic.status = ClinicStatus.SUSPENDED.value
    db.commit()

    result = run_session_maintenance(db)

    assert result["clinics_processed"] == 0


def test_failing_clinic_is_reported(db, clinic, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(session_maintenance, "detect_completed_sessions", boom)

    result = run_session_maintenance(db)

    assert result["success"] is False
    assert result["clinics_processed"] == 0
    assert result["errors"] == [{"clinic_id": clinic.id, "error": "database went away"}]
    assert db.query(Clinic).count() == 1


def test_cli_arguments():
    args = parse_args(["--clinic-id", "3", "--lookback-hours", "12", "--auto-retroactive"])
    assert args.clinic_id == 3
    assert args.lookback_hours == 12
    assert args.auto_retroactive is True
    assert args.notify is False
