from datetime import datetime, time, timedelta

import pytest

from database.models import Patient, ScheduledSession, SessionStatus, DetectionSource
from services.session_linking import (
    LinkOutcome,
    SchedulingError,
    find_candidates,
    find_conflicts,
    find_orphan_sessions,
    resolve_progress_link,
)


def test_single_candidate_is_linked(db, therapist, make_session, make_progress, yesterday):
    appointment = make_session(yesterday, time(10, 0))
    progress = make_progress(yesterday, created_at=datetime.combine(yesterday, time(10, 40)))

    result = resolve_progress_link(db, progress, therapist)
    db.commit()

    assert result.result == LinkOutcome.LINKED
    assert result.delayed_registration is False
    db.refresh(appointment)
    assert appointment.status == SessionStatus.COMPLETED.value
    assert appointment.progress_session_id == progress.id


def test_late_registration_is_flagged(db, therapist, make_session, make_progress, yesterday):
    make_session(yesterday, time(9, 0))
    progress = make_progress(yesterday, created_at=datetime.combine(yesterday, time(15, 0)))

    result = resolve_progress_link(db, progress, therapist)

    assert result.result == LinkOutcome.LINKED
    assert result.delayed_registration is True
    assert result.hours_since_appointment == 6.0


def test_ambiguous_candidates_ask_the_therapist(db, therapist, library, make_session, make_progress, yesterday):
    speech_id = library["speech"].id
    make_session(yesterday, time(9, 0), discipline_id=speech_id)
    make_session(yesterday, time(14, 0), discipline_id=speech_id)
    progress = make_progress(yesterday)

    result = resolve_progress_link(db, progress, therapist)

    assert result.result == LinkOutcome.ASK_THERAPIST
    assert len(result.available_appointments) == 2
    assert db.query(ScheduledSession).filter(
        ScheduledSession.status == SessionStatus.COMPLETED.value
    ).count() == 0


def test_discipline_breaks_the_tie(db, therapist, library, make_session, make_progress, yesterday):
    make_session(yesterday, time(10, 0), discipline_id=library["speech"].id)
    matching = make_session(yesterday, time(14, 0), discipline_id=library["psychology"].id)
    progress = make_progress(yesterday)

    result = resolve_progress_link(db, progress, therapist)

    assert result.result == LinkOutcome.LINKED
    assert result.appointment["id"] == matching.id


def test_candidates_nearest_first(db, make_session, make_progress, yesterday):
    far = make_session(yesterday, time(8, 0))
    near = make_session(yesterday, time(11, 0))
    progress = make_progress(yesterday, created_at=datetime.combine(yesterday, time(11, 20)))

    assert [s.id for s in find_candidates(db, progress)] == [near.id, far.id]


def test_no_candidate_suggests_retroactive(db, therapist, make_progress, yesterday):
    progress = make_progress(yesterday)

    result = resolve_progress_link(db, progress, therapist)

    assert result.result == LinkOutcome.SUGGEST_RETROACTIVE
    assert result.appointment is None


def test_retroactive_creation(db, therapist, program, make_progress, yesterday):
    progress = make_progress(yesterday)

    result = resolve_progress_link(db, progress, therapist, create_retroactive=True)
    db.commit()

    assert result.result == LinkOutcome.RETROACTIVE
    session = db.query(ScheduledSession).filter(ScheduledSession.progress_session_id == progress.id).one()
    assert session.is_retroactive is True
    assert session.status == SessionStatus.COMPLETED.value
    assert session.detection_source == DetectionSource.ORPHAN_CONVERTED.value
    assert session.scheduled_time == time(10, 0)
    assert session.discipline_id == program.discipline_id
    assert session.created_by == therapist.id


def test_second_record_of_same_sitting(db, therapist, make_session, make_progress, yesterday):
    appointment = make_session(yesterday, time(10, 0))
    first = make_progress(yesterday, created_at=datetime.combine(yesterday, time(10, 30)))
    resolve_progress_link(db, first, therapist)
    db.commit()

    second = make_progress(yesterday, created_at=datetime.combine(yesterday, time(10, 50)))
    result = resolve_progress_link(db, second, therapist)

    assert result.result == LinkOutcome.SAME_SESSION
    assert result.appointment["id"] == appointment.id
    db.refresh(appointment)
    assert appointment.progress_session_id == first.id


def test_manual_selection(db, therapist, make_session, make_progress, yesterday):
    make_session(yesterday, time(9, 0))
    chosen = make_session(yesterday, time(15, 0))
    progress = make_progress(yesterday)

    result = resolve_progress_link(db, progress, therapist, selected_appointment_id=chosen.id)

    assert result.result == LinkOutcome.MANUALLY_SELECTED
    assert result.appointment["id"] == chosen.id
    assert result.appointment["status"] == SessionStatus.COMPLETED.value


def test_manual_selection_of_other_patient_fails(db, clinic, therapist, make_session, make_progress, yesterday):
    other = Patient(clinic_id=clinic.id, name="Marina")
    db.add(other)
    db.commit()
    foreign = make_session(yesterday, time(9, 0), patient_id=other.id)
    progress = make_progress(yesterday)

    with pytest.raises(SchedulingError) as exc:
        resolve_progress_link(db, progress, therapist, selected_appointment_id=foreign.id)
    assert exc.value.status_code == 400


def test_orphans_exclude_linked_records(db, therapist, make_session, make_progress, yesterday):
    make_session(yesterday, time(10, 0))
    linked = make_progress(yesterday)
    resolve_progress_link(db, linked, therapist)
    db.commit()

    orphan = make_progress(yesterday - timedelta(days=1))

    orphans = find_orphan_sessions(db, therapist.clinic_id)
    assert [p.id for p in orphans] == [orphan.id]


def test_conflicts_ignore_cancelled_and_adjacent(db, patient, therapist, make_session, yesterday):
    make_session(yesterday, time(9, 0), status=SessionStatus.CANCELLED.value)
    make_session(yesterday, time(11, 0))

    assert find_conflicts(db, patient.id, therapist.id, yesterday, time(9, 30), 60) == []
    assert find_conflicts(db, patient.id, therapist.id, yesterday, time(10, 0), 60) == []
    assert len(find_conflicts(db, patient.id, therapist.id, yesterday, time(10, 30), 60)) == 1
