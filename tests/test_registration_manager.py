from datetime import timedelta

import pytest

from models import RegistrationStatus
from core.exceptions import (
    AlreadyRegistered,
    InvalidCheckinCode,
    InvalidStateTransition,
    ParticipantNotFound,
    PartnerNotReady,
    RegistrationClosed,
    RegistrationNotFound,
    RoundFull,
    TooLateToCancel,
    WindowClosed,
)
from core import registration_manager
from core.registration_manager import RegistrationManager
from core.round_manager import RoundManager
from services.notification_service import ATTENDANCE_CONFIRMED
from services.round_timing_service import get_round_end, get_round_start


@pytest.fixture
def round_obj(make_session, make_round):
    return make_round(make_session(topics_enabled=True))


@pytest.fixture
def start(round_obj):
    return get_round_start(round_obj)


@pytest.fixture
def matched_pair(db, round_obj, start, confirmed, dispatcher, rng):
    """Two confirmed participants matched into one group at a single meeting point."""
    participants = confirmed(round_obj, 2)
    RoundManager.trigger_matching(
        db, round_obj.session_id, round_obj.id, now=start, rng=rng, dispatcher=dispatcher
    )
    return participants


def test_register(db, round_obj, start, make_participant):
    participant = make_participant()

    registration = RegistrationManager.register(
        db, participant.id, round_obj.id, team="red", topics=["ai", "ai", "music"],
        now=start - timedelta(hours=1)
    )

    assert registration.status == RegistrationStatus.REGISTERED
    assert registration.session_id == round_obj.session_id
    assert registration.topics == ["ai", "music"]


def test_register_twice(db, round_obj, start, make_participant):
    participant = make_participant()
    RegistrationManager.register(db, participant.id, round_obj.id, now=start - timedelta(hours=1))

    with pytest.raises(AlreadyRegistered):
        RegistrationManager.register(db, participant.id, round_obj.id, now=start - timedelta(hours=1))


def test_register_closes_before_start(db, round_obj, start, make_participant):
    participant = make_participant()

    with pytest.raises(RegistrationClosed):
        RegistrationManager.register(db, participant.id, round_obj.id, now=start - timedelta(minutes=6))


def test_register_unknown_participant(db, round_obj, start):
    with pytest.raises(ParticipantNotFound):
        RegistrationManager.register(db, "nobody", round_obj.id, now=start - timedelta(hours=1))


def test_round_full(db, make_session, make_round, make_participant):
    round_obj = make_round(make_session(), max_participants=1)
    early = get_round_start(round_obj) - timedelta(hours=1)
    RegistrationManager.register(db, make_participant().id, round_obj.id, now=early)

    with pytest.raises(RoundFull):
        RegistrationManager.register(db, make_participant().id, round_obj.id, now=early)


def test_unregister(db, round_obj, start, registered):
    participant = registered(round_obj, 1)[0]

    RegistrationManager.unregister(db, participant.id, round_obj.id, now=start - timedelta(minutes=30))

    with pytest.raises(RegistrationNotFound):
        RegistrationManager.get_registration(db, participant.id, round_obj.id)


def test_unregister_too_late(db, round_obj, start, registered):
    participant = registered(round_obj, 1)[0]

    with pytest.raises(TooLateToCancel):
        RegistrationManager.unregister(db, participant.id, round_obj.id, now=start - timedelta(minutes=2))

    registration = RegistrationManager.get_registration(db, participant.id, round_obj.id)
    assert registration.status == RegistrationStatus.REGISTERED


def test_unregister_after_confirming(db, round_obj, start, confirmed):
    participant = confirmed(round_obj, 1)[0]

    with pytest.raises(InvalidStateTransition):
        RegistrationManager.unregister(db, participant.id, round_obj.id, now=start - timedelta(minutes=30))


def test_confirm_attendance(db, round_obj, start, registered, notifier, dispatcher):
    participant = registered(round_obj, 1)[0]
    now = start - timedelta(minutes=3)

    registration = RegistrationManager.confirm_attendance(
        db, participant.id, round_obj.id, now=now, dispatcher=dispatcher
    )

    assert registration.status == RegistrationStatus.CONFIRMED
    assert registration.confirmed_at is not None
    assert [n.kind for n in notifier.sent] == [ATTENDANCE_CONFIRMED]
    assert notifier.sent[0].participant_id == participant.id


def test_confirm_attendance_twice_is_a_noop(db, round_obj, start, registered, notifier, dispatcher):
    participant = registered(round_obj, 1)[0]
    for seconds in (0, 30):
        registration = RegistrationManager.confirm_attendance(
            db, participant.id, round_obj.id,
            now=start - timedelta(minutes=3) + timedelta(seconds=seconds), dispatcher=dispatcher
        )

    assert registration.status == RegistrationStatus.CONFIRMED
    assert len(notifier.sent) == 1


def test_confirm_attendance_after_start(db, round_obj, start, registered, notifier, dispatcher):
    participant = registered(round_obj, 1)[0]

    with pytest.raises(WindowClosed):
        RegistrationManager.confirm_attendance(
            db, participant.id, round_obj.id, now=start, dispatcher=dispatcher
        )

    registration = RegistrationManager.get_registration(db, participant.id, round_obj.id)
    assert registration.status == RegistrationStatus.REGISTERED
    assert notifier.sent == []


def test_confirm_attendance_without_registration(db, round_obj, start, make_participant, dispatcher):
    with pytest.raises(RegistrationNotFound):
        RegistrationManager.confirm_attendance(
            db, make_participant().id, round_obj.id, now=start - timedelta(minutes=3), dispatcher=dispatcher
        )


def test_notifications_can_be_turned_off(db, round_obj, start, registered, notifier, dispatcher):
    participant = registered(round_obj, 1)[0]
    registration = RegistrationManager.get_registration(db, participant.id, round_obj.id)
    registration.notifications_enabled = False
    db.commit()

    RegistrationManager.confirm_attendance(
        db, participant.id, round_obj.id, now=start - timedelta(minutes=3), dispatcher=dispatcher
    )

    assert notifier.sent == []


def test_on_my_way_requires_a_match(db, round_obj, start, confirmed):
    participant = confirmed(round_obj, 1)[0]

    with pytest.raises(InvalidStateTransition):
        RegistrationManager.mark_on_my_way(db, participant.id, round_obj.id, now=start)


def test_meeting_flow(db, round_obj, start, matched_pair):
    first, second = matched_pair
    now = start + timedelta(minutes=1)

    registration = RegistrationManager.mark_on_my_way(db, first.id, round_obj.id, now=now)
    assert registration.status == RegistrationStatus.WALKING_TO_MEETING_POINT

    code = registration.meeting_point.checkin_code
    registration = RegistrationManager.check_in(db, first.id, round_obj.id, f"  {code.lower()} ", now=now)
    assert registration.status == RegistrationStatus.WAITING_FOR_MEET_CONFIRMATION
    assert registration.checked_in_at is not None

    with pytest.raises(PartnerNotReady):
        RegistrationManager.confirm_meeting(db, first.id, round_obj.id, now=now)

    # checking in straight from matched is allowed
    RegistrationManager.check_in(db, second.id, round_obj.id, code, now=now)

    registration = RegistrationManager.confirm_meeting(db, first.id, round_obj.id, now=now)
    assert registration.status == RegistrationStatus.MET
    assert registration.met_at is not None

    # the partner may confirm after the first one has already met
    registration = RegistrationManager.confirm_meeting(db, second.id, round_obj.id, now=now)
    assert registration.status == RegistrationStatus.MET

    again = RegistrationManager.confirm_meeting(db, second.id, round_obj.id, now=now)
    assert again.status == RegistrationStatus.MET


def test_wrong_checkin_code_keeps_status(db, round_obj, start, matched_pair):
    participant = matched_pair[0]

    with pytest.raises(InvalidCheckinCode):
        RegistrationManager.check_in(db, participant.id, round_obj.id, "NOPE", now=start)

    registration = RegistrationManager.get_registration(db, participant.id, round_obj.id)
    assert registration.status == RegistrationStatus.MATCHED
    assert registration.checked_in_at is None


def test_check_in_before_match(db, round_obj, start, confirmed):
    participant = confirmed(round_obj, 1)[0]

    with pytest.raises(InvalidStateTransition):
        RegistrationManager.check_in(db, participant.id, round_obj.id, "LOBBY", now=start)


def test_confirm_meeting_before_check_in(db, round_obj, start, matched_pair):
    with pytest.raises(InvalidStateTransition):
        RegistrationManager.confirm_meeting(db, matched_pair[0].id, round_obj.id, now=start)


def test_register_locks_the_round_before_counting(db, make_session, make_round, make_participant, mocker):
    round_obj = make_round(make_session(), max_participants=2)
    early = get_round_start(round_obj) - timedelta(hours=1)
    lock = mocker.spy(registration_manager, "with_round_lock")

    RegistrationManager.register(db, make_participant().id, round_obj.id, now=early)

    lock.assert_called_once()
    assert lock.call_args.args[0] == round_obj.id


def test_meeting_flow_closes_at_round_end(db, round_obj, matched_pair):
    participant = matched_pair[0]
    after_end = get_round_end(round_obj) + timedelta(seconds=1)

    with pytest.raises(InvalidStateTransition):
        RegistrationManager.mark_on_my_way(db, participant.id, round_obj.id, now=after_end)

    registration = RegistrationManager.get_registration(db, participant.id, round_obj.id)
    code = registration.meeting_point.checkin_code
    with pytest.raises(InvalidStateTransition):
        RegistrationManager.check_in(db, participant.id, round_obj.id, code, now=after_end)

    registration = RegistrationManager.get_registration(db, participant.id, round_obj.id)
    assert registration.status == RegistrationStatus.MATCHED
    assert registration.checked_in_at is None
