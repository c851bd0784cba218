from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from models import RegistrationStatus
from core.registration_manager import RegistrationManager
from core.round_manager import RoundManager
from services.notification_service import (
    MATCH_ASSIGNED,
    Notification,
    NotificationDispatcher,
    NotificationGateway,
    WebhookNotifier,
)
from services.round_timing_service import get_round_start


def _notification():
    return Notification(
        kind=MATCH_ASSIGNED,
        participant_id="p1",
        session_id="s1",
        round_id="r1",
        first_name="Ada",
        data={"meeting_point": "Lobby"},
    )


def test_failed_send_does_not_undo_confirmation(db, make_session, make_round, registered, mocker):
    gateway = mocker.Mock(spec=NotificationGateway)
    gateway.send.side_effect = RuntimeError("provider down")
    round_obj = make_round(make_session())
    participant = registered(round_obj, 1)[0]

    registration = RegistrationManager.confirm_attendance(
        db, participant.id, round_obj.id,
        now=get_round_start(round_obj) - timedelta(minutes=2),
        dispatcher=NotificationDispatcher(gateway),
    )

    assert gateway.send.call_count == 1
    assert registration.status == RegistrationStatus.CONFIRMED
    db.expire_all()
    assert RegistrationManager.get_registration(db, participant.id, round_obj.id).status == RegistrationStatus.CONFIRMED


def test_failed_send_does_not_undo_matching(db, make_session, make_round, confirmed, rng, mocker):
    gateway = mocker.Mock(spec=NotificationGateway)
    gateway.send.side_effect = RuntimeError("provider down")
    session = make_session()
    round_obj = make_round(session)
    confirmed(round_obj, 2)

    outcome = RoundManager.trigger_matching(
        db, session.id, round_obj.id, now=get_round_start(round_obj), rng=rng,
        dispatcher=NotificationDispatcher(gateway),
    )

    assert outcome.match_count == 1
    assert gateway.send.call_count == 2
    assert RoundManager.count_statuses(db, round_obj.id) == {"matched": 2}


def test_match_notification_carries_meeting_point_and_partner(
    db, make_session, make_round, confirmed, notifier, dispatcher, rng
):
    session = make_session()
    round_obj = make_round(session, meeting_points=(("Terrace", "TRRC"),))
    first, second = confirmed(round_obj, 2)

    RoundManager.trigger_matching(
        db, session.id, round_obj.id, now=get_round_start(round_obj), rng=rng, dispatcher=dispatcher
    )

    sent = {n.participant_id: n for n in notifier.sent if n.kind == MATCH_ASSIGNED}
    assert sent[first.id].data["meeting_point"] == "Terrace"
    assert sent[first.id].data["partners"] == [f"{second.first_name} {second.last_name}"]
    assert sent[first.id].email == first.email


def test_dispatcher_with_executor(mocker):
    gateway = mocker.Mock(spec=NotificationGateway)
    executor = ThreadPoolExecutor(max_workers=2)
    dispatcher = NotificationDispatcher(gateway, executor=executor)

    dispatcher.dispatch([_notification(), _notification()])
    executor.shutdown(wait=True)

    assert gateway.send.call_count == 2


def test_webhook_notifier_posts_json(mocker):
    client_cls = mocker.patch("services.notification_service.httpx.Client")
    client = client_cls.return_value.__enter__.return_value
    client.post.return_value.status_code = 202

    WebhookNotifier("https://hooks.example.com/notify", timeout=2.0).send(_notification())

    client_cls.assert_called_once_with(timeout=2.0)
    url = client.post.call_args.args[0]
    payload = client.post.call_args.kwargs["json"]
    assert url == "https://hooks.example.com/notify"
    assert payload["kind"] == MATCH_ASSIGNED
    assert payload["data"] == {"meeting_point": "Lobby"}


def test_webhook_notifier_raises_on_http_error(mocker):
    client_cls = mocker.patch("services.notification_service.httpx.Client")
    client_cls.return_value.__enter__.return_value.post.return_value.status_code = 503

    with pytest.raises(RuntimeError):
        WebhookNotifier("https://hooks.example.com/notify").send(_notification())
