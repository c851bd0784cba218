from datetime import datetime, timedelta
import random

import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import (
    MatchingMode,
    MeetingPoint,
    NetworkingSession,
    Participant,
    Round,
)
from core.registration_manager import RegistrationManager
from services.notification_service import NotificationDispatcher, NotificationGateway
from services.round_timing_service import get_round_start


class RecordingNotifier(NotificationGateway):
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """A session on the temporary database.

    SQLite transactions start with BEGIN IMMEDIATE, so commit or rollback
    before handing the database to other sessions (threads, TestClient).
    """
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def make_session(db):
    def factory(name="Networking Night", matching_mode=MatchingMode.ACROSS_TEAMS,
                teams_enabled=False, topics_enabled=False):
        session = NetworkingSession(
            name=name,
            matching_mode=matching_mode,
            teams_enabled=teams_enabled,
            topics_enabled=topics_enabled,
        )
        db.add(session)
        db.commit()
        return session
    return factory


@pytest.fixture
def make_round(db):
    def factory(session, start=datetime(2026, 3, 14, 18, 0), duration_minutes=10,
                group_size=2, confirmation_window_minutes=5,
                meeting_points=(("Lobby", "LOBBY"), ("Cafe", "CAFE")),
                max_participants=None, max_groups=None):
        round_obj = Round(
            session_id=session.id,
            name="Round 1",
            date=start.date(),
            start_time=start.time(),
            duration_minutes=duration_minutes,
            group_size=group_size,
            confirmation_window_minutes=confirmation_window_minutes,
            max_participants=max_participants,
            max_groups=max_groups,
        )
        round_obj.meeting_points = [
            MeetingPoint(name=name, position=position, checkin_code=code)
            for position, (name, code) in enumerate(meeting_points)
        ]
        db.add(round_obj)
        db.commit()
        return round_obj
    return factory


@pytest.fixture
def make_participant(db):
    counter = {"n": 0}

    def factory(first_name=None, last_name="Tester"):
        counter["n"] += 1
        participant = Participant(
            first_name=first_name or f"P{counter['n']}",
            last_name=last_name,
            email=f"p{counter['n']}@example.com",
        )
        db.add(participant)
        db.commit()
        return participant
    return factory


@pytest.fixture
def registered(db, make_participant):
    """Register ``count`` new participants for a round, well before it starts."""
    def factory(round_obj, count, teams=None, topics=None):
        early = get_round_start(round_obj) - timedelta(hours=2)
        participants = []
        for i in range(count):
            participant = make_participant()
            RegistrationManager.register(
                db,
                participant.id,
                round_obj.id,
                team=teams[i] if teams else None,
                topics=topics[i] if topics else None,
                now=early,
            )
            participants.append(participant)
        return participants
    return factory


@pytest.fixture
def confirmed(db, registered, dispatcher):
    """Register and confirm ``count`` participants, in that confirmation order."""
    def factory(round_obj, count, teams=None, topics=None):
        participants = registered(round_obj, count, teams=teams, topics=topics)
        start = get_round_start(round_obj)
        for i, participant in enumerate(participants):
            RegistrationManager.confirm_attendance(
                db,
                participant.id,
                round_obj.id,
                now=start - timedelta(minutes=30) + timedelta(seconds=i),
                dispatcher=dispatcher,
            )
        return participants
    return factory
