"""
ORM models

Session / Round / MeetingPoint 由主辦方設定，引擎只讀取。
Registration 是引擎唯一會修改的單位；Match、MatchMember、MatchingLock
只由配對流程建立。
"""
import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    PrimaryKeyConstraint,
    String,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls, **kwargs):
    # 存 value（例如 "waiting-for-match"），不存 member name
    return Column(
        Enum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=40,
        ),
        **kwargs
    )


class RegistrationStatus(str, enum.Enum):
    REGISTERED = "registered"
    WAITING_FOR_ATTENDANCE_CONFIRMATION = "waiting-for-attendance-confirmation"
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    WAITING_FOR_MATCH = "waiting-for-match"
    MATCHED = "matched"
    WALKING_TO_MEETING_POINT = "walking-to-meeting-point"
    WAITING_FOR_MEET_CONFIRMATION = "waiting-for-meet-confirmation"
    MET = "met"
    COMPLETED = "completed"


class MatchingMode(str, enum.Enum):
    ACROSS_TEAMS = "across-teams"
    WITHIN_TEAMS = "within-teams"


class SessionStatus(str, enum.Enum):
    PUBLISHED = "published"
    COMPLETED = "completed"


class NetworkingSession(Base):
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=False)
    status = _enum_column(SessionStatus, nullable=False, default=SessionStatus.PUBLISHED)
    matching_mode = _enum_column(MatchingMode, nullable=False, default=MatchingMode.ACROSS_TEAMS)
    teams_enabled = Column(Boolean, nullable=False, default=False)
    topics_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    rounds = relationship("Round", back_populates="session", order_by="Round.start_time")


class Round(Base):
    __tablename__ = "rounds"

    id = Column(String(36), primary_key=True, default=_new_id)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=10)
    group_size = Column(Integer, nullable=False, default=2)
    confirmation_window_minutes = Column(Integer, nullable=False, default=5)
    max_participants = Column(Integer, nullable=True)
    max_groups = Column(Integer, nullable=True)

    session = relationship("NetworkingSession", back_populates="rounds")
    meeting_points = relationship(
        "MeetingPoint",
        back_populates="round",
        order_by="MeetingPoint.position",
        cascade="all, delete-orphan",
    )


class MeetingPoint(Base):
    __tablename__ = "meeting_points"

    id = Column(String(36), primary_key=True, default=_new_id)
    round_id = Column(String(36), ForeignKey("rounds.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    checkin_code = Column(String(12), nullable=False)

    round = relationship("Round", back_populates="meeting_points")


class Participant(Base):
    __tablename__ = "participants"

    id = Column(String(36), primary_key=True, default=_new_id)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    email = Column(String(320), nullable=True)
    phone = Column(String(40), nullable=True)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or "Participant"


class Registration(Base):
    __tablename__ = "registrations"

    id = Column(String(36), primary_key=True, default=_new_id)
    participant_id = Column(String(36), ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    round_id = Column(String(36), ForeignKey("rounds.id", ondelete="CASCADE"), nullable=False, index=True)
    status = _enum_column(RegistrationStatus, nullable=False, default=RegistrationStatus.REGISTERED)
    status_reason = Column(String(200), nullable=True)
    team = Column(String(100), nullable=True)
    topics = Column(JSON, nullable=False, default=list)
    notifications_enabled = Column(Boolean, nullable=False, default=True)

    meeting_point_id = Column(String(36), ForeignKey("meeting_points.id"), nullable=True)
    match_id = Column(String(36), ForeignKey("matches.id"), nullable=True)
    partner_names = Column(JSON, nullable=False, default=list)

    registered_at = Column(DateTime(timezone=True), server_default=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    met_at = Column(DateTime(timezone=True), nullable=True)
    last_status_update = Column(DateTime(timezone=True), nullable=True)

    participant = relationship("Participant")
    round = relationship("Round")
    meeting_point = relationship("MeetingPoint")

    __table_args__ = (
        UniqueConstraint("participant_id", "round_id", name="uq_registration_participant_round"),
    )


class Match(Base):
    __tablename__ = "matches"

    id = Column(String(36), primary_key=True, default=_new_id)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    round_id = Column(String(36), ForeignKey("rounds.id", ondelete="CASCADE"), nullable=False, index=True)
    meeting_point_id = Column(String(36), ForeignKey("meeting_points.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    members = relationship("MatchMember", back_populates="match", order_by="MatchMember.position")
    meeting_point = relationship("MeetingPoint")

    @property
    def participant_ids(self) -> list:
        return [m.participant_id for m in self.members]


class MatchMember(Base):
    __tablename__ = "match_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(String(36), ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(36), nullable=False, index=True)
    participant_id = Column(String(36), ForeignKey("participants.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    match = relationship("Match", back_populates="members")

    __table_args__ = (
        UniqueConstraint("match_id", "participant_id", name="uq_match_member"),
    )


class MatchingLock(Base):
    """
    每個 (session, round) 最多一筆

    Primary key 就是 uniqueness constraint：誰的 INSERT 成功誰就負責配對。
    """
    __tablename__ = "matching_locks"

    session_id = Column(String(36), nullable=False)
    round_id = Column(String(36), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    match_count = Column(Integer, nullable=False, default=0)
    unmatched_count = Column(Integer, nullable=False, default=0)
    solo_participant = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        PrimaryKeyConstraint("session_id", "round_id", name="pk_matching_lock"),
    )


class EventLog(Base):
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), nullable=False, index=True)
    round_id = Column(String(36), nullable=True, index=True)
    participant_id = Column(String(36), nullable=True)
    event_type = Column(String(50), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
