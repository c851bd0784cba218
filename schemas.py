"""
API 請求/回應 schemas
"""
from datetime import date, datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import MatchingMode, RegistrationStatus


# ============ 設定（外部資料，測試 / 管理用） ============

class SessionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    matching_mode: MatchingMode = MatchingMode.ACROSS_TEAMS
    teams_enabled: bool = False
    topics_enabled: bool = False


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    status: str
    matching_mode: MatchingMode
    teams_enabled: bool
    topics_enabled: bool


class MeetingPointCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    checkin_code: Optional[str] = Field(default=None, max_length=12)


class MeetingPointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    position: int
    checkin_code: str


class RoundCreate(BaseModel):
    name: str = ""
    date: date
    start_time: time
    duration_minutes: int = Field(default=10, ge=1)
    group_size: Optional[int] = Field(default=None, ge=2)
    confirmation_window_minutes: Optional[int] = Field(default=None, ge=0)
    max_participants: Optional[int] = Field(default=None, ge=1)
    max_groups: Optional[int] = Field(default=None, ge=1)
    meeting_points: List[MeetingPointCreate] = Field(default_factory=list)


class RoundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    name: str
    date: date
    start_time: time
    duration_minutes: int
    group_size: int
    confirmation_window_minutes: int
    max_participants: Optional[int] = None
    max_groups: Optional[int] = None
    meeting_points: List[MeetingPointResponse] = Field(default_factory=list)


class ParticipantCreate(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


# ============ 參加者動作 ============

class RegistrationCreate(BaseModel):
    participant_id: str
    team: Optional[str] = None
    topics: List[str] = Field(default_factory=list)


class CheckInSubmit(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)


class RegistrationResponse(BaseModel):
    participant_id: str
    session_id: str
    round_id: str
    status: RegistrationStatus
    stored_status: RegistrationStatus
    status_reason: Optional[str] = None
    team: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    match_id: Optional[str] = None
    meeting_point_id: Optional[str] = None
    meeting_point_name: Optional[str] = None
    partner_names: List[str] = Field(default_factory=list)
    confirmed_at: Optional[datetime] = None
    matched_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    met_at: Optional[datetime] = None
    last_status_update: Optional[datetime] = None


class ActionResponse(BaseModel):
    status: str


# ============ 回合狀態 / 配對 ============

class SweepResponse(BaseModel):
    unconfirmed_count: int
    completed_count: int


class MatchingResponse(BaseModel):
    already_completed: bool
    match_count: int
    unmatched_count: int
    solo_participant: bool = False


class RoundStateResponse(BaseModel):
    session_id: str
    round_id: str
    started: bool
    ended: bool
    matching_completed: bool
    status_counts: Dict[str, int]
    sweep: SweepResponse
    matching: Optional[MatchingResponse] = None


class MatchResponse(BaseModel):
    id: str
    round_id: str
    meeting_point_id: Optional[str] = None
    meeting_point_name: Optional[str] = None
    participant_ids: List[str]
