"""
Registration API Endpoints

職責：
1. 參加者報名 / 取消報名
2. 確認出席、出發、報到、確認見面
3. 查詢報名狀態（顯示狀態由目前時間推導）
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from database import get_db
from models import Registration, Round
from schemas import (
    ActionResponse,
    CheckInSubmit,
    RegistrationCreate,
    RegistrationResponse,
)
from api.dependencies import get_now
from core.registration_manager import RegistrationManager
from core.state_machine import derive_display_status
from core.exceptions import (
    AlreadyRegistered,
    InvalidCheckinCode,
    InvalidStateTransition,
    NotFound,
    PartnerNotReady,
    RegistrationClosed,
    RoundFull,
    TooLateToCancel,
    WindowClosed,
)

router = APIRouter(prefix="/api/rounds", tags=["registrations"])
logger = logging.getLogger(__name__)

# 使用者可以看到的 guard failure（原樣回傳訊息，不自動重試）
GUARD_FAILURES = (
    AlreadyRegistered,
    InvalidCheckinCode,
    InvalidStateTransition,
    PartnerNotReady,
    RegistrationClosed,
    RoundFull,
    TooLateToCancel,
    WindowClosed,
)


def _to_response(registration: Registration, round_obj: Round, now: datetime) -> RegistrationResponse:
    meeting_point = registration.meeting_point
    return RegistrationResponse(
        participant_id=registration.participant_id,
        session_id=registration.session_id,
        round_id=registration.round_id,
        status=derive_display_status(registration, round_obj, now),
        stored_status=registration.status,
        status_reason=registration.status_reason,
        team=registration.team,
        topics=list(registration.topics or []),
        match_id=registration.match_id,
        meeting_point_id=registration.meeting_point_id,
        meeting_point_name=meeting_point.name if meeting_point else None,
        partner_names=list(registration.partner_names or []),
        confirmed_at=registration.confirmed_at,
        matched_at=registration.matched_at,
        checked_in_at=registration.checked_in_at,
        met_at=registration.met_at,
        last_status_update=registration.last_status_update,
    )


def _fail(e: Exception, action: str, db: Session):
    """把異常轉成 HTTPException"""
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, GUARD_FAILURES):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Failed to {action}: {e}", exc_info=True)
    db.rollback()
    return HTTPException(status_code=500, detail="Internal error")


@router.post("/{round_id}/registrations", response_model=RegistrationResponse)
def register(
    round_id: str,
    registration_data: RegistrationCreate,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    報名回合

    前置條件：
    - 報名截止前（round start - safety window）
    - 尚未報名、人數未滿
    """
    try:
        registration = RegistrationManager.register(
            db,
            registration_data.participant_id,
            round_id,
            team=registration_data.team,
            topics=registration_data.topics,
            now=now,
        )
        round_obj = RegistrationManager.get_round(db, round_id)
        return _to_response(registration, round_obj, now)

    except Exception as e:
        raise _fail(e, "register", db)


@router.get("/{round_id}/registrations/{participant_id}", response_model=RegistrationResponse)
def get_registration(
    round_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """取得報名狀態（status 為依目前時間推導的顯示狀態）"""
    try:
        round_obj = RegistrationManager.get_round(db, round_id)
        registration = RegistrationManager.get_registration(db, participant_id, round_id)
        return _to_response(registration, round_obj, now)

    except Exception as e:
        raise _fail(e, "get registration", db)


@router.delete("/{round_id}/registrations/{participant_id}", response_model=ActionResponse)
def unregister(
    round_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """取消報名（只能在報名截止前、確認出席前）"""
    try:
        RegistrationManager.unregister(db, participant_id, round_id, now=now)
        return ActionResponse(status="ok")

    except Exception as e:
        raise _fail(e, "unregister", db)


@router.post("/{round_id}/registrations/{participant_id}/confirm", response_model=RegistrationResponse)
def confirm_attendance(
    round_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    確認出席

    回合開始後回傳 400（WindowClosed），狀態不變
    """
    try:
        registration = RegistrationManager.confirm_attendance(db, participant_id, round_id, now=now)
        round_obj = RegistrationManager.get_round(db, round_id)
        return _to_response(registration, round_obj, now)

    except Exception as e:
        raise _fail(e, "confirm attendance", db)


@router.post("/{round_id}/registrations/{participant_id}/on-my-way", response_model=RegistrationResponse)
def mark_on_my_way(
    round_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    try:
        registration = RegistrationManager.mark_on_my_way(db, participant_id, round_id, now=now)
        round_obj = RegistrationManager.get_round(db, round_id)
        return _to_response(registration, round_obj, now)

    except Exception as e:
        raise _fail(e, "mark on my way", db)


@router.post("/{round_id}/registrations/{participant_id}/check-in", response_model=RegistrationResponse)
def check_in(
    round_id: str,
    participant_id: str,
    checkin_data: CheckInSubmit,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """在集合點報到（代碼不符回傳 400，狀態不變）"""
    try:
        registration = RegistrationManager.check_in(
            db, participant_id, round_id, checkin_data.code, now=now
        )
        round_obj = RegistrationManager.get_round(db, round_id)
        return _to_response(registration, round_obj, now)

    except Exception as e:
        raise _fail(e, "check in", db)


@router.post("/{round_id}/registrations/{participant_id}/confirm-meeting", response_model=RegistrationResponse)
def confirm_meeting(
    round_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """確認見面（夥伴還沒報到時回傳 400）"""
    try:
        registration = RegistrationManager.confirm_meeting(db, participant_id, round_id, now=now)
        round_obj = RegistrationManager.get_round(db, round_id)
        return _to_response(registration, round_obj, now)

    except Exception as e:
        raise _fail(e, "confirm meeting", db)
