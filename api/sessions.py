"""
Session / Round / Participant 設定 Endpoints

這些資料由外部的管理介面維護，這裡只提供建立與查詢，
讓引擎可以獨立部署與測試
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from database import get_db, get_settings
from models import MeetingPoint, NetworkingSession, Participant, Round
from schemas import (
    ParticipantCreate,
    ParticipantResponse,
    RoundCreate,
    RoundResponse,
    SessionCreate,
    SessionResponse,
)
from core.exceptions import RoundNotFound, SessionNotFound
from core.round_manager import RoundManager
from services.naming_service import generate_checkin_code

router = APIRouter(prefix="/api", tags=["sessions"])
logger = logging.getLogger(__name__)


@router.post("/sessions", response_model=SessionResponse)
def create_session(session_data: SessionCreate, db: Session = Depends(get_db)):
    """建立 Session（配對模式、團隊 / 主題設定）"""
    try:
        session = NetworkingSession(
            name=session_data.name,
            matching_mode=session_data.matching_mode,
            teams_enabled=session_data.teams_enabled,
            topics_enabled=session_data.topics_enabled,
        )
        db.add(session)
        db.commit()
        db.refresh(session)

        logger.info(f"Created session {session.id} ({session.name})")
        return SessionResponse(
            id=session.id,
            name=session.name,
            status=session.status.value,
            matching_mode=session.matching_mode,
            teams_enabled=session.teams_enabled,
            topics_enabled=session.topics_enabled,
        )

    except Exception as e:
        logger.error(f"Failed to create session: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/sessions/{session_id}/rounds", response_model=RoundResponse)
def create_round(session_id: str, round_data: RoundCreate, db: Session = Depends(get_db)):
    """
    建立回合（含集合點）

    沒有指定 group_size / confirmation_window_minutes 時使用系統預設值，
    沒有指定報到代碼的集合點會自動產生
    """
    try:
        if not db.get(NetworkingSession, session_id):
            raise SessionNotFound(session_id)

        settings = get_settings()
        round_obj = Round(
            session_id=session_id,
            name=round_data.name,
            date=round_data.date,
            start_time=round_data.start_time,
            duration_minutes=round_data.duration_minutes,
            group_size=round_data.group_size or settings.default_group_size,
            confirmation_window_minutes=(
                round_data.confirmation_window_minutes
                if round_data.confirmation_window_minutes is not None
                else settings.confirmation_window_minutes
            ),
            max_participants=round_data.max_participants,
            max_groups=round_data.max_groups,
        )
        round_obj.meeting_points = [
            MeetingPoint(
                name=point.name,
                position=position,
                checkin_code=point.checkin_code or generate_checkin_code(),
            )
            for position, point in enumerate(round_data.meeting_points)
        ]
        db.add(round_obj)
        db.commit()
        db.refresh(round_obj)

        logger.info(
            f"Created round {round_obj.id} for session {session_id} "
            f"with {len(round_obj.meeting_points)} meeting points"
        )
        return RoundResponse.model_validate(round_obj)

    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except Exception as e:
        logger.error(f"Failed to create round: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/rounds/{round_id}", response_model=RoundResponse)
def get_round(round_id: str, db: Session = Depends(get_db)):
    try:
        round_obj = RoundManager.get_round(db, round_id)
        return RoundResponse.model_validate(round_obj)

    except RoundNotFound:
        raise HTTPException(status_code=404, detail="Round not found")
    except Exception as e:
        logger.error(f"Failed to get round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/participants", response_model=ParticipantResponse)
def create_participant(participant_data: ParticipantCreate, db: Session = Depends(get_db)):
    try:
        participant = Participant(**participant_data.model_dump())
        db.add(participant)
        db.commit()
        db.refresh(participant)
        return ParticipantResponse.model_validate(participant)

    except Exception as e:
        logger.error(f"Failed to create participant: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
