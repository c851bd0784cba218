"""
Round API Endpoints - 短輪詢版

重點：
1. /state 每次被讀取都會推進回合狀態（sweep + 到時間就觸發配對）
2. /start 冪等：同時被多個客戶端呼叫，只有一個會執行配對，
   其他呼叫拿到 already_completed=True（不是錯誤）
3. 所有業務邏輯集中在 RoundManager
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import logging

from database import get_db
from schemas import (
    MatchResponse,
    MatchingResponse,
    RoundStateResponse,
    SweepResponse,
)
from api.dependencies import get_now
from core.round_manager import MatchingOutcome, RoundManager
from core.exceptions import NotFound, RoundEnded, RoundNotStarted

router = APIRouter(prefix="/api", tags=["rounds"])
logger = logging.getLogger(__name__)


def _matching_response(outcome: MatchingOutcome) -> MatchingResponse:
    return MatchingResponse(
        already_completed=outcome.already_completed,
        match_count=outcome.match_count,
        unmatched_count=outcome.unmatched_count,
        solo_participant=outcome.solo_participant,
    )


@router.post("/rounds/{round_id}/sweep", response_model=SweepResponse)
def run_status_sweep(
    round_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    執行狀態 sweep（任何時間都可以呼叫，可重複）

    返回：
        - unconfirmed_count: 這次標成 unconfirmed 的筆數
        - completed_count: 這次標成 completed 的筆數
    """
    try:
        result = RoundManager.run_status_sweep(db, round_id, now=now)
        return SweepResponse(
            unconfirmed_count=result.unconfirmed_count,
            completed_count=result.completed_count,
        )

    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to run status sweep: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/sessions/{session_id}/rounds/{round_id}/start", response_model=MatchingResponse)
def start_round(
    session_id: str,
    round_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    回合開始（T-0），觸發配對

    **消除特殊情況**：
    - 任何客戶端都可以呼叫，沒有「誰負責觸發」的特殊邏輯
    - 配對鎖確保只執行一次

    返回：
        - already_completed: True 表示已經有其他請求處理過
        - match_count / unmatched_count
    """
    try:
        outcome = RoundManager.trigger_matching(db, session_id, round_id, now=now)
        logger.info(
            "Start round %s (session=%s): %s",
            round_id,
            session_id,
            "already completed" if outcome.already_completed else f"{outcome.match_count} matches"
        )
        return _matching_response(outcome)

    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (RoundNotStarted, RoundEnded) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start round: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/sessions/{session_id}/rounds/{round_id}/state", response_model=RoundStateResponse)
def get_round_state(
    session_id: str,
    round_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """
    取得回合狀態（短輪詢）

    副作用：
        - 執行 sweep
        - 回合進行中且尚未配對時觸發配對
    """
    try:
        state = RoundManager.get_round_state(db, session_id, round_id, now=now)
        return RoundStateResponse(
            session_id=state.session_id,
            round_id=state.round_id,
            started=state.started,
            ended=state.ended,
            matching_completed=state.matching_completed,
            status_counts=state.status_counts,
            sweep=SweepResponse(
                unconfirmed_count=state.sweep.unconfirmed_count,
                completed_count=state.sweep.completed_count,
            ),
            matching=_matching_response(state.matching) if state.matching else None,
        )

    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get round state: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/rounds/{round_id}/matches", response_model=list[MatchResponse])
def list_matches(round_id: str, db: Session = Depends(get_db)):
    """取得回合的所有配對"""
    try:
        RoundManager.get_round(db, round_id)
        return [
            MatchResponse(
                id=match.id,
                round_id=match.round_id,
                meeting_point_id=match.meeting_point_id,
                meeting_point_name=match.meeting_point.name if match.meeting_point else None,
                participant_ids=match.participant_ids,
            )
            for match in RoundManager.get_matches(db, round_id)
        ]

    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to list matches: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
