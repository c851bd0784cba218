"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

兩種工具：
1. 行級鎖（SELECT ... FOR UPDATE）：參加者自己的動作（確認、報到、見面確認），
   以及報名時的人數上限檢查（鎖 Round）
2. 配對鎖（INSERT 成功與否）：每個回合的配對只執行一次

配對鎖不能用「先查再寫」實作（兩個請求會同時查到「沒有鎖」），
必須讓資料庫的 uniqueness constraint 決定誰贏。
"""
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, Query

from models import MatchingLock, Registration, Round

logger = logging.getLogger(__name__)


def with_registration_lock(participant_id: str, round_id: str, db: Session) -> Query:
    """
    鎖定一筆 Registration（行級鎖）

    使用場景：
    - 參加者確認出席、報到、確認見面時
    - 確保同一筆 Registration 在整個 transaction 期間不被其他請求修改

    範例：
        registration = with_registration_lock(participant_id, round_id, db).first()
        if not registration:
            raise RegistrationNotFound(participant_id, round_id)

    參數：
        participant_id: 參加者 ID
        round_id: 回合 ID
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 來取得結果）

    注意：
        - SQLite 會忽略 FOR UPDATE（BEGIN IMMEDIATE 已經序列化寫入）
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
    """
    return db.query(Registration).filter(
        Registration.participant_id == participant_id,
        Registration.round_id == round_id
    ).with_for_update(nowait=False)


def with_round_lock(round_id: str, db: Session) -> Query:
    """
    鎖定一個 Round（行級鎖）

    使用場景：
    - 報名時檢查 max_participants（先鎖 Round 再計數，
      同時送出的報名會排隊，不會一起超過上限）

    範例：
        round_obj = with_round_lock(round_id, db).first()
        if not round_obj:
            raise RoundNotFound(round_id)

    返回：
        Query object（需要呼叫 .first() 來取得結果）
    """
    return db.query(Round).filter(
        Round.id == round_id
    ).with_for_update(nowait=False)


def get_matching_lock(session_id: str, round_id: str, db: Session) -> Optional[MatchingLock]:
    """
    取得配對鎖（不鎖定）

    配對鎖存在 = 配對已執行，這是唯一的判斷依據
    """
    return db.get(MatchingLock, (session_id, round_id))


def try_acquire_matching_lock(session_id: str, round_id: str, now: datetime, db: Session) -> bool:
    """
    嘗試取得回合的配對鎖（INSERT if absent）

    使用場景：
    - 回合開始（T-0）時，多個參加者的客戶端可能同時觸發配對
    - 只有 INSERT 成功的那一個請求負責執行配對

    參數：
        session_id: Session ID
        round_id: 回合 ID
        now: 取得鎖的時間
        db: SQLAlchemy Session

    返回：
        True 如果這個呼叫者取得鎖，False 表示已經有人處理（不是錯誤）

    注意：
        - 在 SAVEPOINT 內 INSERT，失敗時只 rollback 這一步
        - 不 commit：鎖和配對結果在同一個 transaction 內寫入，
          配對失敗時鎖也會一起 rollback，下次觸發可以重新執行
        - 沒搶到鎖的呼叫者不應該等待或重試
    """
    try:
        with db.begin_nested():
            db.add(MatchingLock(
                session_id=session_id,
                round_id=round_id,
                acquired_at=now,
            ))
    except IntegrityError:
        logger.info(
            "Matching lock for session %s round %s already taken",
            session_id, round_id
        )
        return False

    logger.info(f"Acquired matching lock for session {session_id} round {round_id}")
    return True


def record_matching_summary(
    lock: MatchingLock,
    completed_at: datetime,
    match_count: int,
    unmatched_count: int,
    solo_participant: bool,
) -> MatchingLock:
    """
    寫入配對結果摘要

    只有取得鎖的呼叫者會執行，所以不需要額外同步
    """
    lock.completed_at = completed_at
    lock.match_count = match_count
    lock.unmatched_count = unmatched_count
    lock.solo_participant = solo_participant
    return lock
