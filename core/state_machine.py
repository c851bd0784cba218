"""
Registration 狀態機：集中管理所有狀態轉換

兩層：
1. 持久化狀態（存在 DB）：只有 ALLOWED_TRANSITIONS 表內的轉換能寫入
2. 顯示狀態（derive_display_status）：由持久化狀態 + 目前時間推導，
   waiting-for-attendance-confirmation 和 waiting-for-match 只存在這一層

時間相關的狀態在每次讀取時重新計算，
漏掉的輪詢或時鐘漂移都不會讓狀態卡住。
"""
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy.orm import Session

from models import EventLog, Registration, RegistrationStatus, Round
from core.exceptions import InvalidStateTransition
from services.round_timing_service import (
    as_utc,
    has_round_ended,
    has_round_started,
    is_confirmation_window_open,
)

logger = logging.getLogger(__name__)

S = RegistrationStatus

ALLOWED_TRANSITIONS: dict[RegistrationStatus, set[RegistrationStatus]] = {
    S.REGISTERED: {S.CONFIRMED, S.UNCONFIRMED},
    S.CONFIRMED: {S.MATCHED, S.UNCONFIRMED, S.COMPLETED},
    S.MATCHED: {S.WALKING_TO_MEETING_POINT, S.WAITING_FOR_MEET_CONFIRMATION, S.COMPLETED},
    S.WALKING_TO_MEETING_POINT: {S.WAITING_FOR_MEET_CONFIRMATION, S.COMPLETED},
    S.WAITING_FOR_MEET_CONFIRMATION: {S.MET, S.COMPLETED},
    S.MET: {S.COMPLETED},
    S.UNCONFIRMED: set(),
    S.COMPLETED: set(),
}

# 尚未確認出席（可以確認、可以取消報名）
PENDING_CONFIRMATION = {S.REGISTERED, S.WAITING_FOR_ATTENDANCE_CONFIRMATION}

# 確認出席之後的狀態（重複確認視為成功）
CONFIRMED_OR_LATER = {
    S.CONFIRMED,
    S.WAITING_FOR_MATCH,
    S.MATCHED,
    S.WALKING_TO_MEETING_POINT,
    S.WAITING_FOR_MEET_CONFIRMATION,
    S.MET,
    S.COMPLETED,
}

# 已在集合點報到
CHECKED_IN = {S.WAITING_FOR_MEET_CONFIRMATION, S.MET}


def statuses_allowing(target: RegistrationStatus) -> set[RegistrationStatus]:
    """
    哪些持久化狀態可以轉換到 target

    用途：
        批次 UPDATE 的 WHERE status IN (...) 條件，
        讓 sweep 只覆寫還沒轉換過的資料（重複執行是 no-op）
    """
    return {source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets}


def can_transition(current: RegistrationStatus, target: RegistrationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class RegistrationStateMachine:
    """Registration 狀態轉換（寫入 DB 的唯一入口）"""

    @staticmethod
    def transition(
        db: Session,
        registration: Registration,
        target: RegistrationStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> Registration:
        """
        轉換 Registration 狀態

        流程：
        1. 檢查轉換是否合法
        2. 更新狀態、原因、last_status_update
        3. 記錄事件

        參數：
            db: SQLAlchemy Session
            registration: 要轉換的 Registration
            target: 目標狀態
            now: 目前時間
            reason: 狀態原因（unconfirmed 時記錄）

        返回：
            更新後的 Registration

        異常：
            InvalidStateTransition: 轉換不在 ALLOWED_TRANSITIONS 表內

        注意：
            - 不 commit，由呼叫者的 transaction 處理
        """
        current = registration.status
        if not can_transition(current, target):
            allowed = ", ".join(sorted(s.value for s in ALLOWED_TRANSITIONS.get(current, set())))
            raise InvalidStateTransition(
                f"Transition from {current.value} to {target.value} is not allowed. "
                f"From {current.value} only allowed: {allowed or 'none'}."
            )

        registration.status = target
        registration.last_status_update = now
        if reason is not None:
            registration.status_reason = reason

        db.add(EventLog(
            session_id=registration.session_id,
            round_id=registration.round_id,
            participant_id=registration.participant_id,
            event_type="REGISTRATION_STATUS_CHANGED",
            data={"from": current.value, "to": target.value, "reason": reason},
        ))

        logger.info(
            "Registration %s: %s -> %s",
            registration.id, current.value, target.value
        )
        return registration


def derive_display_status(
    registration: Registration,
    round_obj: Round,
    now: datetime,
) -> RegistrationStatus:
    """
    由持久化狀態和目前時間推導出使用者看到的狀態（純函式）

    規則（依序）：
    1. 尚未確認 + 回合已開始 -> unconfirmed（sweep 還沒寫入也一樣）
    2. 非 unconfirmed + 回合已結束 -> completed
    3. registered + 確認窗口內 -> waiting-for-attendance-confirmation
    4. confirmed + 回合已開始 -> waiting-for-match（配對進行中）
    5. matched 但還沒有 match 資料 -> waiting-for-match
    6. 其他：持久化狀態本身

    範例（round start 18:00, confirmation window 5 分鐘, duration 10 分鐘）：
        registered @ 17:50 -> registered
        registered @ 17:57 -> waiting-for-attendance-confirmation
        registered @ 18:00 -> unconfirmed
        confirmed  @ 18:00 -> waiting-for-match
        matched    @ 18:10 -> completed
    """
    now = as_utc(now)
    stored = registration.status

    if stored in PENDING_CONFIRMATION and has_round_started(round_obj, now):
        return S.UNCONFIRMED

    if stored == S.UNCONFIRMED:
        return S.UNCONFIRMED

    if has_round_ended(round_obj, now):
        return S.COMPLETED

    if stored in PENDING_CONFIRMATION:
        if is_confirmation_window_open(round_obj, now):
            return S.WAITING_FOR_ATTENDANCE_CONFIRMATION
        return S.REGISTERED

    if stored == S.CONFIRMED and has_round_started(round_obj, now):
        return S.WAITING_FOR_MATCH

    if stored == S.MATCHED and registration.match_id is None:
        return S.WAITING_FOR_MATCH

    return stored
