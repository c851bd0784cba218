"""
Registration Manager：參加者對自己報名紀錄的所有動作

職責：
1. 報名 / 取消報名
2. 確認出席（round start 前）
3. 出發前往集合點、報到、確認見面

原則：
- 所有狀態變更經過 RegistrationStateMachine
- 每個動作先鎖定自己的 Registration（with_registration_lock）
- 通知在 commit 之後才送出，送出失敗不影響狀態
"""
from datetime import datetime
from typing import List, Optional, Tuple
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    EventLog,
    Participant,
    Registration,
    RegistrationStatus,
    Round,
)
from core.locks import with_registration_lock, with_round_lock
from core.state_machine import (
    CHECKED_IN,
    CONFIRMED_OR_LATER,
    PENDING_CONFIRMATION,
    RegistrationStateMachine,
)
from core.exceptions import (
    AlreadyRegistered,
    InvalidCheckinCode,
    InvalidStateTransition,
    ParticipantNotFound,
    PartnerNotReady,
    RegistrationClosed,
    RegistrationNotFound,
    RoundFull,
    RoundNotFound,
    TooLateToCancel,
    WindowClosed,
)
from services.naming_service import normalize_checkin_code
from services.notification_service import (
    Notification,
    NotificationDispatcher,
    build_confirmation_notification,
    get_dispatcher,
)
from services.round_timing_service import (
    resolve_now,
    has_round_ended,
    has_round_started,
    is_registration_open,
)
from database import transactional

logger = logging.getLogger(__name__)


class RegistrationManager:
    """參加者動作管理器"""

    @staticmethod
    def get_round(db: Session, round_id: str) -> Round:
        round_obj = db.get(Round, round_id)
        if not round_obj:
            raise RoundNotFound(round_id)
        return round_obj

    @staticmethod
    def get_registration(db: Session, participant_id: str, round_id: str) -> Registration:
        """
        取得 Registration（不鎖定）

        異常：
            RegistrationNotFound: 參加者沒有報名這個回合
        """
        registration = db.query(Registration).filter(
            Registration.participant_id == participant_id,
            Registration.round_id == round_id
        ).first()
        if not registration:
            raise RegistrationNotFound(participant_id, round_id)
        return registration

    @staticmethod
    def _get_locked_registration(db: Session, participant_id: str, round_id: str) -> Registration:
        registration = with_registration_lock(participant_id, round_id, db).first()
        if not registration:
            raise RegistrationNotFound(participant_id, round_id)
        return registration

    @staticmethod
    def _ensure_round_not_ended(db: Session, round_id: str, now: datetime) -> None:
        round_obj = RegistrationManager.get_round(db, round_id)
        if has_round_ended(round_obj, now):
            raise InvalidStateTransition(f"Round {round_id} has already ended")

    @staticmethod
    @transactional
    def register(
        db: Session,
        participant_id: str,
        round_id: str,
        team: Optional[str] = None,
        topics: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> Registration:
        """
        報名回合

        前置條件：
        1. 參加者、回合必須存在
        2. 目前時間早於 round start - safety window
        3. 尚未報名過
        4. 回合人數未滿（max_participants）

        參數：
            db: SQLAlchemy Session
            participant_id: 參加者 ID
            round_id: 回合 ID
            team: 團隊（選填）
            topics: 主題（選填）
            now: 目前時間（預設為系統時間）

        返回：
            新建立的 Registration（status = registered）

        異常：
            ParticipantNotFound / RoundNotFound
            RegistrationClosed: 已過報名截止時間
            AlreadyRegistered: 已經報名過
            RoundFull: 人數已滿
        """
        now = resolve_now(now)

        if not db.get(Participant, participant_id):
            raise ParticipantNotFound(participant_id)
        round_obj = with_round_lock(round_id, db).first()
        if not round_obj:
            raise RoundNotFound(round_id)

        if not is_registration_open(round_obj, now):
            raise RegistrationClosed(f"Registration for round {round_id} is closed")

        existing = db.query(Registration).filter(
            Registration.participant_id == participant_id,
            Registration.round_id == round_id
        ).first()
        if existing:
            raise AlreadyRegistered(
                f"Participant {participant_id} is already registered for round {round_id}"
            )

        if round_obj.max_participants is not None:
            count = db.query(Registration).filter(Registration.round_id == round_id).count()
            if count >= round_obj.max_participants:
                raise RoundFull(
                    f"Round {round_id} is full ({round_obj.max_participants} participants)"
                )

        registration = Registration(
            participant_id=participant_id,
            session_id=round_obj.session_id,
            round_id=round_id,
            status=RegistrationStatus.REGISTERED,
            team=team,
            topics=sorted(set(topics or [])),
            registered_at=now,
            last_status_update=now,
        )
        db.add(registration)

        try:
            db.flush()
        except IntegrityError:
            # 同一參加者同時送出兩次報名，uniqueness constraint 擋下第二次
            raise AlreadyRegistered(
                f"Participant {participant_id} is already registered for round {round_id}"
            )

        db.add(EventLog(
            session_id=round_obj.session_id,
            round_id=round_id,
            participant_id=participant_id,
            event_type="PARTICIPANT_REGISTERED",
            data={"team": team, "topics": registration.topics},
        ))

        logger.info(f"Participant {participant_id} registered for round {round_id}")
        return registration

    @staticmethod
    @transactional
    def unregister(
        db: Session,
        participant_id: str,
        round_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """
        取消報名（刪除 Registration）

        前置條件：
        1. 狀態是 registered / waiting-for-attendance-confirmation
        2. 目前時間早於 round start - safety window

        異常：
            RegistrationNotFound
            TooLateToCancel: 已過取消截止時間
            InvalidStateTransition: 已確認出席（或之後的狀態）
        """
        now = resolve_now(now)

        registration = RegistrationManager._get_locked_registration(db, participant_id, round_id)
        round_obj = RegistrationManager.get_round(db, round_id)

        if not is_registration_open(round_obj, now):
            raise TooLateToCancel(
                "It is too late to cancel this registration; the round is about to start"
            )

        if registration.status not in PENDING_CONFIRMATION:
            raise InvalidStateTransition(
                f"Cannot unregister in status {registration.status.value}"
            )

        db.add(EventLog(
            session_id=registration.session_id,
            round_id=round_id,
            participant_id=participant_id,
            event_type="PARTICIPANT_UNREGISTERED",
            data={},
        ))
        db.delete(registration)

        logger.info(f"Participant {participant_id} unregistered from round {round_id}")

    @staticmethod
    def confirm_attendance(
        db: Session,
        participant_id: str,
        round_id: str,
        now: Optional[datetime] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> Registration:
        """
        確認出席

        流程：
        1. 在 transaction 內轉換狀態（registered -> confirmed）
        2. commit 之後送出確認通知（fire-and-forget）

        重複確認（已經是 confirmed 或之後的狀態）直接返回，不再通知

        異常：
            RegistrationNotFound / RoundNotFound
            WindowClosed: 回合已開始
            InvalidStateTransition: 狀態是 unconfirmed
        """
        registration, notification = RegistrationManager._confirm_attendance(
            db, participant_id, round_id, resolve_now(now)
        )
        if notification is not None:
            (dispatcher or get_dispatcher()).dispatch([notification])
        return registration

    @staticmethod
    @transactional
    def _confirm_attendance(
        db: Session,
        participant_id: str,
        round_id: str,
        now: datetime,
    ) -> Tuple[Registration, Optional[Notification]]:
        registration = RegistrationManager._get_locked_registration(db, participant_id, round_id)
        round_obj = RegistrationManager.get_round(db, round_id)

        if registration.status in CONFIRMED_OR_LATER:
            logger.info(
                f"Participant {participant_id} already in status "
                f"{registration.status.value} for round {round_id}"
            )
            return registration, None

        if has_round_started(round_obj, now):
            raise WindowClosed(
                "This round has already started. You can no longer confirm attendance."
            )

        RegistrationStateMachine.transition(db, registration, RegistrationStatus.CONFIRMED, now)
        registration.confirmed_at = now

        return registration, build_confirmation_notification(registration)

    @staticmethod
    @transactional
    def mark_on_my_way(
        db: Session,
        participant_id: str,
        round_id: str,
        now: Optional[datetime] = None,
    ) -> Registration:
        """
        出發前往集合點（matched -> walking-to-meeting-point）

        異常：
            RegistrationNotFound
            InvalidStateTransition: 還沒配對，或已經報到，或回合已結束
        """
        now = resolve_now(now)
        registration = RegistrationManager._get_locked_registration(db, participant_id, round_id)
        RegistrationManager._ensure_round_not_ended(db, round_id, now)
        RegistrationStateMachine.transition(
            db, registration, RegistrationStatus.WALKING_TO_MEETING_POINT, now
        )
        return registration

    @staticmethod
    @transactional
    def check_in(
        db: Session,
        participant_id: str,
        round_id: str,
        code: str,
        now: Optional[datetime] = None,
    ) -> Registration:
        """
        在集合點報到（-> waiting-for-meet-confirmation）

        前置條件：
        1. 狀態是 matched 或 walking-to-meeting-point
        2. 代碼與分配到的集合點相符（忽略大小寫、空白）

        異常：
            RegistrationNotFound
            InvalidStateTransition: 狀態不允許報到，或回合已結束
            InvalidCheckinCode: 代碼不符（狀態不變）
        """
        now = resolve_now(now)
        registration = RegistrationManager._get_locked_registration(db, participant_id, round_id)
        RegistrationManager._ensure_round_not_ended(db, round_id, now)

        allowed = {RegistrationStatus.MATCHED, RegistrationStatus.WALKING_TO_MEETING_POINT}
        if registration.status not in allowed:
            raise InvalidStateTransition(
                f"Cannot check in from status {registration.status.value}"
            )

        meeting_point = registration.meeting_point
        if meeting_point is None or (
            normalize_checkin_code(code) != normalize_checkin_code(meeting_point.checkin_code)
        ):
            logger.info(f"Invalid check-in code from participant {participant_id} in round {round_id}")
            raise InvalidCheckinCode("The code does not match your meeting point")

        RegistrationStateMachine.transition(
            db, registration, RegistrationStatus.WAITING_FOR_MEET_CONFIRMATION, now
        )
        registration.checked_in_at = now
        return registration

    @staticmethod
    @transactional
    def confirm_meeting(
        db: Session,
        participant_id: str,
        round_id: str,
        now: Optional[datetime] = None,
    ) -> Registration:
        """
        確認已經和夥伴見面（waiting-for-meet-confirmation -> met）

        前置條件：
        - 同組至少還有一位夥伴已經報到（waiting-for-meet-confirmation 或 met）

        重複確認（已經是 met）直接返回

        異常：
            RegistrationNotFound
            InvalidStateTransition: 自己還沒報到
            PartnerNotReady: 夥伴都還沒報到
        """
        now = resolve_now(now)
        registration = RegistrationManager._get_locked_registration(db, participant_id, round_id)

        if registration.status == RegistrationStatus.MET:
            return registration

        if registration.status != RegistrationStatus.WAITING_FOR_MEET_CONFIRMATION:
            raise InvalidStateTransition(
                f"Cannot confirm meeting from status {registration.status.value}"
            )

        partners = db.query(Registration).filter(
            Registration.match_id == registration.match_id,
            Registration.participant_id != participant_id
        ).all()

        if not any(p.status in CHECKED_IN for p in partners):
            raise PartnerNotReady("Your partner has not checked in at the meeting point yet")

        RegistrationStateMachine.transition(db, registration, RegistrationStatus.MET, now)
        registration.met_at = now
        return registration
