"""
Round Manager：回合的自動狀態轉換與配對

職責：
1. Status sweep：未確認出席 -> unconfirmed，回合結束 -> completed
2. 配對：T-0 之後由第一個取得配對鎖的請求執行，且只執行一次
3. 輪詢入口：任何 dashboard 讀取都可以推進回合狀態

沒有背景排程器：所有轉換都由請求觸發
（參加者動作、dashboard 輪詢、客戶端送出的 round started）。

並發：
- Sweep 是有 status 條件的覆寫，重複、同時執行結果都一樣，不需要鎖
- 配對需要互斥：配對鎖的 INSERT 決定誰執行，
  鎖、分組、Match、Registration 更新、摘要都在同一個 transaction 內
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
import logging
import random

from sqlalchemy.orm import Session

from models import (
    EventLog,
    Match,
    MatchMember,
    MatchingLock,
    NetworkingSession,
    Participant,
    Registration,
    RegistrationStatus,
    Round,
    SessionStatus,
)
from core.locks import (
    get_matching_lock,
    record_matching_summary,
    try_acquire_matching_lock,
)
from core.state_machine import (
    PENDING_CONFIRMATION,
    RegistrationStateMachine,
    statuses_allowing,
)
from core.exceptions import RoundEnded, RoundNotFound, RoundNotStarted, SessionNotFound
from services.history_service import build_meeting_history
from services.matching_service import choose_meeting_point, form_groups
from services.naming_service import partner_display_names
from services.notification_service import (
    Notification,
    NotificationDispatcher,
    build_match_notification,
    get_dispatcher,
)
from services.round_timing_service import (
    resolve_now,
    has_round_ended,
    has_round_started,
)
from services.scoring_service import Candidate, ScoringConfig, build_score_matrix
from database import transactional

logger = logging.getLogger(__name__)

NO_SHOW_REASON = "Did not confirm attendance before round start"
LEFTOVER_REASON = "Insufficient participants for a final group"
SOLO_REASON = "You were the only participant who confirmed attendance"


@dataclass
class SweepResult:
    unconfirmed_count: int = 0
    completed_count: int = 0


@dataclass
class MatchingOutcome:
    already_completed: bool
    match_count: int = 0
    unmatched_count: int = 0
    solo_participant: bool = False

    @classmethod
    def from_lock(cls, lock: MatchingLock) -> "MatchingOutcome":
        return cls(
            already_completed=True,
            match_count=lock.match_count,
            unmatched_count=lock.unmatched_count,
            solo_participant=lock.solo_participant,
        )


@dataclass
class RoundState:
    session_id: str
    round_id: str
    started: bool
    ended: bool
    matching_completed: bool
    status_counts: dict
    sweep: SweepResult
    matching: Optional[MatchingOutcome] = None


def _mark_no_shows(db: Session, round_id: str, now: datetime) -> int:
    """
    回合已開始但沒確認出席的人 -> unconfirmed

    批次 UPDATE，WHERE status IN (...) 讓重複執行成為 no-op
    """
    return db.query(Registration).filter(
        Registration.round_id == round_id,
        Registration.status.in_(sorted(PENDING_CONFIRMATION)),
    ).update(
        {
            Registration.status: RegistrationStatus.UNCONFIRMED,
            Registration.status_reason: NO_SHOW_REASON,
            Registration.last_status_update: now,
        },
        synchronize_session="fetch",
    )


def _mark_completed(db: Session, round_id: str, now: datetime) -> int:
    """回合已結束 -> completed（unconfirmed 除外）"""
    return db.query(Registration).filter(
        Registration.round_id == round_id,
        Registration.status.in_(sorted(statuses_allowing(RegistrationStatus.COMPLETED))),
    ).update(
        {
            Registration.status: RegistrationStatus.COMPLETED,
            Registration.last_status_update: now,
        },
        synchronize_session="fetch",
    )


class RoundManager:
    """回合自動轉換與配對管理器"""

    @staticmethod
    def get_round(db: Session, round_id: str, session_id: Optional[str] = None) -> Round:
        """
        取得回合

        異常：
            RoundNotFound: 回合不存在，或不屬於 session_id
        """
        round_obj = db.get(Round, round_id)
        if not round_obj or (session_id is not None and round_obj.session_id != session_id):
            raise RoundNotFound(round_id)
        return round_obj

    @staticmethod
    @transactional
    def run_status_sweep(db: Session, round_id: str, now: Optional[datetime] = None) -> SweepResult:
        """
        執行狀態 sweep（任何時間都可以呼叫，可重複）

        流程：
        1. now >= round start：registered -> unconfirmed（記錄原因）
        2. now >= round end：非 unconfirmed -> completed
        3. Session 所有回合都結束時，Session -> completed

        參數：
            db: SQLAlchemy Session
            round_id: 回合 ID
            now: 目前時間（預設為系統時間）

        返回：
            SweepResult（這次實際轉換的筆數，重複執行為 0）

        注意：
            - 失敗時整批 rollback，可以直接重試
        """
        now = resolve_now(now)
        round_obj = RoundManager.get_round(db, round_id)
        result = SweepResult()

        if has_round_started(round_obj, now):
            result.unconfirmed_count = _mark_no_shows(db, round_id, now)

        if has_round_ended(round_obj, now):
            result.completed_count = _mark_completed(db, round_id, now)
            RoundManager._refresh_session_status(db, round_obj.session_id, now)

        if result.unconfirmed_count or result.completed_count:
            db.add(EventLog(
                session_id=round_obj.session_id,
                round_id=round_id,
                event_type="STATUS_SWEEP",
                data={
                    "unconfirmed": result.unconfirmed_count,
                    "completed": result.completed_count,
                },
            ))
            logger.info(
                f"Status sweep for round {round_id}: "
                f"{result.unconfirmed_count} unconfirmed, {result.completed_count} completed"
            )

        return result

    @staticmethod
    def _refresh_session_status(db: Session, session_id: str, now: datetime) -> None:
        session = db.get(NetworkingSession, session_id)
        if not session or session.status != SessionStatus.PUBLISHED or not session.rounds:
            return
        if all(has_round_ended(r, now) for r in session.rounds):
            session.status = SessionStatus.COMPLETED
            logger.info(f"Session {session_id} completed (all rounds ended)")

    @staticmethod
    def trigger_matching(
        db: Session,
        session_id: str,
        round_id: str,
        now: Optional[datetime] = None,
        rng: Optional[random.Random] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> MatchingOutcome:
        """
        觸發回合配對（可同時被多個請求呼叫，只有一個會真的執行）

        流程：
        1. 在 transaction 內取得配對鎖並執行配對
        2. commit 之後送出配對通知（fire-and-forget）

        返回：
            MatchingOutcome
            - already_completed=False：這個呼叫執行了配對
            - already_completed=True：已有其他呼叫處理過，不是錯誤，呼叫者不應重試

        異常：
            RoundNotFound: 回合不存在或不屬於 session
            RoundNotStarted: 還沒到 round start
            RoundEnded: 回合已結束（沒有配對的回合不會再配對）
        """
        outcome, notifications = RoundManager._run_matching(
            db, session_id, round_id, resolve_now(now), rng or random.Random()
        )
        if notifications:
            (dispatcher or get_dispatcher()).dispatch(notifications)
        return outcome

    @staticmethod
    @transactional
    def _run_matching(
        db: Session,
        session_id: str,
        round_id: str,
        now: datetime,
        rng: random.Random,
    ) -> Tuple[MatchingOutcome, List[Notification]]:
        round_obj = RoundManager.get_round(db, round_id, session_id)
        session = db.get(NetworkingSession, session_id)
        if not session:
            raise SessionNotFound(session_id)

        if not has_round_started(round_obj, now):
            raise RoundNotStarted(f"Round {round_id} has not started yet")

        # 1. 快速路徑：鎖已存在就不嘗試寫入
        existing = get_matching_lock(session_id, round_id, db)
        if existing:
            return MatchingOutcome.from_lock(existing), []

        if has_round_ended(round_obj, now):
            raise RoundEnded(f"Round {round_id} has already ended")

        # 2. 取得鎖（uniqueness constraint 決定誰贏）
        if not try_acquire_matching_lock(session_id, round_id, now, db):
            lock = get_matching_lock(session_id, round_id, db)
            if lock is not None:
                return MatchingOutcome.from_lock(lock), []
            return MatchingOutcome(already_completed=True), []

        lock = get_matching_lock(session_id, round_id, db)
        logger.info(f"Matching start: session={session_id}, round={round_id}, group_size={round_obj.group_size}")

        # 3. 沒確認出席的人先標成 unconfirmed
        no_shows = _mark_no_shows(db, round_id, now)
        if no_shows:
            logger.info(f"Marked {no_shows} registrations unconfirmed before matching")

        # 4. 已確認的人，依確認時間排序（同分時的先後順序）
        confirmed = (
            db.query(Registration)
            .filter(
                Registration.round_id == round_id,
                Registration.status == RegistrationStatus.CONFIRMED,
            )
            .order_by(Registration.confirmed_at, Registration.id)
            .all()
        )
        logger.info(f"Confirmed participants: {len(confirmed)}")

        # 5. 分組
        candidates = [
            Candidate(
                participant_id=r.participant_id,
                team=r.team,
                topics=frozenset(r.topics or []),
            )
            for r in confirmed
        ]
        history = build_meeting_history(session_id, db)
        config = ScoringConfig(
            matching_mode=session.matching_mode,
            teams_enabled=session.teams_enabled,
            topics_enabled=session.topics_enabled,
        )
        scores = build_score_matrix(candidates, history, config)
        grouping = form_groups(candidates, round_obj.group_size, scores, round_obj.max_groups)

        # 6. 寫入 Match、更新成員 Registration
        by_participant = {r.participant_id: r for r in confirmed}
        notifications = []
        for group in grouping.groups:
            members = [by_participant[c.participant_id] for c in group]
            match = RoundManager._persist_group(db, round_obj, members, now, rng)
            for member in members:
                notification = build_match_notification(member)
                if notification is not None:
                    notifications.append(notification)
            logger.info(f"Created match {match.id} with {len(members)} members")

        # 7. 剩下的人（不足一組）-> unconfirmed
        leftover_reason = SOLO_REASON if len(confirmed) == 1 else LEFTOVER_REASON
        for candidate in grouping.leftover:
            registration = by_participant[candidate.participant_id]
            RegistrationStateMachine.transition(
                db, registration, RegistrationStatus.UNCONFIRMED, now, reason=leftover_reason
            )

        solo = len(grouping.leftover) == 1
        if grouping.leftover:
            logger.info(f"Unmatched participants: {len(grouping.leftover)}")

        # 8. 摘要（只有鎖的擁有者會寫）
        record_matching_summary(
            lock,
            completed_at=now,
            match_count=len(grouping.groups),
            unmatched_count=len(grouping.leftover),
            solo_participant=solo,
        )

        db.add(EventLog(
            session_id=session_id,
            round_id=round_id,
            event_type="MATCHING_COMPLETED",
            data={
                "match_count": len(grouping.groups),
                "unmatched_count": len(grouping.leftover),
                "solo_participant": solo,
            },
        ))
        logger.info(f"Matching complete: {len(grouping.groups)} matches, {len(grouping.leftover)} unmatched")

        outcome = MatchingOutcome(
            already_completed=False,
            match_count=len(grouping.groups),
            unmatched_count=len(grouping.leftover),
            solo_participant=solo,
        )
        return outcome, notifications

    @staticmethod
    def _persist_group(
        db: Session,
        round_obj: Round,
        members: List[Registration],
        now: datetime,
        rng: random.Random,
    ) -> Match:
        """
        寫入一組配對

        Match、MatchMember、所有成員的 Registration 在同一個 transaction 內；
        中途失敗會整個 rollback（包含配對鎖），不會有一半成員 matched 的狀況
        """
        meeting_point = choose_meeting_point(round_obj.meeting_points, rng)

        match = Match(
            session_id=round_obj.session_id,
            round_id=round_obj.id,
            meeting_point=meeting_point,
            created_at=now,
        )
        db.add(match)
        db.flush()  # 取得 match.id

        participants = [db.get(Participant, m.participant_id) for m in members]

        for position, registration in enumerate(members):
            db.add(MatchMember(
                match_id=match.id,
                session_id=round_obj.session_id,
                participant_id=registration.participant_id,
                position=position,
            ))

            RegistrationStateMachine.transition(db, registration, RegistrationStatus.MATCHED, now)
            registration.match_id = match.id
            registration.meeting_point = meeting_point
            registration.partner_names = partner_display_names(participants, registration.participant_id)
            registration.matched_at = now

        db.flush()
        return match

    @staticmethod
    def get_round_state(
        db: Session,
        session_id: str,
        round_id: str,
        now: Optional[datetime] = None,
        rng: Optional[random.Random] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> RoundState:
        """
        輪詢入口：推進回合狀態並返回摘要

        流程：
        1. 執行 sweep
        2. 回合進行中（已開始、未結束）且尚未配對 -> 觸發配對
        3. 統計各狀態人數

        任何 dashboard 讀取都可以呼叫，重複呼叫安全
        """
        now = resolve_now(now)
        round_obj = RoundManager.get_round(db, round_id, session_id)
        started = has_round_started(round_obj, now)
        ended = has_round_ended(round_obj, now)

        sweep = RoundManager.run_status_sweep(db, round_id, now=now)

        matching = None
        if started and not ended and not get_matching_lock(session_id, round_id, db):
            matching = RoundManager.trigger_matching(
                db, session_id, round_id, now=now, rng=rng, dispatcher=dispatcher
            )

        lock = get_matching_lock(session_id, round_id, db)
        return RoundState(
            session_id=session_id,
            round_id=round_id,
            started=started,
            ended=ended,
            matching_completed=lock is not None,
            status_counts=RoundManager.count_statuses(db, round_id),
            sweep=sweep,
            matching=matching,
        )

    @staticmethod
    def count_statuses(db: Session, round_id: str) -> dict:
        rows = db.query(Registration.status).filter(Registration.round_id == round_id).all()
        counts: dict = {}
        for (status,) in rows:
            counts[status.value] = counts.get(status.value, 0) + 1
        return counts

    @staticmethod
    def get_matches(db: Session, round_id: str) -> List[Match]:
        return (
            db.query(Match)
            .filter(Match.round_id == round_id)
            .order_by(Match.created_at, Match.id)
            .all()
        )
