"""
回合時間服務：由 Round 的設定推算各個時間點

純計算邏輯，不寫資料庫。所有「依時間而變」的狀態
（是否開放報名、是否進入確認窗口、是否開始/結束）都從這裡推導，
每次讀取時重新計算，不依賴排程器。

時間軸（T = round start）：

    報名截止           確認窗口開啟      T-0（配對）       結束
  T - safety    ...   T - confirmation   T               T + duration
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from database import get_settings
from models import Round


def current_time() -> datetime:
    """目前時間（UTC，timezone-aware）"""
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """
    統一成 UTC（naive datetime 視為 UTC）

    SQLite 讀回來的 DateTime 會遺失 tzinfo，寫入和比較前先統一
    """
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    """呼叫者指定的時間（測試、X-Test-Time）或系統時間"""
    return as_utc(now) if now is not None else current_time()


def get_round_start(round_obj: Round, tz_name: Optional[str] = None) -> datetime:
    """
    回合開始時間

    Round 只存當地的 date + start_time，用設定的時區換算成 aware datetime

    範例：
        date=2026-03-14, start_time=18:00, timezone=Europe/Bratislava
        -> 2026-03-14 17:00 UTC
    """
    tz = ZoneInfo(tz_name or get_settings().timezone)
    return datetime.combine(round_obj.date, round_obj.start_time, tzinfo=tz)


def get_round_end(round_obj: Round, tz_name: Optional[str] = None) -> datetime:
    return get_round_start(round_obj, tz_name) + timedelta(minutes=round_obj.duration_minutes)


def get_confirmation_opens_at(round_obj: Round, tz_name: Optional[str] = None) -> datetime:
    """確認出席窗口開啟的時間（round start - confirmation window）"""
    window = round_obj.confirmation_window_minutes
    if window is None:
        window = get_settings().confirmation_window_minutes
    return get_round_start(round_obj, tz_name) - timedelta(minutes=window)


def get_registration_closes_at(round_obj: Round, tz_name: Optional[str] = None) -> datetime:
    """報名（及取消報名）截止時間（round start - safety window）"""
    safety = get_settings().safety_window_minutes
    return get_round_start(round_obj, tz_name) - timedelta(minutes=safety)


def is_registration_open(round_obj: Round, now: datetime) -> bool:
    return as_utc(now) < get_registration_closes_at(round_obj)


def is_confirmation_window_open(round_obj: Round, now: datetime) -> bool:
    """
    是否進入「等待確認出席」階段

    注意：確認本身在 round start 前任何時間都可以做，
    這個函式只決定要不要顯示 waiting-for-attendance-confirmation
    """
    now = as_utc(now)
    return get_confirmation_opens_at(round_obj) <= now < get_round_start(round_obj)


def has_round_started(round_obj: Round, now: datetime) -> bool:
    return as_utc(now) >= get_round_start(round_obj)


def has_round_ended(round_obj: Round, now: datetime) -> bool:
    return as_utc(now) >= get_round_end(round_obj)
