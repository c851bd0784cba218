"""
通知服務：確認出席、配對結果通知

Fire-and-forget：
- 狀態轉換 commit 之後才送出
- 送出失敗只記 log，絕不 rollback 狀態、不往上拋
- 預設在背景執行緒送出，不阻塞請求
"""
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional
import logging

import httpx

from database import get_settings
from models import Registration

logger = logging.getLogger(__name__)

ATTENDANCE_CONFIRMED = "attendance-confirmed"
MATCH_ASSIGNED = "match-assigned"


@dataclass
class Notification:
    kind: str
    participant_id: str
    session_id: str
    round_id: str
    first_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationGateway:
    """外部通知管道（SMS / email provider）"""

    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingNotifier(NotificationGateway):
    """沒有設定外部管道時使用：只寫 log"""

    def send(self, notification: Notification) -> None:
        logger.info(
            "Notification %s for participant %s (round %s): %s",
            notification.kind,
            notification.participant_id,
            notification.round_id,
            notification.data
        )


class WebhookNotifier(NotificationGateway):
    """把通知 POST 到外部 webhook，由外部服務負責 SMS / email"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.url, json=asdict(notification))
            if resp.status_code >= 400:
                raise RuntimeError(f"Notification webhook error: HTTP {resp.status_code}")


class NotificationDispatcher:
    """
    送出通知，吞掉並記錄所有失敗

    參數：
        gateway: 實際送出的管道
        executor: 背景執行緒池；None 表示在呼叫者的執行緒內送出（測試用）
    """

    def __init__(self, gateway: NotificationGateway, executor: Optional[Executor] = None):
        self.gateway = gateway
        self.executor = executor

    def dispatch(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            if self.executor is not None:
                self.executor.submit(self._send_safely, notification)
            else:
                self._send_safely(notification)

    def _send_safely(self, notification: Notification) -> None:
        try:
            self.gateway.send(notification)
        except Exception as e:
            logger.warning(
                f"Failed to send {notification.kind} notification "
                f"to participant {notification.participant_id}: {e}",
                exc_info=True
            )


@lru_cache()
def get_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    if settings.notification_webhook_url:
        gateway = WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds
        )
    else:
        gateway = LoggingNotifier()
    return NotificationDispatcher(
        gateway,
        executor=ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")
    )


def _notification_for(registration: Registration, kind: str, data: Dict[str, Any]) -> Optional[Notification]:
    if not registration.notifications_enabled:
        return None
    participant = registration.participant
    return Notification(
        kind=kind,
        participant_id=registration.participant_id,
        session_id=registration.session_id,
        round_id=registration.round_id,
        first_name=participant.first_name if participant else "",
        email=participant.email if participant else None,
        phone=participant.phone if participant else None,
        data=data,
    )


def build_confirmation_notification(registration: Registration) -> Optional[Notification]:
    """確認出席成功的通知；參加者關閉通知時返回 None"""
    return _notification_for(registration, ATTENDANCE_CONFIRMED, {
        "round_name": registration.round.name if registration.round else "",
    })


def build_match_notification(registration: Registration) -> Optional[Notification]:
    """配對結果通知（集合點、夥伴名字）；參加者關閉通知時返回 None"""
    meeting_point = registration.meeting_point
    return _notification_for(registration, MATCH_ASSIGNED, {
        "match_id": registration.match_id,
        "meeting_point": meeting_point.name if meeting_point else None,
        "partners": list(registration.partner_names or []),
    })
