"""
共用的 FastAPI dependencies
"""
from datetime import datetime
from typing import Optional
import logging

from fastapi import Header, HTTPException

from database import get_settings
from services.round_timing_service import as_utc, current_time

logger = logging.getLogger(__name__)


def get_now(x_test_time: Optional[str] = Header(default=None)) -> datetime:
    """
    目前時間

    設定 allow_test_time_header=True 時，可以用 X-Test-Time header（ISO 8601）
    覆寫目前時間，方便測試整個回合流程
    """
    if x_test_time and get_settings().allow_test_time_header:
        try:
            return as_utc(datetime.fromisoformat(x_test_time))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid X-Test-Time header")
    return current_time()
