from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./speed_networking.db"

    # 回合時間以主辦方當地時間記錄（date + start_time）
    timezone: str = "Europe/Bratislava"

    confirmation_window_minutes: int = 5
    safety_window_minutes: int = 6
    default_group_size: int = 2

    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    # 測試用：允許 X-Test-Time header 覆寫目前時間
    allow_test_time_header: bool = False

    log_level: str = "INFO"

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()


def configure_sqlite(engine: Engine) -> None:
    """
    讓 SQLite 的 transaction 以 BEGIN IMMEDIATE 開始

    原因：
        - pysqlite 預設的 deferred transaction 在多個寫入者同時升級鎖時
          會直接丟出 "database is locked"
        - BEGIN IMMEDIATE 一開始就取得寫入鎖，其他連線會在 busy timeout 內排隊
        - 關掉 pysqlite 自己的 transaction 管理後 SAVEPOINT 才能正常運作
          （try_acquire_matching_lock 依賴 SAVEPOINT）

    其他資料庫（PostgreSQL）不需要這個設定，靠 unique constraint 和 FOR UPDATE 即可
    """
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(database_url: str) -> Engine:
    """
    建立 Engine

    SQLite 需要特殊設定：
        - check_same_thread=False：FastAPI 的多執行緒環境需要
        - timeout：等待其他連線釋放寫入鎖的秒數
    """
    is_sqlite = database_url.startswith("sqlite")
    new_engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
        pool_pre_ping=True
    )
    if is_sqlite:
        configure_sqlite(new_engine)
    return new_engine


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            # 所有 DB 操作都在一個 transaction 內
            registration.status = RegistrationStatus.CONFIRMED
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層處理）

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit（decorator 會處理）
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        # 找出 db session（可能在 args 或 kwargs）
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
