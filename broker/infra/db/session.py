"""数据库会话管理：创建引擎与会话工厂，启动时建表。"""

from __future__ import annotations

import logging
import time

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from broker.config import get_settings
from broker.infra.db.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """按连接串构建引擎；SQLite 需允许跨线程使用（回调在工作线程中处理）。"""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, pool_pre_ping=True, future=True, connect_args=connect_args)


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


def init_db(bind: Engine | None = None) -> None:
    """初始化数据库表结构。"""
    target = bind or engine
    started = time.perf_counter()
    logger.info("db init started", extra={"event": "db.init.started", "external_service": "database", "op": "create_all"})
    try:
        Base.metadata.create_all(bind=target)
    except Exception as exc:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.exception(
            "db init failed",
            extra={
                "event": "db.init.failed",
                "external_service": "database",
                "op": "create_all",
                "duration_ms": duration_ms,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.info(
        "db init succeeded",
        extra={
            "event": "db.init.succeeded",
            "external_service": "database",
            "op": "create_all",
            "duration_ms": duration_ms,
        },
    )
