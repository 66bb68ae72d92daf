"""测试公共夹具：隔离运行目录，提供临时 SQLite 仓储与配置。"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# 必须在导入 broker 模块前设置，get_settings() 会缓存首次读取结果。
_RUN_ROOT = Path(tempfile.mkdtemp(prefix="broker-tests-"))
os.environ.setdefault("DATA_ROOT", str(_RUN_ROOT / "data"))
os.environ.setdefault("LOG_DIR", str(_RUN_ROOT / "logs"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_RUN_ROOT / 'broker.db'}")
os.environ.setdefault("SERVICES_CONFIG_PATH", str(Path(__file__).resolve().parents[1] / "config" / "services.yml"))
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")

from broker.config import Settings  # noqa: E402
from broker.infra.db.models import Base  # noqa: E402
from broker.infra.db.repository import JobRepository  # noqa: E402


@pytest.fixture
def session_factory(tmp_path: Path) -> sessionmaker[Session]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'repo.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, class_=Session)


@pytest.fixture
def repository(session_factory: sessionmaker[Session]) -> JobRepository:
    return JobRepository(session_factory)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_root=tmp_path / "data",
        staging_bucket=None,
        callback_base_url="http://broker.test",
        default_username="tester",
    )
