"""全局配置加载模块：从环境变量构建运行参数并提供缓存访问。"""

from __future__ import annotations

import errno
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """系统运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Data Service Broker"
    api_prefix: str = "/api/v1"
    environment: str = "dev"
    cors_allowed_origins: str = ""
    cors_allowed_methods: str = "GET,POST,OPTIONS"
    cors_allowed_headers: str = "Authorization,Content-Type,X-Request-Id"
    cors_allow_credentials: bool = False

    database_url: str = "sqlite:///./broker.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False

    data_root: Path = Field(default=Path("./data/broker"))
    services_config_path: Path = Field(default=Path("config/services.yml"))

    # Backends call back to `{callback_base_url}/service/{request_id}/response`.
    callback_base_url: str = "http://127.0.0.1:8000"
    staging_bucket: str | None = None
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    backend_request_timeout_seconds: int = 30
    default_username: str = "anonymous"

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_job_ids: str = ""
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2000
    log_max_bytes: int = 20 * 1024 * 1024
    log_backup_count: int = 5

    def cors_allowed_origins_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_origins)

    def cors_allowed_methods_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_methods)

    def cors_allowed_headers_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_headers)

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_job_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_ids)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，同时确保数据根目录可写。"""
    settings = Settings()
    # 相对路径统一按当前工作目录解析，避免不同启动方式下语义漂移。
    if not settings.data_root.is_absolute():
        settings.data_root = (Path.cwd() / settings.data_root).resolve()
    try:
        settings.data_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        if exc.errno not in {errno.EACCES, errno.EPERM, errno.EROFS}:
            raise
        # 容器只读或权限受限时回退到当前工作目录下的本地路径。
        fallback = (Path.cwd() / "data" / "broker").resolve()
        fallback.mkdir(parents=True, exist_ok=True)
        settings.data_root = fallback
    return settings
