"""日志初始化：JSON 行格式、队列异步写入，以及按模块或作业放行 DEBUG。"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from broker.config import Settings
from broker.infra.logging.context import LOG_CONTEXT_KEYS, get_log_context

SERVICE_NAME = "data-service-broker"

# 仅作为结构化字段透出的 extra 键，其余 extra 不进入日志行。
_FIELD_KEYS = ("event", "external_service", "op", "backend_kind", "error_type")
_NUMERIC_KEYS = ("duration_ms", "status_code", "progress", "retry")

_listener: QueueListener | None = None

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s,;\"]+"), r"\1***"),
    (re.compile(r"(?i)(aws_secret_access_key\s*[:=]\s*)[^\s,;\"]+"), r"\1***"),
    (re.compile(r"(?i)(x-amz-security-token=)[^&\s\"]+"), r"\1***"),
    (re.compile(r"(?i)(x-amz-signature=)[^&\s\"]+"), r"\1***"),
    (re.compile(r"(?i)(password\s*[:=]\s*)[^\s,;\"]+"), r"\1***"),
)


def redact_text(value: str | None, mode: str) -> str | None:
    """按模式脱敏：off 原样输出，basic 隐藏凭据，strict 额外隐藏查询串。"""
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    if mode == "strict":
        # 预签名地址的查询串整体隐藏。
        text = re.sub(r"(https?://[^\s?\"]+)\?[^\s\"]*", r"\1?***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """序列化、脱敏并截断 payload。"""
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


class DebugRoutingFilter(logging.Filter):
    """低于阈值的记录默认丢弃；指定模块或 job_id 的 DEBUG 记录放行。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_job_ids: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_modules = debug_modules
        self._debug_job_ids = debug_job_ids

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        name = record.name
        if any(name == module or name.startswith(f"{module}.") for module in self._debug_modules):
            return True
        job_id = getattr(record, "job_id", None) or get_log_context()["job_id"]
        return bool(job_id) and job_id in self._debug_job_ids


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 固化到 record 上，监听线程中读取不到调用方上下文。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


def _as_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class StructuredJsonFormatter(logging.Formatter):
    """输出一行一个 JSON 对象。"""

    def __init__(self, *, process_role: str, redaction_mode: str, payload_preview_chars: int) -> None:
        super().__init__()
        self._process_role = process_role
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "process_role": self._process_role,
            "module": record.name,
            "message": redact_text(record.getMessage(), self._redaction_mode),
        }
        for key in LOG_CONTEXT_KEYS:
            entry[key] = getattr(record, key, None) or ctx.get(key)
        for key in _FIELD_KEYS:
            entry[key] = getattr(record, key, None)
        for key in _NUMERIC_KEYS:
            entry[key] = _as_number(getattr(record, key, None))

        error_text = getattr(record, "error", None)
        if error_text is None and record.exc_info:
            error_text = self.formatException(record.exc_info)
        entry["error"] = redact_text(str(error_text), self._redaction_mode) if error_text is not None else None
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """安装队列日志：根 logger 只入队，监听线程写 JSONL 文件，ERROR 同时写 stderr。"""
    global _listener
    shutdown_logging()

    log_root = settings.log_dir if settings.log_dir.is_absolute() else (Path.cwd() / settings.log_dir).resolve()
    log_file = log_root / process_role / "broker.jsonl"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    queue_obj: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {"queue": {"class": "logging.handlers.QueueHandler", "queue": queue_obj}},
            "root": {"level": "DEBUG", "handlers": ["queue"]},
        }
    )
    queue_handler = next((h for h in logging.getLogger().handlers if isinstance(h, QueueHandler)), None)
    if queue_handler is None:
        raise RuntimeError("queue logging handler is not configured")
    queue_handler.addFilter(ContextInjectionFilter())
    queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=getattr(logging, settings.log_level.upper(), logging.INFO),
            debug_modules=set(settings.log_debug_modules_list()),
            debug_job_ids=set(settings.log_debug_job_ids_list()),
        )
    )

    formatter = StructuredJsonFormatter(
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    _listener = QueueListener(queue_obj, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()

    for noisy in ("uvicorn.access", "botocore", "boto3", "s3transfer", "urllib3", "httpx", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_file


def shutdown_logging() -> None:
    """停止监听线程并关闭文件句柄。"""
    global _listener
    if _listener is None:
        return
    listener, _listener = _listener, None
    listener.stop()
    for handler in listener.handlers:
        handler.close()
