"""日志上下文：基于 contextvars 透传 request/job/backend/task 标识。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Iterator

_UNSET = object()

LOG_CONTEXT_KEYS = ("request_id", "job_id", "backend", "task_id")

_vars: dict[str, ContextVar[str | None]] = {
    key: ContextVar(f"log_{key}", default=None) for key in LOG_CONTEXT_KEYS
}


def get_log_context() -> dict[str, str | None]:
    """返回当前协程/线程下的日志上下文字段。"""
    return {key: var.get() for key, var in _vars.items()}


@contextmanager
def bind_log_context(
    *,
    request_id: str | None | object = _UNSET,
    job_id: str | None | object = _UNSET,
    backend: str | None | object = _UNSET,
    task_id: str | None | object = _UNSET,
) -> Iterator[None]:
    """在上下文范围内绑定日志字段，退出时恢复原值。"""
    values = {"request_id": request_id, "job_id": job_id, "backend": backend, "task_id": task_id}
    tokens: list[tuple[ContextVar[Any], Token[Any]]] = []
    for key, value in values.items():
        if value is not _UNSET:
            var = _vars[key]
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
