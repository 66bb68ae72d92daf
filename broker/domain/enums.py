"""领域枚举定义：统一作业状态、后端类型和事件来源取值。"""

from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    """作业生命周期状态枚举。"""
    accepted = "accepted"
    running = "running"
    successful = "successful"
    failed = "failed"
    canceled = "canceled"
    paused = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.successful, JobStatus.failed, JobStatus.canceled})


class BackendKind(str, Enum):
    """后端执行方式枚举，对应 services.yml 中的 `type.name`。"""
    docker = "docker"
    http = "http"
    no_op = "noOp"


class EventSource(str, Enum):
    """事件来源枚举。"""
    api = "api"
    worker = "worker"
    backend = "backend"
