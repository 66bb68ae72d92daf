"""后端服务抽象基类：绑定服务描述与操作，约束调用接口。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from broker.domain.models import Operation, ServiceDescriptor


@dataclass(slots=True)
class InvocationResult:
    """一次后端调用的结果。异步服务通常只返回受理信息。"""
    accepted: bool
    message: str | None = None
    details: dict[str, Any] | None = None


class BaseService(ABC):
    """后端服务抽象基类，每个实例只服务一个操作。"""
    def __init__(
        self,
        descriptor: ServiceDescriptor,
        operation: Operation,
        *,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.operation = operation
        self.request_timeout_seconds = request_timeout_seconds

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def message(self) -> str | None:
        return self.descriptor.message

    @abstractmethod
    def invoke(self) -> InvocationResult:
        """调用后端执行操作。"""

    def _param(self, key: str) -> Any:
        """读取服务类型参数，缺失时视为配置错误。"""
        value = self.descriptor.params.get(key)
        if value in (None, ""):
            raise ValueError(f"service {self.name} is missing required parameter: {key}")
        return value
