"""No-op 服务：不调用任何后端，只把路由诊断信息带回调用方。"""

from __future__ import annotations

from broker.domain.services.base import BaseService, InvocationResult


class NoOpService(BaseService):
    """路由失败时使用的占位服务。"""

    def invoke(self) -> InvocationResult:
        return InvocationResult(accepted=False, message=self.message)
