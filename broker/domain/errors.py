"""业务异常定义：每类异常携带对外暴露的 HTTP 状态码。"""

from __future__ import annotations

from typing import Any


class BrokerError(Exception):
    """业务异常基类。"""
    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """转换为回调响应体 `{code, message}`。"""
        return {"code": self.status_code, "message": self.message}


class ValidationError(BrokerError):
    """回调参数或配置内容不合法。"""
    status_code = 400


class NotFoundError(BrokerError):
    """请求的作业或后端实现不存在。"""
    status_code = 404


class JobNotFoundError(NotFoundError):
    """按 request id 找不到作业。"""

    def __init__(self, request_id: str) -> None:
        super().__init__("could not find a job with the given ID")
        self.request_id = request_id


class ConflictError(BrokerError):
    """作业已处于终态，拒绝继续变更。"""
    status_code = 409


class ServerError(BrokerError):
    """存储、持久化等非预期失败。"""
    status_code = 500
