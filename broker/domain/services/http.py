"""HTTP 服务：将操作以 JSON 形式投递给远端后端。"""

from __future__ import annotations

import logging
import time

import httpx

from broker.domain.services.base import BaseService, InvocationResult

logger = logging.getLogger(__name__)


class HttpService(BaseService):
    """通过 HTTP POST 调用远端后端，结果经回调异步返回。"""
    default_timeout_seconds: float = 30.0

    def invoke(self) -> InvocationResult:
        url = str(self._param("url"))
        started = time.perf_counter()
        try:
            timeout = float(
                self.descriptor.params.get("timeout_seconds")
                or self.request_timeout_seconds
                or self.default_timeout_seconds
            )
            response = httpx.post(url, json=self.operation.to_dict(), timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.warning(
                "http backend invocation failed",
                extra={
                    "event": "service.invoke.failed",
                    "external_service": self.name,
                    "op": f"POST {url}",
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "http backend invoked",
            extra={
                "event": "service.invoke.succeeded",
                "external_service": self.name,
                "op": f"POST {url}",
                "duration_ms": duration_ms,
                "status_code": response.status_code,
            },
        )
        return InvocationResult(accepted=True, details={"status_code": response.status_code})
