"""调用执行器：在 worker 中按派发记录重建服务并调用后端。"""

from __future__ import annotations

import logging
import time

import httpx

from broker.domain.errors import ConflictError
from broker.domain.models import Operation
from broker.domain.services.base import InvocationResult
from broker.domain.services.factory import build_service
from broker.domain.services.registry import ServiceRegistry
from broker.infra.db.repository import JobRepository
from broker.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)


class ServiceInvoker:
    """执行一次后端调用。调用失败时将作业置为 failed，已终态的作业保持不变。

    连接类错误原样抛出，由任务层决定是否重试。
    """
    def __init__(
        self,
        *,
        repository: JobRepository,
        registry: ServiceRegistry,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._request_timeout_seconds = request_timeout_seconds

    def run(self, job_id: str) -> InvocationResult | None:
        service_name, operation_json = self._repository.get_dispatch_record(job_id)
        if not service_name or not operation_json:
            raise ValueError(f"job {job_id} has no dispatch record")
        operation = Operation.from_dict(operation_json)
        request_id = operation.request_id or ""

        with bind_log_context(request_id=request_id, job_id=job_id, backend=service_name):
            try:
                descriptor = self._registry.get(service_name)
            except KeyError as exc:
                self._fail(request_id, f"service {service_name} is no longer configured")
                raise ValueError(str(exc)) from exc

            service = build_service(descriptor, operation, request_timeout_seconds=self._request_timeout_seconds)
            started = time.perf_counter()
            try:
                result = service.invoke()
            except (ValueError, RuntimeError, httpx.HTTPStatusError) as exc:
                logger.exception(
                    "service invocation failed",
                    extra={
                        "event": "job.invoke.failed",
                        "backend_kind": descriptor.kind.value,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                self._fail(request_id, str(exc))
                return None

            logger.info(
                "service invoked",
                extra={
                    "event": "job.invoke.succeeded",
                    "backend_kind": descriptor.kind.value,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "payload_preview": {"accepted": result.accepted, "details": result.details},
                },
            )
            if not result.accepted:
                self._fail(request_id, result.message or f"service {service_name} rejected the operation")
            return result

    def _fail(self, request_id: str, message: str) -> None:
        try:
            self._repository.fail_job(request_id, message)
        except ConflictError:
            # 后端可能已先行回调并完成作业。
            logger.warning(
                "job already finished, failure not recorded",
                extra={"event": "job.invoke.fail_skipped", "payload_preview": {"message": message}},
            )

    def mark_failed(self, job_id: str, message: str) -> None:
        """重试耗尽后由任务层调用。"""
        job = self._repository.get_job(job_id)
        if job is None:
            raise KeyError(f"job not found: {job_id}")
        with bind_log_context(request_id=job.request_id, job_id=job_id):
            self._fail(job.request_id, message)
