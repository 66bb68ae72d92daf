"""派发服务：为操作选择后端、创建作业并投递调用任务。"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from broker.config import Settings
from broker.domain.enums import BackendKind, EventSource
from broker.domain.job import STAGING_LOCATION_REL, Job, JobLink
from broker.domain.models import Operation, RoutingContext
from broker.domain.services.factory import build_service
from broker.domain.services.router import ServiceRouter
from broker.infra.db.repository import JobRepository
from broker.infra.logging.context import bind_log_context
from broker.infra.storage.object_store import ObjectStoreFactory

logger = logging.getLogger(__name__)

Enqueue = Callable[[str], Any]


def _enqueue_invoke_task(job_id: str) -> Any:
    from broker.worker.tasks import invoke_service_task

    return invoke_service_task.delay(job_id)


class DispatchService:
    """操作派发入口。路由失败的操作直接以 no-op 结果完成，不进入队列。"""
    def __init__(
        self,
        *,
        settings: Settings,
        router: ServiceRouter,
        repository: JobRepository,
        object_stores: ObjectStoreFactory,
        enqueue: Enqueue | None = None,
    ) -> None:
        self._settings = settings
        self._router = router
        self._repository = repository
        self._object_stores = object_stores
        self._enqueue = enqueue or _enqueue_invoke_task

    def callback_url(self, request_id: str) -> str:
        """后端回调地址前缀，后端在其后追加 `/response`。"""
        return f"{self._settings.callback_base_url.rstrip('/')}/service/{request_id}"

    def dispatch(
        self,
        operation: Operation,
        context: RoutingContext,
        *,
        username: str | None = None,
        is_async: bool = True,
    ) -> Job:
        """路由并创建作业，返回持久化后的作业快照。"""
        request_id = operation.request_id or str(uuid4())
        operation.request_id = request_id
        operation.callback = self.callback_url(request_id)

        descriptor, operation = self._router.select(operation, context)
        service = build_service(descriptor, operation)
        job = Job(
            id=str(uuid4()),
            request_id=request_id,
            username=username or self._settings.default_username,
            is_async=is_async,
            message="The job is being processed",
        )
        job.add_link(JobLink(href=self._object_stores.staging_location(request_id), rel=STAGING_LOCATION_REL))

        with bind_log_context(request_id=request_id, job_id=job.id, backend=service.name):
            if descriptor.kind == BackendKind.no_op:
                result = service.invoke()
                job.succeed(result.message)
                self._repository.create_job(job, service_name=service.name, operation_json=operation.to_dict())
                self._repository.add_event(
                    job.id,
                    source=EventSource.api,
                    event_type="service.router.fallback",
                    status=job.status.value,
                    message=result.message,
                )
                logger.info(
                    "job completed without backend",
                    extra={"event": "job.dispatch.no_op", "payload_preview": {"reason": result.message}},
                )
                return job

            self._repository.create_job(job, service_name=service.name, operation_json=operation.to_dict())
            task = self._enqueue(job.id)
            task_id = getattr(task, "id", None)
            self._repository.add_event(
                job.id,
                source=EventSource.api,
                event_type="job.enqueued",
                status=job.status.value,
                message=task_id,
                payload={"task_id": task_id, "service": service.name},
            )
            logger.info(
                "job enqueued",
                extra={
                    "event": "job.dispatch.enqueued",
                    "backend_kind": descriptor.kind.value,
                    "payload_preview": {"task_id": task_id, "output_format": operation.output_format},
                },
            )
        return job
