"""异步任务定义：调用后端服务，连接类错误按退避策略重试。"""

from __future__ import annotations

import logging

import httpx

from broker.application.container import get_service_invoker
from broker.infra.logging.context import bind_log_context
from broker.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

MAX_RETRIES = 2


@celery_app.task(bind=True, name="broker.worker.tasks.invoke_service_task")
def invoke_service_task(self, job_id: str) -> None:
    """调用作业对应的后端；重试耗尽后将作业置为 failed。"""
    with bind_log_context(job_id=job_id, task_id=self.request.id):
        logger.info(
            "worker task started",
            extra={"event": "job.task.started", "retry": self.request.retries},
        )
        invoker = get_service_invoker()
        try:
            invoker.run(job_id)
        except httpx.TransportError as exc:
            if self.request.retries >= MAX_RETRIES:
                logger.error(
                    "worker task gave up after retries",
                    extra={
                        "event": "job.task.exhausted",
                        "retry": self.request.retries,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                invoker.mark_failed(job_id, f"backend unreachable: {exc}")
                return
            countdown = 30 if self.request.retries == 0 else 120
            logger.warning(
                "worker task transient network error",
                extra={
                    "event": "job.task.retrying",
                    "retry": self.request.retries,
                    "op": "invoker.run",
                    "payload_preview": {"countdown": countdown},
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise self.retry(exc=exc, max_retries=MAX_RETRIES, countdown=countdown)
        except Exception as exc:
            logger.exception(
                "worker task failed",
                extra={"event": "job.task.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise
        logger.info("worker task finished", extra={"event": "job.task.succeeded"})
