"""Celery 应用配置：队列路由、投递语义与 worker 关闭时的资源回收。"""

from __future__ import annotations

import logging
import sys

from celery import Celery
from celery.signals import worker_process_shutdown

from broker.application.container import shutdown_container_resources
from broker.config import get_settings
from broker.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()


def _is_worker_process() -> bool:
    return "worker" in " ".join(sys.argv[1:]).lower()


logger = logging.getLogger(__name__)
if _is_worker_process():
    configure_logging(settings, process_role="worker")

celery_app = Celery("broker", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    imports=("broker.worker.tasks",),
    task_default_queue="default",
    task_routes={"broker.worker.tasks.invoke_service_task": {"queue": "default"}},
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    task_track_started=True,
)

if settings.celery_task_always_eager:
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=True)

if _is_worker_process():
    logger.info(
        "celery app configured",
        extra={
            "event": "celery.config.loaded",
            "external_service": "redis",
            "op": "worker",
            "payload_preview": {"broker": settings.redis_url, "always_eager": settings.celery_task_always_eager},
        },
    )


@worker_process_shutdown.connect
def _shutdown_worker_resources(**_: object) -> None:
    shutdown_container_resources()
    shutdown_logging()
