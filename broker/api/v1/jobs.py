"""作业接口：提交操作、查询作业状态与订阅事件流。"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from broker.api.v1.schemas import JobCreateRequest, JobDetailResponse
from broker.application.container import get_dispatch_service, get_repository
from broker.application.dispatch import DispatchService
from broker.domain.job import Job
from broker.domain.models import RoutingContext
from broker.infra.db.repository import JobRepository

router = APIRouter()
logger = logging.getLogger(__name__)


def _repository() -> JobRepository:
    return get_repository()


def _dispatcher() -> DispatchService:
    return get_dispatch_service()


def _require_job(repository: JobRepository, job_id: str) -> Job:
    job = repository.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"job not found: {job_id}")
    return job


@router.post("/jobs", response_model=JobDetailResponse, status_code=status.HTTP_201_CREATED)
def create_job(
    payload: JobCreateRequest,
    dispatcher: DispatchService = Depends(_dispatcher),
) -> JobDetailResponse:
    """路由操作并创建作业；没有可用后端时作业直接以诊断信息完成。"""
    logger.info(
        "create_job requested",
        extra={
            "event": "job.create.requested",
            "payload_preview": {"sources": len(payload.sources), "requested": payload.requested_mime_types},
        },
    )
    context = RoutingContext(requested_mime_types=tuple(payload.requested_mime_types))
    job = dispatcher.dispatch(payload.to_operation(), context, username=payload.username, is_async=payload.is_async)
    return JobDetailResponse.from_job(job)


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
def get_job(job_id: str, repository: JobRepository = Depends(_repository)) -> JobDetailResponse:
    """查询作业详情。"""
    return JobDetailResponse.from_job(_require_job(repository, job_id))


@router.get("/jobs/{job_id}/events")
async def job_events(
    request: Request,
    job_id: str,
    repository: JobRepository = Depends(_repository),
) -> StreamingResponse:
    """通过 SSE 推送作业事件，作业终态后结束连接。"""
    await asyncio.to_thread(_require_job, repository, job_id)

    async def event_stream() -> Any:
        last_id = 0
        idle_ticks = 0
        while True:
            if await request.is_disconnected():
                break
            events = await asyncio.to_thread(repository.list_events, job_id, last_id, 200)
            idle_ticks = 0 if events else idle_ticks + 1
            for event in events:
                last_id = max(last_id, event.id)
                payload = {
                    "job_id": event.job_id,
                    "status": event.status,
                    "source": event.source,
                    "event_type": event.event_type,
                    "message": event.message,
                    "payload": event.payload,
                    "created_at": event.created_at.isoformat() if event.created_at else None,
                }
                yield f"event: {event.event_type}\n"
                yield f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
            if not events:
                yield ": keep-alive\n\n"

            job = await asyncio.to_thread(repository.get_job, job_id)
            # 终态后再空轮询一次，覆盖最后一条事件晚于状态写入的情况。
            if job is None or (job.is_complete() and idle_ticks >= 1):
                break
            await asyncio.sleep(1)

    return StreamingResponse(event_stream(), media_type="text/event-stream")
