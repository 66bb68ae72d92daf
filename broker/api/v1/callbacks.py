"""后端回调接口：接收进度、状态、错误与结果文件。"""

from __future__ import annotations

import asyncio
import logging
from tempfile import SpooledTemporaryFile

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from broker.api.v1.schemas import ErrorResponse
from broker.application.callbacks import CallbackHandler, CallbackQuery, CallbackTransport
from broker.application.container import get_callback_handler

router = APIRouter()
logger = logging.getLogger(__name__)

# 超过该大小的回调文件落盘暂存，避免占用内存。
SPOOL_MAX_MEMORY_BYTES = 8 * 1024 * 1024


def _handler() -> CallbackHandler:
    return get_callback_handler()


@router.post(
    "/service/{request_id}/response",
    response_class=PlainTextResponse,
    responses={code: {"model": ErrorResponse} for code in (400, 404, 409, 500)},
)
async def service_response(
    request_id: str,
    request: Request,
    handler: CallbackHandler = Depends(_handler),
) -> Response:
    """处理后端回调；成功返回纯文本 Ok，失败返回 `{code, message}`。"""
    query = CallbackQuery.from_query_params(dict(request.query_params))
    headers = {key.lower(): value for key, value in request.headers.items()}

    with SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY_BYTES) as body:
        size = 0
        async for chunk in request.stream():
            body.write(chunk)
            size += len(chunk)
        body.seek(0)
        if size and not headers.get("content-length"):
            # 分块传输没有声明长度时按实际接收字节数补齐。
            headers["content-length"] = str(size)

        transport = CallbackTransport(headers=headers, body=body)
        outcome = await asyncio.to_thread(handler.handle, request_id, query, transport)

    if outcome.status_code == 200:
        return PlainTextResponse(str(outcome.body))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
