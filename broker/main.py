"""FastAPI 应用入口：生命周期、请求 ID 中间件、异常转换与路由挂载。"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from broker.api.router import api_router, callback_router
from broker.application.container import get_service_registry, shutdown_container_resources
from broker.config import get_settings
from broker.domain.errors import BrokerError
from broker.infra.db.session import init_db
from broker.infra.logging.context import bind_log_context
from broker.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()
configure_logging(settings, process_role="api")
logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """启动时建表并加载服务配置，配置错误直接阻止启动；关闭时释放依赖。"""
    logger.info("api startup begin", extra={"event": "api.startup.started"})
    init_db()
    registry = get_service_registry()
    logger.info(
        "api startup ready",
        extra={"event": "api.startup.succeeded", "payload_preview": {"services": len(registry.all())}},
    )
    try:
        yield
    finally:
        logger.info("api shutdown begin", extra={"event": "api.shutdown.started"})
        shutdown_container_resources()
        shutdown_logging()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

if settings.cors_allowed_origins_list():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins_list(),
        allow_methods=settings.cors_allowed_methods_list(),
        allow_headers=settings.cors_allowed_headers_list(),
        allow_credentials=settings.cors_allow_credentials,
    )


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    """透传或生成 X-Request-Id，记录请求耗时并回写到响应头。"""
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    op = f"{request.method} {request.url.path}"
    started = time.perf_counter()
    with bind_log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "http request failed",
                extra={
                    "event": "http.request.failed",
                    "op": op,
                    "duration_ms": _elapsed_ms(started),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        logger.info(
            "http request completed",
            extra={
                "event": "http.request.completed",
                "op": op,
                "duration_ms": _elapsed_ms(started),
                "status_code": response.status_code,
            },
        )
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(BrokerError)
async def broker_error_handler(_request: Request, exc: BrokerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/healthz")
def healthz() -> dict[str, str]:
    """就绪探针：服务配置已加载即视为就绪。"""
    return {"status": "ok", "services": str(len(get_service_registry().all()))}


app.include_router(api_router)
app.include_router(callback_router)
