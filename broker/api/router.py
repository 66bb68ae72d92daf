"""API 总路由：业务接口挂在 api_prefix 下，后端回调接口挂在根路径。"""

from __future__ import annotations

from fastapi import APIRouter

from broker.api.v1.callbacks import router as callbacks_router
from broker.api.v1.jobs import router as jobs_router
from broker.api.v1.services import router as services_router
from broker.config import get_settings

settings = get_settings()

api_router = APIRouter(prefix=settings.api_prefix)
api_router.include_router(jobs_router, tags=["jobs"])
api_router.include_router(services_router, tags=["services"])

# 回调地址由 callback_base_url 拼出，不带 api_prefix。
callback_router = APIRouter()
callback_router.include_router(callbacks_router, tags=["callbacks"])
