"""依赖容器：单例化创建注册中心、仓储、对象存储与应用服务。"""

from __future__ import annotations

from functools import lru_cache

from broker.application.callbacks import CallbackHandler
from broker.application.dispatch import DispatchService
from broker.application.invoker import ServiceInvoker
from broker.application.locks import JobLockRegistry
from broker.config import get_settings
from broker.domain.services.registry import ServiceRegistry, load_service_registry
from broker.domain.services.router import ServiceRouter
from broker.infra.db.repository import JobRepository
from broker.infra.db.session import SessionLocal
from broker.infra.storage.object_store import ObjectStoreFactory


@lru_cache(maxsize=1)
def get_service_registry() -> ServiceRegistry:
    """加载服务配置；配置错误在首次调用时抛出 ServiceConfigError。"""
    return load_service_registry(get_settings().services_config_path)


@lru_cache(maxsize=1)
def get_service_router() -> ServiceRouter:
    return ServiceRouter(get_service_registry())


@lru_cache(maxsize=1)
def get_repository() -> JobRepository:
    return JobRepository(SessionLocal)


@lru_cache(maxsize=1)
def get_object_store_factory() -> ObjectStoreFactory:
    return ObjectStoreFactory(get_settings())


@lru_cache(maxsize=1)
def get_job_locks() -> JobLockRegistry:
    """进程内共享的作业锁表，所有回调必须使用同一实例。"""
    return JobLockRegistry()


@lru_cache(maxsize=1)
def get_callback_handler() -> CallbackHandler:
    return CallbackHandler(
        repository=get_repository(),
        object_stores=get_object_store_factory(),
        locks=get_job_locks(),
    )


@lru_cache(maxsize=1)
def get_dispatch_service() -> DispatchService:
    return DispatchService(
        settings=get_settings(),
        router=get_service_router(),
        repository=get_repository(),
        object_stores=get_object_store_factory(),
    )


@lru_cache(maxsize=1)
def get_service_invoker() -> ServiceInvoker:
    return ServiceInvoker(
        repository=get_repository(),
        registry=get_service_registry(),
        request_timeout_seconds=get_settings().backend_request_timeout_seconds,
    )


def shutdown_container_resources() -> None:
    """清理容器缓存，后续调用将重新构建实例。"""
    # 按依赖顺序清理。
    for provider in (
        get_service_invoker,
        get_dispatch_service,
        get_callback_handler,
        get_job_locks,
        get_object_store_factory,
        get_repository,
        get_service_router,
        get_service_registry,
    ):
        provider.cache_clear()
