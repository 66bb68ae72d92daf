"""服务工厂：按后端类型把服务描述映射为可调用的服务实例。"""

from __future__ import annotations

from typing import Mapping

from broker.domain.enums import BackendKind
from broker.domain.errors import NotFoundError
from broker.domain.models import Operation, RoutingContext, ServiceDescriptor
from broker.domain.services.base import BaseService
from broker.domain.services.http import HttpService
from broker.domain.services.local_docker import LocalDockerService
from broker.domain.services.no_op import NoOpService
from broker.domain.services.router import ServiceRouter

SERVICE_CLASSES: Mapping[BackendKind, type[BaseService]] = {
    BackendKind.docker: LocalDockerService,
    BackendKind.http: HttpService,
    BackendKind.no_op: NoOpService,
}


def build_service(
    descriptor: ServiceDescriptor,
    operation: Operation,
    service_classes: Mapping[BackendKind, type[BaseService]] = SERVICE_CLASSES,
    *,
    request_timeout_seconds: float | None = None,
) -> BaseService:
    """根据描述的 kind 构造服务实例；未知类型抛出 NotFoundError。

    `request_timeout_seconds` 是后端请求的全局默认超时，服务参数 `timeout_seconds` 优先。
    """
    service_class = service_classes.get(descriptor.kind)
    if service_class is None:
        raise NotFoundError(f'Could not find an appropriate service class for type "{descriptor.kind.value}"')
    return service_class(descriptor, operation, request_timeout_seconds=request_timeout_seconds)


def service_for_operation(router: ServiceRouter, operation: Operation, context: RoutingContext) -> BaseService:
    """路由并构造服务实例，operation 可能被回写 output_format。"""
    descriptor, operation = router.select(operation, context)
    return build_service(descriptor, operation)
