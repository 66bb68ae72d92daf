"""服务路由器：按集合、变量子集与输出格式三个阶段筛选后端服务。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from broker.domain.enums import BackendKind
from broker.domain.mime import is_mime_type_accepted
from broker.domain.models import Operation, RoutingContext, ServiceCapabilities, ServiceDescriptor
from broker.domain.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)

NO_SERVICE_FOR_COLLECTION = "no services are configured for the collection"
NO_VARIABLE_SUBSETTING = "none of the services configured for the collection support variable subsetting"
NO_FORMAT_PREFIX = "none of the services configured for the collection support reformatting to any of the requested formats"
NO_COMBINATION_PREFIX = (
    "none of the services support the combination of both variable subsetting and any of the requested formats"
)


def build_no_op_descriptor(message: str) -> ServiceDescriptor:
    """构造携带诊断信息的 no-op 服务描述。"""
    return ServiceDescriptor(
        name="noOp",
        kind=BackendKind.no_op,
        capabilities=ServiceCapabilities(output_formats=("application/json",)),
        message=message,
    )


@dataclass(slots=True, frozen=True)
class StageResult:
    """单个筛选阶段的结果：候选服务，或失败原因。"""
    matches: tuple[ServiceDescriptor, ...] = ()
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None


def _requested_formats_label(operation: Operation, context: RoutingContext) -> str:
    return operation.output_format or ",".join(context.requested_mime_types)


def services_for_format(fmt: str, descriptors: Sequence[ServiceDescriptor]) -> list[ServiceDescriptor]:
    """返回声明格式中存在被 fmt 接受项的服务。"""
    return [
        descriptor
        for descriptor in descriptors
        if any(is_mime_type_accepted(candidate, fmt) for candidate in descriptor.capabilities.output_formats)
    ]


def select_format(
    operation: Operation,
    context: RoutingContext,
    descriptors: Sequence[ServiceDescriptor],
) -> str | None:
    """确定输出格式：已指定则沿用，否则按请求顺序取第一个可满足的具体格式。"""
    if operation.output_format:
        return operation.output_format
    for mime_type in context.requested_mime_types:
        services = services_for_format(mime_type, descriptors)
        if not services:
            continue
        # 通配请求（如 image/*）需要落到首个服务声明的具体格式上。
        for candidate in services[0].capabilities.output_formats:
            if is_mime_type_accepted(candidate, mime_type):
                return candidate
    return None


def filter_collection_matches(operation: Operation, descriptors: Sequence[ServiceDescriptor]) -> StageResult:
    matches = tuple(
        descriptor
        for descriptor in descriptors
        if all(descriptor.supports_collection(source.collection) for source in operation.sources)
    )
    if not matches:
        return StageResult(reason=NO_SERVICE_FOR_COLLECTION)
    return StageResult(matches=matches)


def filter_variable_subsetting_matches(operation: Operation, descriptors: Sequence[ServiceDescriptor]) -> StageResult:
    if operation.requires_variable_subsetting:
        matches = tuple(descriptor for descriptor in descriptors if descriptor.capabilities.variable_subsetting)
    else:
        matches = tuple(descriptors)
    if not matches:
        return StageResult(reason=NO_VARIABLE_SUBSETTING)
    return StageResult(matches=matches)


def filter_output_format_matches(
    operation: Operation,
    context: RoutingContext,
    descriptors: Sequence[ServiceDescriptor],
) -> StageResult:
    """按输出格式筛选；解析出的格式会回写到 operation.output_format。"""
    if operation.output_format or context.requested_mime_types:
        matches: tuple[ServiceDescriptor, ...] = ()
        output_format = select_format(operation, context, descriptors)
        if output_format:
            operation.output_format = output_format
            matches = tuple(services_for_format(output_format, descriptors))
    else:
        matches = tuple(descriptors)
    if not matches:
        return StageResult(reason=f"{NO_FORMAT_PREFIX} [{_requested_formats_label(operation, context)}]")
    return StageResult(matches=matches)


class ServiceRouter:
    """服务路由器；任何阶段失败都回退为 no-op 服务而不是抛错。"""
    def __init__(self, registry: ServiceRegistry) -> None:
        self._registry = registry

    def select(
        self,
        operation: Operation,
        context: RoutingContext,
        descriptors: Sequence[ServiceDescriptor] | None = None,
    ) -> tuple[ServiceDescriptor, Operation]:
        """选择服务；descriptors 用于覆盖注册中心内容（测试隔离）。"""
        configs = self._registry.all() if descriptors is None else tuple(descriptors)
        result = self._run_stages(operation, context, configs)
        if result.ok:
            selected = result.matches[0]
            logger.info(
                "service selected",
                extra={
                    "event": "service.router.selected",
                    "payload_preview": {"service": selected.name, "output_format": operation.output_format},
                },
            )
            return selected, operation

        reason = self._unsupported_combination_message(operation, context, configs, result.reason or "")
        logger.warning(
            "no service matched operation, fallback to noOp",
            extra={"event": "service.router.fallback", "payload_preview": {"reason": reason}},
        )
        return build_no_op_descriptor(reason), operation

    @staticmethod
    def _run_stages(
        operation: Operation,
        context: RoutingContext,
        configs: Sequence[ServiceDescriptor],
    ) -> StageResult:
        collection = filter_collection_matches(operation, configs)
        if not collection.ok:
            return collection
        subsetting = filter_variable_subsetting_matches(operation, collection.matches)
        if not subsetting.ok:
            return subsetting
        return filter_output_format_matches(operation, context, subsetting.matches)

    @staticmethod
    def _unsupported_combination_message(
        operation: Operation,
        context: RoutingContext,
        configs: Sequence[ServiceDescriptor],
        stage_reason: str,
    ) -> str:
        """格式阶段失败且需要变量子集时，检查是否是两者组合导致无服务可用。"""
        if not stage_reason.startswith(NO_FORMAT_PREFIX) or not operation.requires_variable_subsetting:
            return stage_reason
        collection = filter_collection_matches(operation, configs)
        if not collection.ok:
            return stage_reason
        output_format = select_format(operation, context, collection.matches)
        if output_format and services_for_format(output_format, collection.matches):
            return f"{NO_COMBINATION_PREFIX} [{_requested_formats_label(operation, context)}]"
        return stage_reason
