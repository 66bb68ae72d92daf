"""领域数据结构定义：操作、路由上下文与服务描述等核心值对象。"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from broker.domain.enums import BackendKind


@dataclass(slots=True)
class OperationSource:
    """操作的一个数据源：集合 ID 与需要提取的变量。"""
    collection: str
    variables: list[str] = field(default_factory=list)

    @property
    def requires_variable_subsetting(self) -> bool:
        return bool(self.variables)


@dataclass(slots=True)
class Operation:
    """一次数据处理操作；路由器可能回写 output_format。"""
    sources: list[OperationSource]
    output_format: str | None = None
    request_id: str | None = None
    callback: str | None = None

    def __post_init__(self) -> None:
        if not self.sources:
            raise ValueError("operation requires at least one source")

    @property
    def requires_variable_subsetting(self) -> bool:
        return any(source.requires_variable_subsetting for source in self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "callback": self.callback,
            "output_format": self.output_format,
            "sources": [
                {"collection": source.collection, "variables": list(source.variables)}
                for source in self.sources
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Operation:
        return cls(
            sources=[
                OperationSource(collection=item["collection"], variables=list(item.get("variables") or []))
                for item in payload.get("sources") or []
            ],
            output_format=payload.get("output_format"),
            request_id=payload.get("request_id"),
            callback=payload.get("callback"),
        )


@dataclass(slots=True, frozen=True)
class RoutingContext:
    """路由附加上下文，不属于操作本身但影响服务选择。"""
    requested_mime_types: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ServiceCapabilities:
    """服务能力声明。output_formats 保持声明顺序，即偏好顺序。"""
    variable_subsetting: bool = False
    output_formats: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ServiceDescriptor:
    """后端服务描述对象，加载后不可变。"""
    name: str
    kind: BackendKind
    collections: frozenset[str] = frozenset()
    capabilities: ServiceCapabilities = ServiceCapabilities()
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    message: str | None = None

    def supports_collection(self, collection: str) -> bool:
        return collection in self.collections

    def describe(self) -> dict[str, Any]:
        """返回接口展示用的描述字典。"""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "collections": sorted(self.collections),
            "variable_subsetting": self.capabilities.variable_subsetting,
            "output_formats": list(self.capabilities.output_formats),
        }
