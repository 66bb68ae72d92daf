"""服务注册中心：加载 services.yml，校验后以不可变描述列表对外提供。"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from broker.domain.enums import BackendKind
from broker.domain.models import ServiceCapabilities, ServiceDescriptor

logger = logging.getLogger(__name__)

ENV_PLACEHOLDER_RE = re.compile(r"\$\{(\w+)\}")


class ServiceConfigError(RuntimeError):
    """services.yml 不可读或内容非法，进程启动时即失败。"""


def resolve_env_placeholders(value: str, environ: Mapping[str, str] | None = None) -> str:
    """将 `${NAME}` 替换为环境变量值，未设置时替换为空串。"""
    env = os.environ if environ is None else environ
    return ENV_PLACEHOLDER_RE.sub(lambda match: env.get(match.group(1), ""), value)


class _SubsettingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    variable: bool = False


class _CapabilitiesConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    subsetting: _SubsettingConfig = Field(default_factory=_SubsettingConfig)
    output_formats: list[str] = Field(default_factory=list)


class _TypeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: BackendKind
    params: dict[str, Any] = Field(default_factory=dict)


class ServiceConfigEntry(BaseModel):
    """services.yml 单个条目的结构校验模型。"""
    model_config = ConfigDict(extra="allow")

    name: str
    type: _TypeConfig
    enabled: bool | str = True
    collections: list[str] = Field(default_factory=list)
    capabilities: _CapabilitiesConfig = Field(default_factory=_CapabilitiesConfig)

    @property
    def is_enabled(self) -> bool:
        return self.enabled is not False and str(self.enabled).lower() != "false"

    def to_descriptor(self) -> ServiceDescriptor:
        return ServiceDescriptor(
            name=self.name,
            kind=self.type.name,
            collections=frozenset(self.collections),
            capabilities=ServiceCapabilities(
                variable_subsetting=self.capabilities.subsetting.variable,
                output_formats=tuple(self.capabilities.output_formats),
            ),
            params=MappingProxyType(dict(self.type.params)),
        )


def _build_loader(environ: Mapping[str, str] | None) -> type[yaml.SafeLoader]:
    """构造带 `!Env` 标签的 SafeLoader 子类，避免污染全局 Loader。"""

    class _EnvLoader(yaml.SafeLoader):
        pass

    def _construct_env(loader: yaml.SafeLoader, node: yaml.Node) -> str:
        return resolve_env_placeholders(str(loader.construct_scalar(node)), environ)

    _EnvLoader.add_constructor("!Env", _construct_env)
    return _EnvLoader


def parse_service_configs(raw: str, environ: Mapping[str, str] | None = None) -> list[ServiceDescriptor]:
    """解析 YAML 文本，过滤禁用条目并转换为描述对象。"""
    try:
        document = yaml.load(raw, Loader=_build_loader(environ))  # noqa: S506 - SafeLoader subclass
    except yaml.YAMLError as exc:
        raise ServiceConfigError(f"invalid services config: {exc}") from exc
    if document is None:
        return []
    if not isinstance(document, list):
        raise ServiceConfigError("services config must be a list of service entries")

    descriptors: list[ServiceDescriptor] = []
    for index, item in enumerate(document):
        try:
            entry = ServiceConfigEntry.model_validate(item)
        except PydanticValidationError as exc:
            raise ServiceConfigError(f"invalid service entry #{index}: {exc}") from exc
        if not entry.is_enabled:
            logger.debug(
                "service config disabled",
                extra={"event": "service.config.disabled", "payload_preview": {"name": entry.name}},
            )
            continue
        descriptors.append(entry.to_descriptor())
    return descriptors


class ServiceRegistry:
    """服务注册中心，持有加载后不可变的服务描述列表。"""
    def __init__(self, descriptors: Iterable[ServiceDescriptor]) -> None:
        self._descriptors: tuple[ServiceDescriptor, ...] = tuple(descriptors)

    def all(self) -> tuple[ServiceDescriptor, ...]:
        """返回全部服务描述，顺序即声明顺序。"""
        return self._descriptors

    def get(self, name: str) -> ServiceDescriptor:
        """按服务名获取描述。"""
        for descriptor in self._descriptors:
            if descriptor.name == name:
                return descriptor
        raise KeyError(f"unknown service: {name}")

    def is_collection_supported(self, collection_id: str) -> bool:
        """判断集合是否至少有一个可用后端。"""
        return any(descriptor.supports_collection(collection_id) for descriptor in self._descriptors)

    def list_descriptors(self) -> list[dict[str, Any]]:
        return [descriptor.describe() for descriptor in self._descriptors]


def load_service_registry(path: Path, environ: Mapping[str, str] | None = None) -> ServiceRegistry:
    """从配置文件加载注册中心；文件缺失或非法时抛出 ServiceConfigError。"""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.exception(
            "service config unreadable",
            extra={"event": "service.config.failed", "op": str(path), "error_type": type(exc).__name__, "error": str(exc)},
        )
        raise ServiceConfigError(f"unable to read services config {path}: {exc}") from exc
    registry = ServiceRegistry(parse_service_configs(raw, environ))
    logger.info(
        "service config loaded",
        extra={
            "event": "service.config.loaded",
            "op": str(path),
            "payload_preview": [descriptor.name for descriptor in registry.all()],
        },
    )
    return registry
