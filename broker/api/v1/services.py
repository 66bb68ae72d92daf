"""服务查询接口：列出已配置后端，查询集合是否可处理。"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from broker.api.v1.schemas import CollectionSupportResponse, ServiceResponse
from broker.application.container import get_service_registry
from broker.domain.services.registry import ServiceRegistry

router = APIRouter()


def _registry() -> ServiceRegistry:
    return get_service_registry()


@router.get("/services", response_model=list[ServiceResponse])
def list_services(registry: ServiceRegistry = Depends(_registry)) -> list[ServiceResponse]:
    return [ServiceResponse(**item) for item in registry.list_descriptors()]


@router.get("/collections/{collection_id}/supported", response_model=CollectionSupportResponse)
def collection_supported(
    collection_id: str,
    registry: ServiceRegistry = Depends(_registry),
) -> CollectionSupportResponse:
    """集合至少被一个后端声明时返回 true。"""
    return CollectionSupportResponse(
        collection_id=collection_id,
        supported=registry.is_collection_supported(collection_id),
    )
