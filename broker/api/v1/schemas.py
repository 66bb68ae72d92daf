"""API 请求与响应数据模型。"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from broker.domain.job import Job
from broker.domain.models import Operation, OperationSource


class SourceRequest(BaseModel):
    collection: str = Field(min_length=1)
    variables: list[str] = Field(default_factory=list)


class JobCreateRequest(BaseModel):
    """提交操作的请求体。requested_mime_types 按偏好顺序排列。"""
    sources: list[SourceRequest] = Field(min_length=1)
    output_format: str | None = None
    requested_mime_types: list[str] = Field(default_factory=list)
    is_async: bool = True
    username: str | None = None

    def to_operation(self) -> Operation:
        return Operation(
            sources=[OperationSource(collection=item.collection, variables=list(item.variables)) for item in self.sources],
            output_format=self.output_format,
        )


class JobLinkResponse(BaseModel):
    href: str | None
    rel: str
    type: str | None = None
    title: str | None = None
    bbox: list[float] | None = None
    temporal: dict[str, str] | None = None


class JobDetailResponse(BaseModel):
    """作业详情接口响应模型。"""
    job_id: str
    request_id: str
    username: str
    status: str
    message: str | None
    progress: int
    is_async: bool
    links: list[JobLinkResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> JobDetailResponse:
        return cls(
            job_id=job.id,
            request_id=job.request_id,
            username=job.username,
            status=job.status.value,
            message=job.message,
            progress=job.progress,
            is_async=job.is_async,
            links=[JobLinkResponse(**link.to_dict()) for link in job.links],
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class ServiceResponse(BaseModel):
    """后端服务描述。"""
    name: str
    kind: str
    collections: list[str]
    variable_subsetting: bool
    output_formats: list[str]


class CollectionSupportResponse(BaseModel):
    collection_id: str
    supported: bool


class ErrorResponse(BaseModel):
    """回调失败响应体。"""
    code: int
    message: str
