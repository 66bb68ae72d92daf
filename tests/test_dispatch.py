"""派发与调用测试：作业创建、入队、no-op 直接完成，以及 worker 侧的调用失败处理。"""

from __future__ import annotations

from types import MappingProxyType, SimpleNamespace

import httpx
import pytest

from broker.application.dispatch import DispatchService
from broker.application.invoker import ServiceInvoker
from broker.domain.enums import BackendKind, JobStatus
from broker.domain.job import STAGING_LOCATION_REL
from broker.domain.models import Operation, OperationSource, RoutingContext, ServiceCapabilities, ServiceDescriptor
from broker.domain.services import http as http_module
from broker.domain.services.registry import ServiceRegistry
from broker.domain.services.router import ServiceRouter
from broker.infra.storage.object_store import ObjectStoreFactory

HTTP_SERVICE = ServiceDescriptor(
    name="csv-service",
    kind=BackendKind.http,
    collections=frozenset({"C-1"}),
    capabilities=ServiceCapabilities(output_formats=("text/csv",)),
    params=MappingProxyType({"url": "http://backend.test/invoke"}),
)


@pytest.fixture
def registry() -> ServiceRegistry:
    return ServiceRegistry([HTTP_SERVICE])


@pytest.fixture
def enqueued() -> list[str]:
    return []


@pytest.fixture
def dispatcher(settings, repository, registry, enqueued) -> DispatchService:
    def enqueue(job_id: str) -> SimpleNamespace:
        enqueued.append(job_id)
        return SimpleNamespace(id="task-1")

    return DispatchService(
        settings=settings,
        router=ServiceRouter(registry),
        repository=repository,
        object_stores=ObjectStoreFactory(settings),
        enqueue=enqueue,
    )


def _operation(collection: str = "C-1") -> Operation:
    return Operation(sources=[OperationSource(collection=collection)])


def test_dispatch_creates_job_and_enqueues(dispatcher, repository, enqueued) -> None:
    operation = _operation()
    job = dispatcher.dispatch(operation, RoutingContext(requested_mime_types=("text/*",)), username="alice")

    assert enqueued == [job.id]
    assert operation.callback == f"http://broker.test/service/{job.request_id}"
    assert operation.output_format == "text/csv"

    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.username == "alice"
    assert stored.status == JobStatus.accepted
    staging = stored.related_links(STAGING_LOCATION_REL)[0]
    assert staging.href.endswith(f"/staging/{job.request_id}/")

    service_name, operation_json = repository.get_dispatch_record(job.id)
    assert service_name == "csv-service"
    assert operation_json["output_format"] == "text/csv"
    assert [event.event_type for event in repository.list_events(job.id)] == ["job.created", "job.enqueued"]


def test_dispatch_uses_default_username(dispatcher, repository) -> None:
    job = dispatcher.dispatch(_operation(), RoutingContext())
    assert job.username == "tester"


def test_staging_location_uses_bucket_when_configured(settings) -> None:
    settings.staging_bucket = "staging-bucket"
    assert ObjectStoreFactory(settings).staging_location("req-9") == "s3://staging-bucket/public/req-9/"


def test_unroutable_operation_completes_without_enqueue(dispatcher, repository, enqueued) -> None:
    """没有后端可用时作业以诊断信息直接完成，不进入队列。"""
    job = dispatcher.dispatch(_operation("C-404"), RoutingContext())

    assert enqueued == []
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.successful
    assert stored.message == "no services are configured for the collection"
    events = [event.event_type for event in repository.list_events(job.id)]
    assert events == ["job.created", "service.router.fallback"]


def test_invoker_calls_backend(dispatcher, repository, registry, monkeypatch) -> None:
    calls: list[dict] = []

    def fake_post(url, json, timeout):
        calls.append(json)
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setattr(http_module.httpx, "post", fake_post)
    job = dispatcher.dispatch(_operation(), RoutingContext())
    result = ServiceInvoker(repository=repository, registry=registry).run(job.id)

    assert result is not None and result.accepted is True
    assert calls[0]["request_id"] == job.request_id
    assert repository.get_job(job.id).status == JobStatus.accepted


def test_invoker_applies_configured_request_timeout(dispatcher, repository, registry, monkeypatch) -> None:
    """服务未声明 timeout_seconds 时使用配置的全局后端超时。"""
    timeouts: list[float] = []

    def fake_post(url, json, timeout):
        timeouts.append(timeout)
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setattr(http_module.httpx, "post", fake_post)
    job = dispatcher.dispatch(_operation(), RoutingContext())
    ServiceInvoker(repository=repository, registry=registry, request_timeout_seconds=7).run(job.id)

    assert timeouts == [7.0]


def test_invoker_fails_job_on_backend_rejection(dispatcher, repository, registry, monkeypatch) -> None:
    def fake_post(url, json, timeout):
        return httpx.Response(500, request=httpx.Request("POST", url))

    monkeypatch.setattr(http_module.httpx, "post", fake_post)
    job = dispatcher.dispatch(_operation(), RoutingContext())
    ServiceInvoker(repository=repository, registry=registry).run(job.id)

    stored = repository.get_job(job.id)
    assert stored.status == JobStatus.failed
    assert "500" in (stored.message or "")


def test_invoker_propagates_transport_errors(dispatcher, repository, registry, monkeypatch) -> None:
    """连接错误交给任务层重试，作业状态保持不变。"""
    def fake_post(url, json, timeout):
        raise httpx.ConnectError("refused", request=httpx.Request("POST", url))

    monkeypatch.setattr(http_module.httpx, "post", fake_post)
    job = dispatcher.dispatch(_operation(), RoutingContext())
    invoker = ServiceInvoker(repository=repository, registry=registry)

    with pytest.raises(httpx.ConnectError):
        invoker.run(job.id)
    assert repository.get_job(job.id).status == JobStatus.accepted

    invoker.mark_failed(job.id, "backend unreachable")
    assert repository.get_job(job.id).status == JobStatus.failed


def test_invoker_does_not_overwrite_finished_job(dispatcher, repository, registry, monkeypatch) -> None:
    def fake_post(url, json, timeout):
        return httpx.Response(503, request=httpx.Request("POST", url))

    monkeypatch.setattr(http_module.httpx, "post", fake_post)
    job = dispatcher.dispatch(_operation(), RoutingContext())
    with repository.transaction() as txn:
        loaded = txn.load_for_update(job.request_id)
        loaded.succeed()
        txn.save(loaded)

    ServiceInvoker(repository=repository, registry=registry).run(job.id)
    assert repository.get_job(job.id).status == JobStatus.successful


def test_invoker_fails_job_when_service_removed(dispatcher, repository) -> None:
    job = dispatcher.dispatch(_operation(), RoutingContext())
    with pytest.raises(ValueError):
        ServiceInvoker(repository=repository, registry=ServiceRegistry([])).run(job.id)
    assert repository.get_job(job.id).status == JobStatus.failed
