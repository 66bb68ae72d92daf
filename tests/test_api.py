"""HTTP 接口测试：回调端点、作业查询、服务查询与作业提交。"""

from __future__ import annotations

from collections.abc import Iterator
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from broker.api.v1 import callbacks as callbacks_api
from broker.api.v1 import jobs as jobs_api
from broker.api.v1 import services as services_api
from broker.application.callbacks import CallbackHandler
from broker.application.dispatch import DispatchService
from broker.domain.enums import BackendKind
from broker.domain.job import STAGING_LOCATION_REL, Job, JobLink
from broker.domain.models import ServiceCapabilities, ServiceDescriptor
from broker.domain.services.registry import ServiceRegistry
from broker.domain.services.router import ServiceRouter
from broker.infra.storage.object_store import LocalObjectStore, ObjectStoreFactory
from broker.main import app

REGISTRY = ServiceRegistry(
    [
        ServiceDescriptor(
            name="tiff-subsetter",
            kind=BackendKind.http,
            collections=frozenset({"C-1"}),
            capabilities=ServiceCapabilities(variable_subsetting=True, output_formats=("image/tiff",)),
        )
    ]
)


@pytest.fixture
def object_stores(settings) -> ObjectStoreFactory:
    return ObjectStoreFactory(settings)


@pytest.fixture
def enqueued() -> list[str]:
    return []


@pytest.fixture
def client(settings, repository, object_stores, enqueued) -> Iterator[TestClient]:
    handler = CallbackHandler(repository=repository, object_stores=object_stores)

    def enqueue(job_id: str) -> SimpleNamespace:
        enqueued.append(job_id)
        return SimpleNamespace(id=f"task-{job_id}")

    dispatcher = DispatchService(
        settings=settings,
        router=ServiceRouter(REGISTRY),
        repository=repository,
        object_stores=object_stores,
        enqueue=enqueue,
    )
    app.dependency_overrides[callbacks_api._handler] = lambda: handler
    app.dependency_overrides[jobs_api._repository] = lambda: repository
    app.dependency_overrides[jobs_api._dispatcher] = lambda: dispatcher
    app.dependency_overrides[services_api._registry] = lambda: REGISTRY
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create_job(repository, object_stores, *, is_async: bool = True) -> Job:
    job = Job(id="job-1", request_id="req-1", username="tester", is_async=is_async)
    job.add_link(JobLink(href=object_stores.staging_location("req-1"), rel=STAGING_LOCATION_REL))
    return repository.create_job(job, service_name="tiff-subsetter", operation_json={"request_id": "req-1", "sources": []})


def test_health(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-Id": "trace-1"})
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "trace-1"


def test_callback_redirect_returns_ok(client, repository, object_stores) -> None:
    job = _create_job(repository, object_stores)
    response = client.post("/service/req-1/response", params={"redirect": "s3://results/out.tif"})

    assert response.status_code == 200
    assert response.text == "Ok"
    stored = repository.get_job(job.id)
    assert stored is not None and stored.status.value == "successful"


def test_callback_item_query_params(client, repository, object_stores) -> None:
    job = _create_job(repository, object_stores)
    response = client.post(
        "/service/req-1/response",
        params={"item[href]": "s3://results/a.tif", "item[type]": "image/tiff", "progress": "60"},
    )
    assert response.status_code == 200
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.progress == 60
    assert stored.related_links("data")[0].type == "image/tiff"


def test_callback_unknown_job_returns_404(client) -> None:
    response = client.post("/service/missing/response", params={"progress": "10"})
    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "could not find a job with the given ID"}


def test_callback_invalid_progress_returns_400(client, repository, object_stores) -> None:
    _create_job(repository, object_stores)
    response = client.post("/service/req-1/response", params={"progress": "abc"})
    assert response.status_code == 400
    assert response.json()["code"] == 400


def test_callback_body_is_staged_for_sync_job(client, repository, object_stores) -> None:
    """同步作业通过请求体上传结果后即完成。"""
    job = _create_job(repository, object_stores, is_async=False)
    response = client.post(
        "/service/req-1/response",
        content=b"granule-bytes",
        headers={"Content-Type": "application/x-netcdf4", "Content-Disposition": 'attachment; filename="g.nc"'},
    )

    assert response.status_code == 200
    stored = repository.get_job(job.id)
    assert stored is not None and stored.status.value == "successful"
    link = stored.related_links("data")[0]
    assert link.type == "application/x-netcdf4"
    assert LocalObjectStore.path_for(link.href).read_bytes() == b"granule-bytes"


def test_get_job_detail(client, repository, object_stores) -> None:
    job = _create_job(repository, object_stores)
    response = client.get(f"/api/v1/jobs/{job.id}")
    assert response.status_code == 200
    payload = response.json()
    assert payload["request_id"] == "req-1"
    assert payload["status"] == "accepted"
    assert payload["links"][0]["rel"] == STAGING_LOCATION_REL

    assert client.get("/api/v1/jobs/absent").status_code == 404


def test_services_endpoints(client) -> None:
    services = client.get("/api/v1/services").json()
    assert [item["name"] for item in services] == ["tiff-subsetter"]
    assert services[0]["kind"] == "http"

    assert client.get("/api/v1/collections/C-1/supported").json() == {"collection_id": "C-1", "supported": True}
    assert client.get("/api/v1/collections/C-9/supported").json()["supported"] is False


def test_create_job_enqueues_matched_service(client, enqueued) -> None:
    response = client.post(
        "/api/v1/jobs",
        json={"sources": [{"collection": "C-1", "variables": ["red_var"]}], "requested_mime_types": ["image/*"]},
    )
    assert response.status_code == 201
    payload = response.json()
    assert payload["status"] == "accepted"
    assert enqueued == [payload["job_id"]]


def test_create_job_without_backend_completes_with_reason(client, enqueued) -> None:
    response = client.post("/api/v1/jobs", json={"sources": [{"collection": "C-404"}]})
    assert response.status_code == 201
    payload = response.json()
    assert payload["status"] == "successful"
    assert payload["message"] == "no services are configured for the collection"
    assert enqueued == []


def test_create_job_requires_sources(client) -> None:
    assert client.post("/api/v1/jobs", json={"sources": []}).status_code == 422
