"""回调处理测试：状态流转、请求体暂存、失败回滚与完成日志。"""

from __future__ import annotations

import io
import logging
from pathlib import Path

import pytest

from broker.application.callbacks import (
    CallbackHandler,
    CallbackItem,
    CallbackQuery,
    CallbackTransport,
)
from broker.config import Settings
from broker.domain.enums import JobStatus
from broker.domain.job import STAGING_LOCATION_REL, Job, JobLink
from broker.infra.db.repository import JobRepository
from broker.infra.storage.object_store import LocalObjectStore, ObjectStoreFactory


@pytest.fixture
def object_stores(settings: Settings) -> ObjectStoreFactory:
    return ObjectStoreFactory(settings)


@pytest.fixture
def handler(repository: JobRepository, object_stores: ObjectStoreFactory) -> CallbackHandler:
    return CallbackHandler(repository=repository, object_stores=object_stores)


def _create_job(
    repository: JobRepository,
    object_stores: ObjectStoreFactory,
    *,
    request_id: str = "req-1",
    is_async: bool = True,
    with_staging: bool = True,
) -> Job:
    job = Job(id=f"job-{request_id}", request_id=request_id, username="tester", is_async=is_async)
    if with_staging:
        job.add_link(JobLink(href=object_stores.staging_location(request_id), rel=STAGING_LOCATION_REL))
    repository.create_job(job, service_name="svc", operation_json={"request_id": request_id, "sources": []})
    return job


def _body(content: bytes, **headers: str) -> CallbackTransport:
    merged = {"content-length": str(len(content)), **headers}
    return CallbackTransport(headers=merged, body=io.BytesIO(content))


def _stored(repository: JobRepository, job: Job) -> Job:
    stored = repository.get_job(job.id)
    assert stored is not None
    return stored


def _event_types(repository: JobRepository, job: Job) -> list[str]:
    return [event.event_type for event in repository.list_events(job.id)]


def test_query_params_are_parsed() -> None:
    query = CallbackQuery.from_query_params(
        {
            "item[href]": "s3://bucket/out.tif",
            "item[bbox]": "1,2,3,4",
            "item[unknown]": "ignored",
            "progress": "20",
            "status": "",
            "other": "ignored",
        }
    )
    assert query.item == CallbackItem(href="s3://bucket/out.tif", bbox="1,2,3,4")
    assert query.progress == "20"
    assert query.status is None


def test_overrides_win_and_item_merges_field_wise() -> None:
    base = CallbackQuery(item=CallbackItem(title="out.txt", bbox="1,2,3,4"), status="running")
    merged = base.merged_with(CallbackQuery(item=CallbackItem(href="file:///tmp/out.txt"), status="successful"))
    assert merged.item == CallbackItem(href="file:///tmp/out.txt", title="out.txt", bbox="1,2,3,4")
    assert merged.status == "successful"


def test_redirect_completes_job(handler, repository, object_stores) -> None:
    """redirect 回调追加 data 链接并将作业置为成功。"""
    job = _create_job(repository, object_stores)
    outcome = handler.handle("req-1", CallbackQuery(redirect="s3://results/out.tif"), CallbackTransport())

    assert outcome.status_code == 200
    assert outcome.body == "Ok"
    stored = _stored(repository, job)
    assert stored.status == JobStatus.successful
    assert stored.progress == 100
    data_links = stored.related_links("data")
    assert [link.href for link in data_links] == ["s3://results/out.tif"]
    assert _event_types(repository, job) == ["job.created", "job.callback.applied"]


def test_item_and_progress_are_applied(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores)
    query = CallbackQuery(
        item=CallbackItem(href="s3://results/a.tif", bbox="10,20,30,40", temporal="2020-01-01T00:00:00Z,2020-01-02T00:00:00Z"),
        progress="40",
    )
    outcome = handler.handle("req-1", query, CallbackTransport())

    assert outcome.status_code == 200
    stored = _stored(repository, job)
    assert stored.status == JobStatus.accepted
    assert stored.progress == 40
    link = stored.related_links("data")[0]
    assert link.bbox == (10.0, 20.0, 30.0, 40.0)
    assert link.temporal is not None and link.temporal.start == "2020-01-01T00:00:00.000Z"


def test_error_takes_priority_over_status(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores)
    handler.handle("req-1", CallbackQuery(error="backend failed", status="successful"), CallbackTransport())
    stored = _stored(repository, job)
    assert stored.status == JobStatus.failed
    assert stored.message == "backend failed"


def test_sync_body_is_staged_and_completes_job(handler, repository, object_stores) -> None:
    """同步作业的文件回调在暂存后直接置为成功。"""
    job = _create_job(repository, object_stores, is_async=False)
    transport = _body(
        b"hello world",
        **{"content-type": "text/plain", "content-disposition": 'attachment; filename="out.txt"'},
    )
    outcome = handler.handle("req-1", CallbackQuery(), transport)

    assert outcome.status_code == 200
    stored = _stored(repository, job)
    assert stored.status == JobStatus.successful
    link = stored.related_links("data")[0]
    assert link.href == f"{object_stores.staging_location('req-1')}out.txt"
    assert link.type == "text/plain"
    assert LocalObjectStore.path_for(link.href).read_bytes() == b"hello world"


def test_async_body_is_staged_without_completing(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores, is_async=True)
    transport = _body(b"1,2\n", **{"content-type": "application/x-www-form-urlencoded"})
    outcome = handler.handle("req-1", CallbackQuery(item=CallbackItem(title="table.csv")), transport)

    assert outcome.status_code == 200
    stored = _stored(repository, job)
    assert stored.status == JobStatus.accepted
    link = stored.related_links("data")[0]
    assert link.href.endswith("/req-1/table.csv")
    assert link.title == "table.csv"
    # 表单默认类型不作为结果文件类型。
    assert link.type is None


def test_body_without_filename_is_rejected(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores, is_async=False)
    outcome = handler.handle("req-1", CallbackQuery(), _body(b"data", **{"content-type": "text/plain"}))

    assert outcome.status_code == 400
    assert outcome.body["code"] == 400
    stored = _stored(repository, job)
    assert stored.status == JobStatus.accepted
    assert stored.related_links("data") == []
    assert _event_types(repository, job) == ["job.created"]


def test_body_without_staging_location_is_server_error(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores, with_staging=False)
    transport = _body(b"data", **{"content-disposition": 'attachment; filename="a.bin"'})
    outcome = handler.handle("req-1", CallbackQuery(), transport)
    assert outcome.status_code == 500
    assert _stored(repository, job).links == []


def test_unknown_request_id_returns_not_found(handler, repository, object_stores) -> None:
    """未知 request id 返回 404，且不改动任何作业。"""
    job = _create_job(repository, object_stores)
    before = _stored(repository, job).serialize()

    outcome = handler.handle("missing", CallbackQuery(redirect="s3://results/out.tif"), CallbackTransport())

    assert outcome.status_code == 404
    assert outcome.body == {"code": 404, "message": "could not find a job with the given ID"}
    assert _stored(repository, job).serialize() == before


def test_validation_failure_rolls_back_partial_changes(handler, repository, object_stores) -> None:
    """状态非法时，之前已应用的链接与进度也一并回滚。"""
    job = _create_job(repository, object_stores)
    query = CallbackQuery(item=CallbackItem(href="s3://results/a.tif"), progress="30", status="bogus")
    outcome = handler.handle("req-1", query, CallbackTransport())

    assert outcome.status_code == 400
    stored = _stored(repository, job)
    assert stored.progress == 0
    assert stored.related_links("data") == []


def test_bad_bbox_is_validation_error(handler, repository, object_stores) -> None:
    _create_job(repository, object_stores)
    query = CallbackQuery(item=CallbackItem(href="s3://results/a.tif", bbox="1,2,3"))
    assert handler.handle("req-1", query, CallbackTransport()).status_code == 400


def test_callback_after_completion_is_conflict(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores)
    handler.handle("req-1", CallbackQuery(status="successful"), CallbackTransport())
    outcome = handler.handle("req-1", CallbackQuery(progress="10"), CallbackTransport())

    assert outcome.status_code == 409
    assert _stored(repository, job).progress == 100


def test_body_after_completion_keeps_delivered_file(handler, repository, object_stores) -> None:
    """终态作业的迟到文件回调返回 409，且不覆盖已交付的文件。"""
    job = _create_job(repository, object_stores, is_async=False)
    disposition = {"content-disposition": 'attachment; filename="a.bin"'}
    first = handler.handle("req-1", CallbackQuery(), _body(b"v1-delivered", **disposition))
    assert first.status_code == 200

    second = handler.handle("req-1", CallbackQuery(), _body(b"v2-late", **disposition))

    assert second.status_code == 409
    href = _stored(repository, job).related_links("data")[0].href
    assert LocalObjectStore.path_for(href).read_bytes() == b"v1-delivered"


def test_malformed_content_length_is_rejected(handler, repository, object_stores) -> None:
    job = _create_job(repository, object_stores, is_async=False)
    transport = CallbackTransport(
        headers={"content-length": "ten", "content-disposition": 'attachment; filename="a.bin"'},
        body=io.BytesIO(b"0123456789"),
    )

    outcome = handler.handle("req-1", CallbackQuery(), transport)

    assert outcome.status_code == 400
    assert outcome.body["message"] == "invalid content-length header: 'ten'"
    assert _stored(repository, job).status == JobStatus.accepted


class _FailingStore:
    def upload(self, stream, href, content_length=None, content_type=None):
        raise OSError("disk full")


class _FailingStoreFactory:
    def for_href(self, href: str) -> _FailingStore:
        return _FailingStore()


def test_storage_failure_is_server_error(repository, object_stores) -> None:
    job = _create_job(repository, object_stores, is_async=False)
    handler = CallbackHandler(repository=repository, object_stores=_FailingStoreFactory())
    transport = _body(b"data", **{"content-disposition": 'attachment; filename="a.bin"'})

    outcome = handler.handle("req-1", CallbackQuery(), transport)

    assert outcome.status_code == 500
    assert outcome.body == {"code": 500, "message": "disk full"}
    assert _stored(repository, job).status == JobStatus.accepted


def _completion_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [record for record in caplog.records if getattr(record, "event", None) == "job.completed"]


def test_completion_is_logged_once_for_terminal_job(handler, repository, object_stores, caplog) -> None:
    caplog.set_level(logging.INFO, logger="broker.application.callbacks")
    _create_job(repository, object_stores)

    handler.handle("req-1", CallbackQuery(progress="50"), CallbackTransport())
    assert _completion_records(caplog) == []

    handler.handle("req-1", CallbackQuery(redirect="s3://results/out.tif"), CallbackTransport())
    records = _completion_records(caplog)
    assert len(records) == 1
    record = records[0]
    assert record.duration_ms >= 0
    assert record.payload_preview["num_outputs"] == 1
    assert record.payload_preview["job"]["status"] == "successful"


def test_lock_is_released_after_callback(repository, object_stores, tmp_path: Path) -> None:
    from broker.application.locks import JobLockRegistry

    locks = JobLockRegistry()
    handler = CallbackHandler(repository=repository, object_stores=object_stores, locks=locks)
    _create_job(repository, object_stores)
    handler.handle("req-1", CallbackQuery(progress="5"), CallbackTransport())
    handler.handle("missing", CallbackQuery(progress="5"), CallbackTransport())
    assert locks.active_keys() == []
