"""回调处理：在事务内加载作业、暂存回调文件并驱动作业状态机。"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, BinaryIO, Mapping

from broker.application.locks import JobLockRegistry
from broker.domain.errors import BrokerError, JobNotFoundError, ServerError, ValidationError
from broker.domain.job import DATA_REL, STAGING_LOCATION_REL, Job, ensure_utc, utcnow
from broker.infra.db.repository import JobRepository
from broker.infra.logging.context import bind_log_context
from broker.infra.storage.object_store import ObjectStoreFactory

logger = logging.getLogger(__name__)

FORM_URLENCODED = "application/x-www-form-urlencoded"
CONTENT_DISPOSITION_FILENAME_RE = re.compile(r'filename="([^"]+)"')
_ITEM_PARAM_RE = re.compile(r"^item\[(\w+)\]$")


@dataclass(slots=True)
class CallbackItem:
    """回调中的结果条目，字段均为原始字符串。"""
    href: str | None = None
    type: str | None = None
    rel: str | None = None
    title: str | None = None
    bbox: str | None = None
    temporal: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not None}


@dataclass(slots=True)
class CallbackQuery:
    """回调查询参数。"""
    item: CallbackItem | None = None
    error: str | None = None
    redirect: str | None = None
    status: str | None = None
    progress: str | None = None

    @classmethod
    def from_query_params(cls, params: Mapping[str, str]) -> CallbackQuery:
        """解析 `item[href]=...&status=...` 形式的查询参数，空值视为缺省。"""
        item_values: dict[str, str] = {}
        values: dict[str, str] = {}
        item_fields = {item.name for item in fields(CallbackItem)}
        for key, value in params.items():
            if value is None or value == "":
                continue
            match = _ITEM_PARAM_RE.match(key)
            if match:
                if match.group(1) in item_fields:
                    item_values[match.group(1)] = value
            elif key in {"error", "redirect", "status", "progress"}:
                values[key] = value
        return cls(item=CallbackItem(**item_values) if item_values else None, **values)

    def merged_with(self, overrides: CallbackQuery) -> CallbackQuery:
        """合并覆盖字段：覆盖值优先，item 按字段逐个合并。"""
        item = self.item
        if overrides.item is not None:
            base = self.item.to_dict() if self.item else {}
            item = CallbackItem(**{**base, **overrides.item.to_dict()})
        return CallbackQuery(
            item=item,
            error=overrides.error or self.error,
            redirect=overrides.redirect or self.redirect,
            status=overrides.status or self.status,
            progress=overrides.progress or self.progress,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            key: value
            for key, value in (
                ("error", self.error),
                ("redirect", self.redirect),
                ("status", self.status),
                ("progress", self.progress),
            )
            if value is not None
        }
        if self.item is not None:
            payload["item"] = self.item.to_dict()
        return payload


@dataclass(slots=True)
class CallbackTransport:
    """回调的传输层元数据：请求头（小写键）、请求体流与声明长度。"""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: BinaryIO | None = None

    @property
    def content_length(self) -> int:
        raw = self.headers.get("content-length")
        if not raw:
            return 0
        if not raw.strip().isdigit():
            raise ValidationError(f"invalid content-length header: {raw!r}")
        return int(raw)


@dataclass(slots=True)
class CallbackOutcome:
    """回调处理结果，由 API 层转换为 HTTP 响应。"""
    status_code: int
    body: dict[str, Any] | str


def update_job_fields(job: Job, query: CallbackQuery) -> None:
    """按固定优先级把回调字段应用到作业状态机。"""
    if query.item is not None:
        job.add_link(query.item.to_dict())
    if query.progress:
        job.set_progress(query.progress)

    if query.error:
        job.fail(query.error)
    elif query.status:
        job.update_status(query.status)
    elif query.redirect:
        job.add_link({"href": query.redirect, "rel": DATA_REL})
        job.succeed()


def _filename_from_headers(headers: Mapping[str, str]) -> str | None:
    disposition = headers.get("content-disposition")
    if not disposition:
        return None
    match = CONTENT_DISPOSITION_FILENAME_RE.search(disposition)
    return match.group(1) if match else None


class CallbackHandler:
    """处理一次后端回调：加锁、事务、暂存文件、状态流转与完成日志。"""
    def __init__(
        self,
        *,
        repository: JobRepository,
        object_stores: ObjectStoreFactory,
        locks: JobLockRegistry | None = None,
    ) -> None:
        self._repository = repository
        self._object_stores = object_stores
        self._locks = locks or JobLockRegistry()

    def handle(self, request_id: str, query: CallbackQuery, transport: CallbackTransport) -> CallbackOutcome:
        """处理回调并返回 HTTP 结果；任何失败都先回滚事务再返回。"""
        job: Job | None = None
        try:
            with self._locks.hold(request_id):
                with self._repository.transaction() as txn:
                    loaded = txn.load_for_update(request_id)
                    if loaded is None:
                        raise JobNotFoundError(request_id)
                    # 失败时以回调前快照作为“当前已知”状态，事务回滚后内存修改不再有效。
                    job = copy.deepcopy(loaded)
                    with bind_log_context(job_id=loaded.id):
                        overrides = self._stage_body(loaded, query, transport)
                        merged = query.merged_with(overrides)
                        logger.info(
                            "updating job from callback",
                            extra={"event": "job.callback.received", "payload_preview": merged.to_dict()},
                        )
                        update_job_fields(loaded, merged)
                        txn.save(loaded, event_type="job.callback.applied", payload=merged.to_dict())
                    job = loaded
        except JobNotFoundError as exc:
            logger.error(
                "received a callback for a missing job",
                extra={"event": "job.callback.not_found", "payload_preview": {"request_id": request_id}},
            )
            return CallbackOutcome(status_code=exc.status_code, body=exc.to_dict())
        except BrokerError as exc:
            self._log_failure(request_id, exc)
            return CallbackOutcome(status_code=exc.status_code, body=exc.to_dict())
        except Exception as exc:
            self._log_failure(request_id, exc)
            wrapped = ServerError(str(exc) or type(exc).__name__)
            return CallbackOutcome(status_code=wrapped.status_code, body=wrapped.to_dict())
        finally:
            if job is not None and job.is_complete():
                self._log_completion(job)
        return CallbackOutcome(status_code=200, body="Ok")

    def _stage_body(self, job: Job, query: CallbackQuery, transport: CallbackTransport) -> CallbackQuery:
        """请求体即结果文件时上传到暂存目录，返回需要覆盖的回调字段。"""
        overrides = CallbackQuery()
        has_href = query.item is not None and bool(query.item.href)
        if has_href or query.error or transport.content_length == 0:
            return overrides
        # 写入存储无法随事务回滚，终态作业必须在上传前拒绝。
        job.ensure_mutable()

        staging_links = job.related_links(STAGING_LOCATION_REL)
        if not staging_links or not staging_links[0].href:
            raise ServerError(f"job {job.id} has no staging location for callback output")
        staging_location = staging_links[0].href

        item = CallbackItem()
        content_type = transport.headers.get("content-type")
        if content_type and content_type.split(";", 1)[0].strip().lower() != FORM_URLENCODED:
            item.type = content_type

        filename = _filename_from_headers(transport.headers) or (query.item.title if query.item else None)
        if not filename:
            raise ValidationError(
                'Services providing output via POST body must send a filename via a "Content-Disposition" '
                'header or "item[title]" query parameter'
            )
        item.href = f"{staging_location}{filename}"
        if transport.body is None:
            raise ValidationError("callback declared a body but none was received")

        logger.info("staging callback body", extra={"event": "job.callback.staging", "payload_preview": {"href": item.href}})
        store = self._object_stores.for_href(item.href)
        store.upload(transport.body, item.href, transport.content_length, item.type)

        overrides = replace(overrides, item=item)
        if not job.is_async:
            # 同步作业没有其它完成信号，无错误的文件回调即表示成功。
            overrides = replace(overrides, status="successful")
        return overrides

    @staticmethod
    def _log_failure(request_id: str, exc: Exception) -> None:
        logger.error(
            "callback handling failed",
            extra={
                "event": "job.callback.failed",
                "payload_preview": {"request_id": request_id},
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )

    @staticmethod
    def _log_completion(job: Job) -> None:
        duration_ms = round((utcnow() - ensure_utc(job.created_at)).total_seconds() * 1000, 2)
        logger.info(
            "async job complete",
            extra={
                "event": "job.completed",
                "job_id": job.id,
                "duration_ms": duration_ms,
                "payload_preview": {
                    "num_outputs": len(job.related_links(DATA_REL)),
                    "job": job.serialize(),
                },
            },
        )
