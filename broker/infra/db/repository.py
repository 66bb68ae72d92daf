"""仓储实现：封装作业持久化、事务内加锁读写与事件流查询。"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from broker.domain.enums import EventSource, JobStatus
from broker.domain.errors import JobNotFoundError
from broker.domain.job import Job, JobLink, utcnow
from broker.infra.db.models import JobEventORM, JobORM


def job_from_row(row: JobORM) -> Job:
    """ORM 行转换为领域作业对象。"""
    return Job(
        id=row.id,
        request_id=row.request_id,
        username=row.username,
        status=JobStatus(row.status),
        message=row.message,
        progress=row.progress or 0,
        links=[JobLink.from_item(item) for item in row.links_json or []],
        is_async=bool(row.is_async),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply_to_row(job: Job, row: JobORM) -> None:
    row.status = job.status.value
    row.message = job.message
    row.progress = job.progress
    # 整体替换列表，确保 JSON 列的变更能被 ORM 感知。
    row.links_json = [link.to_dict() for link in job.links]
    row.updated_at = job.updated_at


class JobTransaction:
    """单个事务内的作业读写单元，提交与回滚由外层上下文负责。"""
    def __init__(self, db: Session) -> None:
        self._db = db
        self._rows: dict[str, JobORM] = {}

    def load_for_update(self, request_id: str) -> Job | None:
        """按 request id 加行锁读取作业（SQLite 下 FOR UPDATE 被忽略）。"""
        stmt = select(JobORM).where(JobORM.request_id == request_id).with_for_update()
        row = self._db.execute(stmt).scalars().first()
        if row is None:
            return None
        self._rows[row.id] = row
        return job_from_row(row)

    def save(
        self,
        job: Job,
        *,
        source: EventSource = EventSource.backend,
        event_type: str = "job.updated",
        payload: dict[str, Any] | None = None,
    ) -> None:
        """写回作业字段并追加一条事件记录。"""
        row = self._rows.get(job.id)
        if row is None:
            raise KeyError(f"job not loaded in this transaction: {job.id}")
        _apply_to_row(job, row)
        self._db.add(row)
        self._db.add(
            JobEventORM(
                job_id=job.id,
                status=job.status.value,
                source=source.value,
                event_type=event_type,
                message=job.message,
                payload=payload,
            )
        )
        self._db.flush()


class JobRepository:
    """作业仓储实现，封装数据库读写与事务边界。"""
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[JobTransaction]:
        """开启事务：正常退出提交，异常时回滚并继续抛出。"""
        with self._session_factory.begin() as db:
            yield JobTransaction(db)

    def create_job(
        self,
        job: Job,
        *,
        service_name: str | None = None,
        operation_json: dict[str, Any] | None = None,
    ) -> Job:
        """在一个事务内写入作业与首条事件。"""
        with self._session_factory.begin() as db:
            row = JobORM(
                id=job.id,
                request_id=job.request_id,
                username=job.username,
                status=job.status.value,
                message=job.message,
                progress=job.progress,
                links_json=[link.to_dict() for link in job.links],
                is_async=job.is_async,
                service_name=service_name,
                operation_json=operation_json,
                created_at=job.created_at,
                updated_at=job.updated_at,
            )
            db.add(row)
            db.flush()
            db.add(
                JobEventORM(
                    job_id=job.id,
                    status=job.status.value,
                    source=EventSource.api.value,
                    event_type="job.created",
                    message=job.message,
                    payload={"service": service_name},
                )
            )
        return job

    def get_job(self, job_id: str) -> Job | None:
        """按主键查询作业。"""
        with self._session_factory() as db:
            row = db.get(JobORM, job_id)
            return job_from_row(row) if row is not None else None

    def get_job_by_request_id(self, request_id: str) -> Job | None:
        with self._session_factory() as db:
            row = db.execute(select(JobORM).where(JobORM.request_id == request_id)).scalars().first()
            return job_from_row(row) if row is not None else None

    def get_dispatch_record(self, job_id: str) -> tuple[str | None, dict[str, Any] | None]:
        """返回作业派发时记录的服务名与操作 JSON。"""
        with self._session_factory() as db:
            row = db.get(JobORM, job_id)
            if row is None:
                raise KeyError(f"job not found: {job_id}")
            return row.service_name, row.operation_json

    def fail_job(self, request_id: str, message: str, *, source: EventSource = EventSource.worker) -> Job:
        """在事务内将作业置为 failed；已是终态时由状态机拒绝。"""
        with self.transaction() as txn:
            job = txn.load_for_update(request_id)
            if job is None:
                raise JobNotFoundError(request_id)
            job.fail(message)
            txn.save(job, source=source, event_type="job.failed")
            return job

    def add_event(
        self,
        job_id: str,
        *,
        source: EventSource,
        event_type: str,
        status: str | None = None,
        message: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """写入单条作业事件。"""
        with self._session_factory.begin() as db:
            db.add(
                JobEventORM(
                    job_id=job_id,
                    status=status,
                    source=source.value,
                    event_type=event_type,
                    message=message,
                    payload=payload,
                    created_at=utcnow(),
                )
            )

    def list_events(self, job_id: str, after_id: int = 0, limit: int = 200) -> list[JobEventORM]:
        """按游标分页查询事件流。"""
        with self._session_factory() as db:
            stmt = (
                select(JobEventORM)
                .where(JobEventORM.job_id == job_id, JobEventORM.id > after_id)
                .order_by(JobEventORM.id.asc())
                .limit(limit)
            )
            return list(db.execute(stmt).scalars().all())
