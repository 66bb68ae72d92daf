"""作业实体与状态机：封装回调驱动的链接追加、进度与状态流转规则。"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from broker.domain.enums import JobStatus
from broker.domain.errors import ConflictError, ValidationError

DATA_REL = "data"
STAGING_LOCATION_REL = "s3-access"

RFC3339_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$",
    re.ASCII,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """SQLite 读回的时间不带时区，统一按 UTC 解释。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def canonical_timestamp(raw: str) -> str:
    """将 RFC-3339 时间解析并规整为 `YYYY-MM-DDTHH:MM:SS.mmmZ`。"""
    text = raw.strip()
    if not RFC3339_RE.match(text):
        raise ValidationError(f"invalid timestamp: {raw!r}")
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"invalid timestamp: {raw!r}") from exc
    return ensure_utc(parsed).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_bbox(raw: str) -> tuple[float, float, float, float]:
    """解析 `W,S,E,N` 形式的包围盒。"""
    parts = raw.split(",")
    try:
        values = [float(part) for part in parts]
    except ValueError:
        values = []
    if len(values) != 4 or any(math.isnan(value) for value in values):
        raise ValidationError(
            "Unrecognized bounding box format.  Must be 4 comma-separated floats as West,South,East,North"
        )
    west, south, east, north = values
    return west, south, east, north


def parse_temporal(raw: str) -> TemporalRange:
    """解析 `start,end` 形式的时间范围。"""
    parts = raw.split(",")
    if len(parts) != 2:
        raise ValidationError(
            "Unrecognized temporal format.  Must be 2 RFC-3339 dates with optional fractional seconds as Start,End"
        )
    try:
        start, end = (canonical_timestamp(part) for part in parts)
    except ValidationError as exc:
        raise ValidationError(
            "Unrecognized temporal format.  Must be 2 RFC-3339 dates with optional fractional seconds as Start,End"
        ) from exc
    return TemporalRange(start=start, end=end)


@dataclass(slots=True, frozen=True)
class TemporalRange:
    start: str
    end: str


@dataclass(slots=True)
class JobLink:
    """作业结果链接。"""
    href: str | None = None
    rel: str = DATA_REL
    type: str | None = None
    title: str | None = None
    bbox: tuple[float, float, float, float] | None = None
    temporal: TemporalRange | None = None

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> JobLink:
        """从回调 item 字段构建链接；bbox/temporal 允许是原始字符串。"""
        bbox = item.get("bbox")
        if isinstance(bbox, str):
            bbox = parse_bbox(bbox)
        elif bbox is not None:
            bbox = parse_bbox(",".join(str(value) for value in bbox))
        temporal = item.get("temporal")
        if isinstance(temporal, str):
            temporal = parse_temporal(temporal)
        elif isinstance(temporal, Mapping):
            temporal = parse_temporal(f"{temporal.get('start')},{temporal.get('end')}")
        return cls(
            href=item.get("href") or None,
            rel=item.get("rel") or DATA_REL,
            type=item.get("type") or None,
            title=item.get("title") or None,
            bbox=bbox,
            temporal=temporal,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"href": self.href, "rel": self.rel}
        if self.type:
            payload["type"] = self.type
        if self.title:
            payload["title"] = self.title
        if self.bbox is not None:
            payload["bbox"] = list(self.bbox)
        if self.temporal is not None:
            payload["temporal"] = {"start": self.temporal.start, "end": self.temporal.end}
        return payload


@dataclass(slots=True)
class Job:
    """作业实体。所有变更都经由状态机方法，终态后拒绝修改。"""
    id: str
    request_id: str
    username: str
    status: JobStatus = JobStatus.accepted
    message: str | None = None
    progress: int = 0
    links: list[JobLink] = field(default_factory=list)
    is_async: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_complete(self) -> bool:
        return self.status.is_terminal

    def related_links(self, rel: str) -> list[JobLink]:
        return [link for link in self.links if link.rel == rel]

    def add_link(self, item: JobLink | Mapping[str, Any]) -> JobLink:
        """追加结果链接，bbox 与 temporal 在此校验。"""
        self.ensure_mutable()
        link = item if isinstance(item, JobLink) else JobLink.from_item(item)
        self.links.append(link)
        self._touch()
        return link

    def set_progress(self, raw: str | int) -> None:
        """按整数解析进度，超出 [0, 100] 视为非法。"""
        self.ensure_mutable()
        try:
            value = int(str(raw).strip())
        except ValueError as exc:
            raise ValidationError("Job record is invalid: [\"Job progress must be between 0 and 100\"]") from exc
        if not 0 <= value <= 100:
            raise ValidationError("Job record is invalid: [\"Job progress must be between 0 and 100\"]")
        self.progress = value
        self._touch()

    def fail(self, message: str) -> None:
        self.ensure_mutable()
        self.status = JobStatus.failed
        self.message = message
        self._touch()

    def update_status(self, status: JobStatus | str, message: str | None = None) -> None:
        """切换到指定状态；状态值必须属于 JobStatus。"""
        self.ensure_mutable()
        try:
            target = JobStatus(status)
        except ValueError as exc:
            raise ValidationError(f"invalid job status: {status!r}") from exc
        self.status = target
        if message is not None:
            self.message = message
        if target == JobStatus.successful:
            self.progress = 100
        self._touch()

    def succeed(self, message: str | None = None) -> None:
        self.update_status(JobStatus.successful, message or "The job has completed successfully")

    def serialize(self) -> dict[str, Any]:
        """完整快照，用于完成日志与接口输出。"""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "username": self.username,
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "is_async": self.is_async,
            "links": [link.to_dict() for link in self.links],
            "created_at": ensure_utc(self.created_at).isoformat(),
            "updated_at": ensure_utc(self.updated_at).isoformat(),
        }

    def ensure_mutable(self) -> None:
        """终态作业拒绝任何修改。"""
        if self.status.is_terminal:
            raise ConflictError(f"job {self.id} is already {self.status.value} and cannot be updated")

    def _touch(self) -> None:
        self.updated_at = utcnow()
