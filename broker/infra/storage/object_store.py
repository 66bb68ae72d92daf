"""对象存储：按暂存地址协议选择 S3 或本地文件实现，流式上传回调文件。"""

from __future__ import annotations

import logging
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, BinaryIO
from urllib.parse import unquote, urlparse

import boto3

from broker.config import Settings
from broker.domain.errors import ServerError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """对象存储抽象。"""

    @abstractmethod
    def upload(
        self,
        stream: BinaryIO,
        href: str,
        content_length: int | None = None,
        content_type: str | None = None,
    ) -> str:
        """将 stream 写入 href，返回最终地址。"""


class S3ObjectStore(ObjectStore):
    """基于 boto3 的 S3 存储。"""
    def __init__(self, client: Any) -> None:
        self._client = client

    @staticmethod
    def parse_href(href: str) -> tuple[str, str]:
        parsed = urlparse(href)
        key = parsed.path.lstrip("/")
        if parsed.scheme != "s3" or not parsed.netloc or not key:
            raise ValueError(f"invalid s3 url: {href}")
        return parsed.netloc, key

    def upload(
        self,
        stream: BinaryIO,
        href: str,
        content_length: int | None = None,
        content_type: str | None = None,
    ) -> str:
        bucket, key = self.parse_href(href)
        extra_args: dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        started = time.perf_counter()
        self._client.upload_fileobj(stream, bucket, key, ExtraArgs=extra_args or None)
        logger.info(
            "object uploaded",
            extra={
                "event": "storage.upload.succeeded",
                "external_service": "s3",
                "op": "upload_fileobj",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "payload_preview": {"href": href, "content_length": content_length},
            },
        )
        return href


class LocalObjectStore(ObjectStore):
    """file:// 暂存地址的本地实现，用于开发与测试环境。"""

    @staticmethod
    def path_for(href: str) -> Path:
        parsed = urlparse(href)
        if parsed.scheme != "file":
            raise ValueError(f"invalid file url: {href}")
        return Path(unquote(parsed.path))

    def upload(
        self,
        stream: BinaryIO,
        href: str,
        content_length: int | None = None,
        content_type: str | None = None,
    ) -> str:
        target = self.path_for(href)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            # 分块复制，避免大文件一次性读入内存。
            shutil.copyfileobj(stream, handle, length=1024 * 1024)
        logger.info(
            "object stored locally",
            extra={
                "event": "storage.upload.succeeded",
                "external_service": "filesystem",
                "op": "copyfileobj",
                "payload_preview": {"href": href, "content_length": content_length},
            },
        )
        return href


class ObjectStoreFactory:
    """按协议返回对象存储实例；S3 客户端延迟创建并复用。"""
    def __init__(self, settings: Settings, s3_client: Any | None = None) -> None:
        self._settings = settings
        self._s3_client = s3_client
        self._local = LocalObjectStore()

    def _client(self) -> Any:
        if self._s3_client is None:
            kwargs: dict[str, Any] = {}
            if self._settings.s3_endpoint_url:
                kwargs["endpoint_url"] = self._settings.s3_endpoint_url
            if self._settings.s3_region:
                kwargs["region_name"] = self._settings.s3_region
            self._s3_client = boto3.client("s3", **kwargs)
        return self._s3_client

    def for_href(self, href: str) -> ObjectStore:
        scheme = urlparse(href).scheme
        if scheme == "s3":
            return S3ObjectStore(self._client())
        if scheme == "file":
            return self._local
        raise ServerError(f"no object store available for protocol: {scheme or href}")

    def staging_location(self, request_id: str) -> str:
        """为新作业生成暂存地址前缀，以 `/` 结尾。"""
        if self._settings.staging_bucket:
            return f"s3://{self._settings.staging_bucket}/public/{request_id}/"
        return (self._settings.data_root / "staging" / request_id).resolve().as_uri() + "/"
