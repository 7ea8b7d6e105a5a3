"""Object service for upload, download and deletion of stored objects.

Payloads larger than the configured part size go through a multipart
session; everything else (including empty payloads) is stored with a single
put request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from objectgate.app.services.base import BaseService
from objectgate.app.services.multipart import (
    InvalidUploadError,
    MultipartSession,
    UploadError,
)
from objectgate.infra.observability.metrics import UPLOADED_BYTES
from objectgate.infra.storage.client import ObjectHead, StorageError

logger = logging.getLogger(__name__)


class InvalidObjectKeyError(InvalidUploadError):
    """Raised when an object key cannot be used."""


class ObjectTooLargeError(InvalidUploadError):
    """Raised when a payload exceeds STORAGE_MAX_UPLOAD_BYTES."""


@dataclass(frozen=True, slots=True)
class UploadOutcome:
    """Result of a successful upload_object call."""

    object_key: str
    size_bytes: int
    multipart: bool
    part_count: int
    upload_id: str | None = None


def normalize_object_key(key: str) -> str:
    cleaned = (key or "").strip()
    if not cleaned or cleaned.startswith("/"):
        raise InvalidObjectKeyError(f"Invalid object key: {key!r}", object_key=key)
    if any(segment in (".", "..") for segment in cleaned.split("/")):
        raise InvalidObjectKeyError(
            f"Object key must not contain relative segments: {key!r}", object_key=key
        )
    return cleaned


class ObjectService(BaseService):
    """Application service for the object lifecycle in the configured bucket."""

    def uses_multipart(self, size_bytes: int) -> bool:
        return size_bytes > self._settings.STORAGE_PART_SIZE_BYTES

    def upload_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str | None = None,
    ) -> UploadOutcome:
        """Store ``data`` under ``key``.

        Args:
            key: Object key (path) in the bucket.
            data: Full object content.
            content_type: Optional MIME type.

        Returns:
            UploadOutcome describing how the object was stored.

        Raises:
            InvalidObjectKeyError: If the key is empty or malformed.
            ObjectTooLargeError: If the payload exceeds the upload limit.
            UploadError: On any other terminal failure; store errors are
                chained as ``__cause__``.
        """
        object_key = normalize_object_key(key)
        size = len(data)
        if size > self._settings.STORAGE_MAX_UPLOAD_BYTES:
            raise ObjectTooLargeError(
                f"Object size {size} exceeds maximum allowed "
                f"({self._settings.STORAGE_MAX_UPLOAD_BYTES} bytes)",
                object_key=object_key,
            )
        bucket = self._require_bucket()

        if not self.uses_multipart(size):
            try:
                self._storage.put_object(
                    bucket=bucket,
                    object_key=object_key,
                    data=data,
                    content_type=content_type,
                    acl=self._settings.STORAGE_OBJECT_ACL,
                )
            except StorageError as exc:
                logger.error(
                    "object_put_failed object_key=%s size=%s error=%s",
                    object_key,
                    size,
                    exc,
                )
                raise UploadError(
                    f"Failed to put object: {exc}", object_key=object_key
                ) from exc
            UPLOADED_BYTES.labels("direct").inc(size)
            logger.info("object_put object_key=%s size=%s", object_key, size)
            return UploadOutcome(
                object_key=object_key, size_bytes=size, multipart=False, part_count=1
            )

        multipart = MultipartSession.from_settings(
            self._storage, self._settings, bucket=bucket
        )
        session = multipart.initiate(object_key, size, content_type=content_type)
        multipart.run(data)
        UPLOADED_BYTES.labels("multipart").inc(size)
        return UploadOutcome(
            object_key=object_key,
            size_bytes=size,
            multipart=True,
            part_count=len(session.parts),
            upload_id=session.upload_id,
        )

    def get_object(self, key: str) -> bytes:
        return self._storage.get_object(
            bucket=self._require_bucket(), object_key=normalize_object_key(key)
        )

    def head_object(self, key: str) -> ObjectHead:
        return self._storage.head_object(
            bucket=self._require_bucket(), object_key=normalize_object_key(key)
        )

    def delete_object(self, key: str) -> None:
        object_key = normalize_object_key(key)
        self._storage.delete_object(bucket=self._require_bucket(), object_key=object_key)
        logger.info("object_deleted object_key=%s", object_key)

    def download_object(self, key: str, destination: Path) -> Path:
        """Write the object's content to ``destination`` and return the path."""
        content = self.get_object(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)
        return destination

    def object_url(self, key: str) -> str:
        """Public URL when OBJECT_PUBLIC_BASE_URL is set, otherwise a presigned one."""
        object_key = normalize_object_key(key)
        base_url = self._settings.OBJECT_PUBLIC_BASE_URL
        if base_url:
            return f"{base_url.rstrip('/')}/{object_key}"
        return self._storage.presign_download(
            bucket=self._require_bucket(),
            object_key=object_key,
            expires_in=int(self._settings.STORAGE_PRESIGN_EXPIRES_SECONDS),
            filename=object_key.rsplit("/", 1)[-1],
        )
