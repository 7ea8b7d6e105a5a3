"""Storage client protocol, data types and error taxonomy.

This module defines the interface the upload core consumes from an object
storage backend: multipart upload primitives plus the simple object
operations (put, get, delete, head, presigned download).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence


class StorageError(RuntimeError):
    """Base class for failures reported by the object store."""


class InitiationError(StorageError):
    """The store refused to open a multipart upload."""


class TransientPartError(StorageError):
    """A single upload-part call failed; the caller may retry it."""

    def __init__(self, message: str, *, part_number: int | None = None) -> None:
        super().__init__(message)
        self.part_number = part_number


class CompletionError(StorageError):
    """The store rejected finalization of a multipart upload."""


class AbortError(StorageError):
    """The store failed to abort a multipart upload."""


class ObjectNotFoundError(StorageError):
    """The requested object does not exist."""


@dataclass(frozen=True, slots=True)
class CompletedPart:
    """Part number and ETag of an uploaded part, as sent on completion."""

    part_number: int
    etag: str


@dataclass(frozen=True, slots=True)
class MultipartUpload:
    """Handle for an open multipart upload on the store."""

    upload_id: str
    bucket: str
    object_key: str


@dataclass(frozen=True, slots=True)
class ObjectHead:
    """Stored object metadata as returned by a HEAD request."""

    size_bytes: int
    etag: str | None
    content_type: str | None


class StorageClient(Protocol):
    """What the upload core needs from an object store.

    Implementations make exactly one request per call and never retry on
    their own; failures surface as StorageError subclasses.
    """

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
        acl: str | None = None,
        expires_at: datetime | None = None,
    ) -> MultipartUpload:
        """Open a multipart upload for ``bucket``/``object_key``.

        ``acl`` and ``expires_at`` are applied to the assembled object once
        the upload completes.

        Raises:
            InitiationError: The store refused the request. No session exists
                afterwards, so there is nothing to abort.
        """
        ...

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> str:
        """Send part ``part_number`` (1..10000) and return the ETag assigned to it.

        Raises:
            TransientPartError: This single attempt failed.
        """
        ...

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> None:
        """Assemble the object from ``parts``, sorted by ascending part number.

        Raises:
            CompletionError: The store rejected the part list.
        """
        ...

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Discard the upload so the store frees every buffered part.

        Raises:
            AbortError
        """
        ...

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        data: bytes,
        content_type: str | None = None,
        acl: str | None = None,
    ) -> None:
        """Single-request upload for payloads that fit in one part."""
        ...

    def get_object(self, *, bucket: str, object_key: str) -> bytes:
        """Raises ObjectNotFoundError for a missing key."""
        ...

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Raises ObjectNotFoundError for a missing key."""
        ...

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        filename: str | None = None,
    ) -> str:
        ...

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        ...
