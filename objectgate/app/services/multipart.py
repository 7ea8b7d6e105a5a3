"""Multipart upload orchestration.

A payload is split into fixed-size parts that are uploaded one at a time in
ascending order. Each part gets a bounded number of retries; when a part is
still failing after its budget is spent the whole multipart upload is aborted
so the store releases the parts it already buffered. Only a session whose
every part was uploaded is submitted for completion.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from objectgate.app.services.base import ServiceError
from objectgate.common.config import (
    DEFAULT_PART_SIZE_BYTES,
    DEFAULT_RETRY_BUDGET,
    Settings,
)
from objectgate.infra.observability.metrics import (
    MULTIPART_SESSIONS,
    UPLOAD_PART_RETRIES,
    UPLOAD_PARTS,
)
from objectgate.infra.storage.client import (
    AbortError,
    CompletedPart,
    StorageClient,
    StorageError,
)

logger = logging.getLogger(__name__)

# Maximum part number allowed by S3
MAX_PART_NUMBER = 10000


class PartStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    FAILED = "FAILED"


class SessionState(str, Enum):
    UNINITIATED = "UNINITIATED"
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ABORTED})


class UploadError(ServiceError):
    """Terminal failure of an object upload.

    ``abort_error`` carries the failure of the rollback that followed, if any.
    It is supplementary context and never replaces the original error.
    """

    def __init__(
        self,
        message: str,
        *,
        object_key: str | None = None,
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.object_key = object_key
        self.upload_id = upload_id
        self.abort_error: AbortError | None = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.abort_error is not None:
            return f"{message} (abort also failed: {self.abort_error})"
        return message


class UploadInitiationFailed(UploadError):
    """The store refused to open the multipart upload."""


class PartUploadFailed(UploadError):
    """A part kept failing after its retry budget was spent."""

    def __init__(
        self,
        part_number: int,
        last_cause: BaseException,
        *,
        attempts: int,
        object_key: str | None = None,
        upload_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Part {part_number} failed after {attempts} attempts: {last_cause}",
            object_key=object_key,
            upload_id=upload_id,
        )
        self.part_number = part_number
        self.last_cause = last_cause
        self.attempts = attempts


class UploadCompletionFailed(UploadError):
    """The store rejected finalization of the multipart upload."""


class UploadCancelled(UploadError):
    """The upload was cancelled by the caller before all parts were sent."""


class InvalidStateError(UploadError):
    """The session is not in a state that allows the requested operation."""


class InvalidUploadError(UploadError):
    """The upload parameters violate the multipart constraints."""


@dataclass(frozen=True, slots=True)
class PartRange:
    """Byte range [start, end) of one part in the payload."""

    part_number: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


def split_parts(total_size: int, part_size: int) -> list[PartRange]:
    """Split ``total_size`` bytes into contiguous ranges of at most ``part_size``.

    Range i spans [i * part_size, min((i + 1) * part_size, total_size)); only
    the last range may be shorter than ``part_size``.
    """
    if part_size <= 0:
        raise InvalidUploadError("part_size must be positive")
    if total_size < 0:
        raise InvalidUploadError("total_size must not be negative")
    return [
        PartRange(
            part_number=index + 1,
            start=start,
            end=min(start + part_size, total_size),
        )
        for index, start in enumerate(range(0, total_size, part_size))
    ]


@dataclass(slots=True)
class PartResult:
    part_number: int
    offset: int
    size_bytes: int
    status: PartStatus = PartStatus.PENDING
    etag: str | None = None
    attempts: int = 0


@dataclass(slots=True)
class UploadSession:
    """Bookkeeping for one multipart upload, owned by a single caller."""

    upload_id: str
    bucket: str
    object_key: str
    total_size: int
    part_size_bytes: int
    parts: list[PartResult] = field(default_factory=list)
    state: SessionState = SessionState.INITIATED

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def part(self, part_number: int) -> PartResult:
        if part_number < 1 or part_number > len(self.parts):
            raise InvalidUploadError(
                f"part_number {part_number} is outside 1..{len(self.parts)}",
                object_key=self.object_key,
                upload_id=self.upload_id,
            )
        return self.parts[part_number - 1]

    def completed_parts(self) -> list[CompletedPart]:
        """Return the uploaded parts in ascending part_number order."""
        completed: list[CompletedPart] = []
        for part in sorted(self.parts, key=lambda p: p.part_number):
            if part.status is not PartStatus.UPLOADED or part.etag is None:
                raise InvalidStateError(
                    f"Part {part.part_number} is not uploaded",
                    object_key=self.object_key,
                    upload_id=self.upload_id,
                )
            completed.append(CompletedPart(part_number=part.part_number, etag=part.etag))
        return completed


class PartUploader:
    """Uploads a single part, retrying failed attempts up to ``retry_budget`` times."""

    def __init__(
        self,
        storage: StorageClient,
        *,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
        retry_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retry_budget < 0:
            raise ValueError("retry_budget must not be negative")
        self._storage = storage
        self._retry_budget = retry_budget
        self._retry_delay = retry_delay
        self._sleep = sleep

    @property
    def retry_budget(self) -> int:
        return self._retry_budget

    def upload_with_retry(
        self, session: UploadSession, part_number: int, data: bytes
    ) -> PartResult:
        """Upload ``data`` as part ``part_number`` of ``session``.

        Returns:
            The part's PartResult, now UPLOADED with the store-assigned ETag.

        Raises:
            InvalidStateError: If the session is not INITIATED or IN_PROGRESS.
            InvalidUploadError: If the part number or data size is invalid.
            PartUploadFailed: If every attempt failed.
        """
        if session.state not in (SessionState.INITIATED, SessionState.IN_PROGRESS):
            raise InvalidStateError(
                f"Cannot upload parts in state {session.state.value}",
                object_key=session.object_key,
                upload_id=session.upload_id,
            )
        if part_number < 1 or part_number > MAX_PART_NUMBER:
            raise InvalidUploadError(
                f"part_number must be between 1 and {MAX_PART_NUMBER}",
                object_key=session.object_key,
                upload_id=session.upload_id,
            )
        part = session.part(part_number)
        if not data or len(data) > session.part_size_bytes or len(data) != part.size_bytes:
            raise InvalidUploadError(
                f"Part {part_number} expects {part.size_bytes} bytes, got {len(data)}",
                object_key=session.object_key,
                upload_id=session.upload_id,
            )

        max_attempts = self._retry_budget + 1
        last_error: StorageError | None = None
        for attempt in range(1, max_attempts + 1):
            part.attempts = attempt
            try:
                etag = self._storage.upload_part(
                    bucket=session.bucket,
                    object_key=session.object_key,
                    upload_id=session.upload_id,
                    part_number=part_number,
                    data=data,
                )
            except StorageError as exc:
                last_error = exc
                logger.warning(
                    "part_upload_attempt_failed object_key=%s upload_id=%s part_number=%s attempt=%s/%s error=%s",
                    session.object_key,
                    session.upload_id,
                    part_number,
                    attempt,
                    max_attempts,
                    exc,
                    extra={
                        "extra": {
                            "object_key": session.object_key,
                            "upload_id": session.upload_id,
                            "part_number": part_number,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                        }
                    },
                )
                if attempt < max_attempts:
                    UPLOAD_PART_RETRIES.inc()
                    if self._retry_delay > 0:
                        self._sleep(self._retry_delay)
                continue

            part.etag = etag
            part.status = PartStatus.UPLOADED
            UPLOAD_PARTS.labels(PartStatus.UPLOADED.value).inc()
            return part

        part.status = PartStatus.FAILED
        UPLOAD_PARTS.labels(PartStatus.FAILED.value).inc()
        assert last_error is not None
        raise PartUploadFailed(
            part_number,
            last_error,
            attempts=max_attempts,
            object_key=session.object_key,
            upload_id=session.upload_id,
        ) from last_error


class MultipartSession:
    """Lifecycle of one multipart upload.

    ``UNINITIATED -> INITIATED -> IN_PROGRESS -> {COMPLETED | ABORTED}``

    Instances are single-use and must not be shared between threads: once the
    session reaches a terminal state a new MultipartSession is needed to upload
    the object again.
    """

    def __init__(
        self,
        storage: StorageClient,
        *,
        bucket: str,
        part_size_bytes: int = DEFAULT_PART_SIZE_BYTES,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
        retry_delay: float = 0.0,
        expires_in: int | None = 24 * 60 * 60,
        acl: str | None = None,
        uploader: PartUploader | None = None,
    ) -> None:
        if part_size_bytes <= 0:
            raise ValueError("part_size_bytes must be positive")
        self._storage = storage
        self._bucket = bucket
        self._part_size = part_size_bytes
        self._expires_in = expires_in
        self._acl = acl
        self._uploader = uploader or PartUploader(
            storage, retry_budget=retry_budget, retry_delay=retry_delay
        )
        self._session: UploadSession | None = None

    @classmethod
    def from_settings(
        cls, storage: StorageClient, settings: Settings, *, bucket: str
    ) -> "MultipartSession":
        return cls(
            storage,
            bucket=bucket,
            part_size_bytes=settings.STORAGE_PART_SIZE_BYTES,
            retry_budget=settings.STORAGE_RETRY_BUDGET,
            retry_delay=settings.STORAGE_RETRY_DELAY_SECONDS,
            expires_in=settings.STORAGE_UPLOAD_EXPIRY_SECONDS or None,
            acl=settings.STORAGE_OBJECT_ACL,
        )

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return SessionState.UNINITIATED
        return self._session.state

    @property
    def session(self) -> UploadSession | None:
        return self._session

    def initiate(
        self,
        object_key: str,
        total_size: int,
        *,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> UploadSession:
        """Open the multipart upload on the store and plan its parts.

        Raises:
            InvalidStateError: If this session was already initiated.
            InvalidUploadError: If the size is empty or needs too many parts.
            UploadInitiationFailed: If the store rejects the request.
        """
        if self._session is not None:
            raise InvalidStateError(
                f"Session already initiated (state {self.state.value})",
                object_key=object_key,
                upload_id=self._session.upload_id,
            )
        if total_size <= 0:
            raise InvalidUploadError(
                "total_size must be positive for a multipart upload",
                object_key=object_key,
            )
        ranges = split_parts(total_size, self._part_size)
        if len(ranges) > MAX_PART_NUMBER:
            raise InvalidUploadError(
                f"Payload needs {len(ranges)} parts; at most {MAX_PART_NUMBER} are allowed",
                object_key=object_key,
            )

        expires_at = None
        if self._expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._expires_in)

        try:
            upload = self._storage.init_multipart_upload(
                bucket=self._bucket,
                object_key=object_key,
                content_type=content_type,
                metadata=metadata,
                acl=self._acl,
                expires_at=expires_at,
            )
        except StorageError as exc:
            logger.error(
                "multipart_initiate_failed bucket=%s object_key=%s error=%s",
                self._bucket,
                object_key,
                exc,
                extra={"extra": {"bucket": self._bucket, "object_key": object_key}},
            )
            raise UploadInitiationFailed(
                f"Failed to initiate multipart upload: {exc}",
                object_key=object_key,
            ) from exc

        self._session = UploadSession(
            upload_id=upload.upload_id,
            bucket=upload.bucket,
            object_key=upload.object_key,
            total_size=total_size,
            part_size_bytes=self._part_size,
            parts=[
                PartResult(part_number=r.part_number, offset=r.start, size_bytes=r.size)
                for r in ranges
            ],
        )
        logger.info(
            "multipart_initiated object_key=%s upload_id=%s total_size=%s parts=%s",
            object_key,
            upload.upload_id,
            total_size,
            len(ranges),
        )
        return self._session

    def run(
        self,
        payload: bytes,
        *,
        cancel_event: threading.Event | None = None,
    ) -> UploadSession:
        """Upload every part of ``payload`` and finalize the object.

        Any part failure, completion rejection or cancellation aborts the
        upload on the store once before the error is raised.

        Raises:
            InvalidStateError: If the session is not INITIATED.
            InvalidUploadError: If ``payload`` does not match the planned size.
            PartUploadFailed: If a part exhausted its retries.
            UploadCompletionFailed: If the store rejected finalization.
            UploadCancelled: If ``cancel_event`` was set mid-upload.
        """
        session = self._session
        if session is None or session.state is not SessionState.INITIATED:
            raise InvalidStateError(
                f"Cannot run upload in state {self.state.value}",
                object_key=session.object_key if session else None,
                upload_id=session.upload_id if session else None,
            )
        view = memoryview(payload)
        if len(view) != session.total_size:
            raise InvalidUploadError(
                f"Payload is {len(view)} bytes but the session expects {session.total_size}",
                object_key=session.object_key,
                upload_id=session.upload_id,
            )

        session.state = SessionState.IN_PROGRESS
        try:
            for part in session.parts:
                if cancel_event is not None and cancel_event.is_set():
                    raise UploadCancelled(
                        f"Upload cancelled before part {part.part_number}",
                        object_key=session.object_key,
                        upload_id=session.upload_id,
                    )
                chunk = bytes(view[part.offset : part.offset + part.size_bytes])
                self._uploader.upload_with_retry(session, part.part_number, chunk)
                logger.debug(
                    "part_uploaded object_key=%s part_number=%s remaining_bytes=%s",
                    session.object_key,
                    part.part_number,
                    session.total_size - (part.offset + part.size_bytes),
                )

            try:
                self._storage.complete_multipart_upload(
                    bucket=session.bucket,
                    object_key=session.object_key,
                    upload_id=session.upload_id,
                    parts=session.completed_parts(),
                )
            except StorageError as exc:
                raise UploadCompletionFailed(
                    f"Failed to complete multipart upload: {exc}",
                    object_key=session.object_key,
                    upload_id=session.upload_id,
                ) from exc
        except Exception as exc:
            self._abort(session, exc if isinstance(exc, UploadError) else None)
            raise

        session.state = SessionState.COMPLETED
        MULTIPART_SESSIONS.labels(SessionState.COMPLETED.value.lower()).inc()
        logger.info(
            "multipart_completed object_key=%s upload_id=%s parts=%s",
            session.object_key,
            session.upload_id,
            len(session.parts),
            extra={
                "extra": {
                    "object_key": session.object_key,
                    "upload_id": session.upload_id,
                    "parts": len(session.parts),
                    "total_size": session.total_size,
                }
            },
        )
        return session

    def _abort(self, session: UploadSession, error: UploadError | None) -> None:
        """Abort the upload on the store once; never retried."""
        session.state = SessionState.ABORTED
        MULTIPART_SESSIONS.labels(SessionState.ABORTED.value.lower()).inc()
        try:
            self._storage.abort_multipart_upload(
                bucket=session.bucket,
                object_key=session.object_key,
                upload_id=session.upload_id,
            )
        except Exception as exc:
            if isinstance(exc, AbortError):
                abort_error = exc
            else:
                abort_error = AbortError(f"Failed to abort multipart upload: {exc}")
                abort_error.__cause__ = exc
            if error is not None:
                error.abort_error = abort_error
            logger.error(
                "multipart_abort_failed object_key=%s upload_id=%s error=%s original_error=%s",
                session.object_key,
                session.upload_id,
                abort_error,
                error,
            )
            return
        logger.warning(
            "multipart_aborted object_key=%s upload_id=%s reason=%s",
            session.object_key,
            session.upload_id,
            error,
        )
