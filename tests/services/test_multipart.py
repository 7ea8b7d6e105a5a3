"""Tests for PartUploader and MultipartSession."""

from __future__ import annotations

import math
import threading
from datetime import datetime, timezone

import pytest

from objectgate.app.services.multipart import (
    MAX_PART_NUMBER,
    InvalidStateError,
    InvalidUploadError,
    MultipartSession,
    PartStatus,
    PartUploader,
    PartUploadFailed,
    SessionState,
    UploadCancelled,
    UploadCompletionFailed,
    UploadInitiationFailed,
    split_parts,
)
from objectgate.common.config import MIB
from objectgate.infra.storage.client import (
    AbortError,
    CompletedPart,
    CompletionError,
    InitiationError,
    TransientPartError,
)
from tests.factories import TEST_BUCKET, make_settings
from tests.services.mock_storage import ALWAYS, MockStorageClient


def _payload(size: int) -> bytes:
    pattern = bytes(range(256))
    return (pattern * (size // len(pattern) + 1))[:size]


def _session(storage, *, part_size=5 * MIB, retry_budget=2, **kwargs):
    return MultipartSession(
        storage,
        bucket=TEST_BUCKET,
        part_size_bytes=part_size,
        retry_budget=retry_budget,
        **kwargs,
    )


class TestSplitParts:
    def test_twelve_mib_in_five_mib_parts(self):
        ranges = split_parts(12 * MIB, 5 * MIB)

        assert [r.part_number for r in ranges] == [1, 2, 3]
        assert [r.size for r in ranges] == [5 * MIB, 5 * MIB, 2 * MIB]
        assert ranges[0].start == 0
        assert ranges[2].end == 12 * MIB

    @pytest.mark.parametrize(
        "total_size, part_size",
        [(1, 1), (10, 3), (9, 3), (1, 10), (100, 7), (5 * MIB + 1, 5 * MIB)],
    )
    def test_part_count_and_sizes(self, total_size, part_size):
        ranges = split_parts(total_size, part_size)

        assert len(ranges) == math.ceil(total_size / part_size)
        assert sum(r.size for r in ranges) == total_size
        assert all(r.size == part_size for r in ranges[:-1])
        assert 0 < ranges[-1].size <= part_size
        assert [r.part_number for r in ranges] == list(range(1, len(ranges) + 1))
        for previous, current in zip(ranges, ranges[1:]):
            assert previous.end == current.start

    def test_empty_payload_has_no_parts(self):
        assert split_parts(0, 5) == []

    def test_rejects_non_positive_part_size(self):
        with pytest.raises(InvalidUploadError, match="part_size"):
            split_parts(10, 0)


class TestPartUploader:
    def _initiated(self, storage, total_size=40, part_size=16):
        multipart = _session(storage, part_size=part_size)
        return multipart.initiate("obj/key", total_size)

    def test_uploads_part_on_first_attempt(self, mock_storage):
        session = self._initiated(mock_storage)
        uploader = PartUploader(mock_storage, retry_budget=2)

        part = uploader.upload_with_retry(session, 1, _payload(16))

        assert part.status is PartStatus.UPLOADED
        assert part.etag == '"etag-1-16"'
        assert part.attempts == 1
        assert len(mock_storage.calls_of("upload_part")) == 1

    def test_recovers_when_failures_equal_retry_budget(self, mock_storage):
        session = self._initiated(mock_storage)
        mock_storage.part_failures[1] = 2
        uploader = PartUploader(mock_storage, retry_budget=2)

        part = uploader.upload_with_retry(session, 1, _payload(16))

        assert part.status is PartStatus.UPLOADED
        assert part.attempts == 3
        assert len(mock_storage.calls_of("upload_part")) == 3

    def test_fails_when_failures_exceed_retry_budget(self, mock_storage):
        session = self._initiated(mock_storage)
        mock_storage.part_failures[1] = 3
        uploader = PartUploader(mock_storage, retry_budget=2)

        with pytest.raises(PartUploadFailed) as excinfo:
            uploader.upload_with_retry(session, 1, _payload(16))

        assert excinfo.value.part_number == 1
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_cause, TransientPartError)
        assert session.part(1).status is PartStatus.FAILED
        assert len(mock_storage.calls_of("upload_part")) == 3
        # cleanup belongs to the session, not the uploader
        assert mock_storage.calls_of("abort_multipart_upload") == []

    def test_zero_retry_budget_means_single_attempt(self, mock_storage):
        session = self._initiated(mock_storage)
        mock_storage.part_failures[1] = 1
        uploader = PartUploader(mock_storage, retry_budget=0)

        with pytest.raises(PartUploadFailed):
            uploader.upload_with_retry(session, 1, _payload(16))

        assert len(mock_storage.calls_of("upload_part")) == 1

    def test_sleeps_between_attempts_only(self, mock_storage):
        session = self._initiated(mock_storage)
        mock_storage.part_failures[1] = ALWAYS
        delays: list[float] = []
        uploader = PartUploader(
            mock_storage, retry_budget=2, retry_delay=0.5, sleep=delays.append
        )

        with pytest.raises(PartUploadFailed):
            uploader.upload_with_retry(session, 1, _payload(16))

        assert delays == [0.5, 0.5]

    def test_sends_full_data_on_every_attempt(self, mock_storage):
        session = self._initiated(mock_storage)
        mock_storage.part_failures[2] = 1
        uploader = PartUploader(mock_storage, retry_budget=2)

        uploader.upload_with_retry(session, 2, _payload(16))

        assert [c["size"] for c in mock_storage.calls_of("upload_part")] == [16, 16]

    def test_leaves_other_parts_untouched(self, mock_storage):
        session = self._initiated(mock_storage)
        uploader = PartUploader(mock_storage, retry_budget=2)

        uploader.upload_with_retry(session, 2, _payload(16))

        assert session.part(1).status is PartStatus.PENDING
        assert session.part(3).status is PartStatus.PENDING
        assert session.part(2).status is PartStatus.UPLOADED

    def test_rejects_data_with_wrong_size(self, mock_storage):
        session = self._initiated(mock_storage)
        uploader = PartUploader(mock_storage)

        with pytest.raises(InvalidUploadError):
            uploader.upload_with_retry(session, 1, _payload(17))
        with pytest.raises(InvalidUploadError):
            uploader.upload_with_retry(session, 3, b"")

        assert mock_storage.calls_of("upload_part") == []

    def test_rejects_part_number_outside_session(self, mock_storage):
        session = self._initiated(mock_storage)
        uploader = PartUploader(mock_storage)

        with pytest.raises(InvalidUploadError):
            uploader.upload_with_retry(session, 0, _payload(16))
        with pytest.raises(InvalidUploadError):
            uploader.upload_with_retry(session, 4, _payload(16))

    def test_rejects_terminal_session(self, mock_storage):
        session = self._initiated(mock_storage)
        session.state = SessionState.ABORTED
        uploader = PartUploader(mock_storage)

        with pytest.raises(InvalidStateError):
            uploader.upload_with_retry(session, 1, _payload(16))

        assert mock_storage.calls_of("upload_part") == []

    def test_rejects_negative_retry_budget(self, mock_storage):
        with pytest.raises(ValueError):
            PartUploader(mock_storage, retry_budget=-1)


class TestMultipartSessionRun:
    def test_twelve_mib_payload_completes_in_three_parts(self, mock_storage):
        payload = _payload(12 * MIB)
        multipart = _session(mock_storage)

        multipart.initiate("big/object.bin", len(payload))
        session = multipart.run(payload)

        assert session.state is SessionState.COMPLETED
        assert multipart.state is SessionState.COMPLETED
        assert [c["size"] for c in mock_storage.calls_of("upload_part")] == [
            5 * MIB,
            5 * MIB,
            2 * MIB,
        ]
        (complete,) = mock_storage.calls_of("complete_multipart_upload")
        assert [p.part_number for p in complete["parts"]] == [1, 2, 3]
        assert mock_storage.calls_of("abort_multipart_upload") == []
        assert mock_storage.objects[f"{TEST_BUCKET}/big/object.bin"]["data"] == payload

    def test_part_two_failing_every_attempt_aborts_session(self, mock_storage):
        payload = _payload(12 * MIB)
        mock_storage.part_failures[2] = ALWAYS
        multipart = _session(mock_storage)
        multipart.initiate("big/object.bin", len(payload))

        with pytest.raises(PartUploadFailed) as excinfo:
            multipart.run(payload)

        assert excinfo.value.part_number == 2
        assert excinfo.value.abort_error is None
        assert multipart.state is SessionState.ABORTED
        assert len(mock_storage.calls_of("abort_multipart_upload")) == 1
        assert mock_storage.calls_of("complete_multipart_upload") == []
        assert [c["part_number"] for c in mock_storage.calls_of("upload_part")] == [
            1,
            2,
            2,
            2,
        ]
        statuses = [p.status for p in multipart.session.parts]
        assert statuses == [PartStatus.UPLOADED, PartStatus.FAILED, PartStatus.PENDING]
        assert mock_storage.uploads["mock-upload-1"]["aborted"] is True

    def test_recoverable_part_failures_still_complete(self, mock_storage):
        payload = _payload(40)
        mock_storage.part_failures[1] = 2
        mock_storage.part_failures[3] = 1
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))

        multipart.run(payload)

        assert multipart.state is SessionState.COMPLETED
        assert len(mock_storage.calls_of("upload_part")) == 3 + 2 + 1
        assert mock_storage.objects[f"{TEST_BUCKET}/obj"]["data"] == payload

    def test_completes_with_ascending_gap_free_parts(self, mock_storage):
        payload = _payload(16 * 7 + 3)
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))

        multipart.run(payload)

        (complete,) = mock_storage.calls_of("complete_multipart_upload")
        assert complete["parts"] == [
            CompletedPart(part_number=n, etag=f'"etag-{n}-{16 if n < 8 else 3}"')
            for n in range(1, 9)
        ]

    def test_run_after_completion_is_rejected_without_store_calls(self, mock_storage):
        payload = _payload(40)
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))
        multipart.run(payload)
        calls_before = len(mock_storage.calls)

        with pytest.raises(InvalidStateError):
            multipart.run(payload)

        assert len(mock_storage.calls) == calls_before
        assert multipart.state is SessionState.COMPLETED

    def test_run_after_abort_is_rejected_without_store_calls(self, mock_storage):
        payload = _payload(40)
        mock_storage.part_failures[1] = ALWAYS
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))
        with pytest.raises(PartUploadFailed):
            multipart.run(payload)
        calls_before = len(mock_storage.calls)

        with pytest.raises(InvalidStateError):
            multipart.run(payload)

        assert len(mock_storage.calls) == calls_before

    def test_run_before_initiate_is_rejected(self, mock_storage):
        multipart = _session(mock_storage, part_size=16)

        with pytest.raises(InvalidStateError):
            multipart.run(b"data")

        assert mock_storage.calls == []
        assert multipart.state is SessionState.UNINITIATED

    def test_payload_size_mismatch_is_rejected(self, mock_storage):
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", 40)

        with pytest.raises(InvalidUploadError):
            multipart.run(_payload(39))

        assert multipart.state is SessionState.INITIATED
        assert mock_storage.calls_of("upload_part") == []

    def test_completion_rejection_aborts_once(self, mock_storage):
        payload = _payload(40)
        mock_storage.complete_error = CompletionError("InvalidPart")
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))

        with pytest.raises(UploadCompletionFailed) as excinfo:
            multipart.run(payload)

        assert isinstance(excinfo.value.__cause__, CompletionError)
        assert multipart.state is SessionState.ABORTED
        assert len(mock_storage.calls_of("complete_multipart_upload")) == 1
        assert len(mock_storage.calls_of("abort_multipart_upload")) == 1

    def test_abort_failure_is_reported_alongside_part_failure(self, mock_storage):
        payload = _payload(40)
        mock_storage.part_failures[2] = ALWAYS
        mock_storage.abort_error = AbortError("NoSuchUpload")
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))

        with pytest.raises(PartUploadFailed) as excinfo:
            multipart.run(payload)

        error = excinfo.value
        assert error.part_number == 2
        assert isinstance(error.abort_error, AbortError)
        assert "NoSuchUpload" in str(error)
        assert "abort also failed" in str(error)
        assert multipart.state is SessionState.ABORTED
        # abort is attempted once, never retried
        assert len(mock_storage.calls_of("abort_multipart_upload")) == 1

    def test_non_storage_abort_failure_does_not_replace_part_failure(self, mock_storage):
        payload = _payload(40)
        mock_storage.part_failures[2] = ALWAYS
        mock_storage.abort_error = ConnectionResetError("peer closed")
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))

        with pytest.raises(PartUploadFailed) as excinfo:
            multipart.run(payload)

        abort_error = excinfo.value.abort_error
        assert isinstance(abort_error, AbortError)
        assert isinstance(abort_error.__cause__, ConnectionResetError)
        assert "peer closed" in str(excinfo.value)
        assert multipart.state is SessionState.ABORTED

    def test_cancellation_aborts_before_next_part(self, mock_storage):
        payload = _payload(40)
        cancel = threading.Event()
        cancel.set()
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", len(payload))

        with pytest.raises(UploadCancelled):
            multipart.run(payload, cancel_event=cancel)

        assert mock_storage.calls_of("upload_part") == []
        assert len(mock_storage.calls_of("abort_multipart_upload")) == 1
        assert multipart.state is SessionState.ABORTED

    def test_unexpected_store_exception_still_aborts(self, mock_storage, monkeypatch):
        def broken_upload_part(**kwargs):
            raise KeyError("bug")

        monkeypatch.setattr(mock_storage, "upload_part", broken_upload_part)
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", 40)

        with pytest.raises(KeyError):
            multipart.run(_payload(40))

        assert len(mock_storage.calls_of("abort_multipart_upload")) == 1
        assert multipart.state is SessionState.ABORTED


class TestMultipartSessionInitiate:
    def test_plans_parts_and_passes_expiry_and_acl(self, mock_storage):
        settings = make_settings(STORAGE_PART_SIZE_BYTES=16)
        multipart = MultipartSession.from_settings(
            mock_storage, settings, bucket=TEST_BUCKET
        )

        session = multipart.initiate("obj", 40, content_type="text/plain")

        assert multipart.state is SessionState.INITIATED
        assert session.upload_id == "mock-upload-1"
        assert [p.size_bytes for p in session.parts] == [16, 16, 8]
        assert all(p.status is PartStatus.PENDING for p in session.parts)
        (call,) = mock_storage.calls_of("init_multipart_upload")
        assert call["acl"] == "public-read"
        assert call["content_type"] == "text/plain"
        assert call["expires_at"] > datetime.now(timezone.utc)

    def test_initiation_failure_is_fatal(self, mock_storage):
        mock_storage.initiate_error = InitiationError("NoSuchBucket")
        multipart = _session(mock_storage, part_size=16)

        with pytest.raises(UploadInitiationFailed) as excinfo:
            multipart.initiate("obj", 40)

        assert isinstance(excinfo.value.__cause__, InitiationError)
        assert multipart.state is SessionState.UNINITIATED
        assert mock_storage.call_names() == ["init_multipart_upload"]

    def test_second_initiate_is_rejected(self, mock_storage):
        multipart = _session(mock_storage, part_size=16)
        multipart.initiate("obj", 40)

        with pytest.raises(InvalidStateError):
            multipart.initiate("obj", 40)

        assert len(mock_storage.calls_of("init_multipart_upload")) == 1

    def test_rejects_empty_payload(self, mock_storage):
        multipart = _session(mock_storage, part_size=16)

        with pytest.raises(InvalidUploadError):
            multipart.initiate("obj", 0)

        assert mock_storage.calls == []

    def test_rejects_payload_needing_too_many_parts(self):
        storage = MockStorageClient()
        multipart = _session(storage, part_size=1)

        with pytest.raises(InvalidUploadError, match=str(MAX_PART_NUMBER)):
            multipart.initiate("obj", MAX_PART_NUMBER + 1)

        assert storage.calls == []

    def test_accepts_exactly_max_parts(self):
        storage = MockStorageClient()
        multipart = _session(storage, part_size=1)

        session = multipart.initiate("obj", MAX_PART_NUMBER)

        assert len(session.parts) == MAX_PART_NUMBER
        assert session.parts[-1].part_number == MAX_PART_NUMBER
