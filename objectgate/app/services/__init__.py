
from .base import (
    BaseService,
    ServiceError,
    StorageBackendNotConfiguredError,
    build_storage_client,
)
from .multipart import (
    InvalidStateError,
    InvalidUploadError,
    MultipartSession,
    PartResult,
    PartStatus,
    PartUploader,
    PartUploadFailed,
    SessionState,
    UploadCancelled,
    UploadCompletionFailed,
    UploadError,
    UploadInitiationFailed,
    UploadSession,
    split_parts,
)
from .object_service import (
    InvalidObjectKeyError,
    ObjectService,
    ObjectTooLargeError,
    UploadOutcome,
)

__all__ = [
    "BaseService",
    "ServiceError",
    "StorageBackendNotConfiguredError",
    "build_storage_client",
    "MultipartSession",
    "PartUploader",
    "PartResult",
    "PartStatus",
    "SessionState",
    "UploadSession",
    "split_parts",
    "UploadError",
    "UploadInitiationFailed",
    "PartUploadFailed",
    "UploadCompletionFailed",
    "UploadCancelled",
    "InvalidStateError",
    "InvalidUploadError",
    "ObjectService",
    "UploadOutcome",
    "InvalidObjectKeyError",
    "ObjectTooLargeError",
]
