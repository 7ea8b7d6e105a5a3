"""Object storage abstraction layer.

This module provides a protocol-based abstraction for object storage backends,
enabling support for S3, MinIO, and other S3-compatible services.
"""

from .client import (
    AbortError,
    CompletedPart,
    CompletionError,
    InitiationError,
    MultipartUpload,
    ObjectHead,
    ObjectNotFoundError,
    StorageClient,
    StorageError,
    TransientPartError,
)

__all__ = [
    "AbortError",
    "CompletedPart",
    "CompletionError",
    "InitiationError",
    "MultipartUpload",
    "ObjectHead",
    "ObjectNotFoundError",
    "StorageClient",
    "StorageError",
    "TransientPartError",
]
