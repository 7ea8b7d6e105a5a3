from __future__ import annotations

from objectgate.common.config import Settings, get_settings
from objectgate.infra.storage.client import StorageClient


class ServiceError(Exception):
    """Base class for application service level exceptions."""


class StorageBackendNotConfiguredError(ServiceError):
    """Raised when the storage backend is not properly configured."""


class BaseService:
    """Holds the storage client and settings shared by application services."""

    def __init__(
        self,
        *,
        storage_client: StorageClient | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._storage = storage_client or build_storage_client(self._settings)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def storage(self) -> StorageClient:
        return self._storage

    def _require_bucket(self) -> str:
        if not self._settings.S3_BUCKET:
            raise StorageBackendNotConfiguredError("S3_BUCKET is required")
        return self._settings.S3_BUCKET


def build_storage_client(settings: Settings) -> StorageClient:
    """Build the appropriate storage client based on configuration."""
    from objectgate.infra.storage.s3_client import S3StorageClient

    backend = (settings.STORAGE_BACKEND or "").strip().lower()
    if backend != "s3":
        raise StorageBackendNotConfiguredError(
            f"Unsupported storage backend: {backend}. Only 's3' is supported."
        )
    if not settings.S3_BUCKET:
        raise StorageBackendNotConfiguredError("S3_BUCKET is required")
    if not settings.S3_ACCESS_KEY_ID or not settings.S3_SECRET_ACCESS_KEY:
        raise StorageBackendNotConfiguredError(
            "S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY are required"
        )
    return S3StorageClient(settings=settings)
