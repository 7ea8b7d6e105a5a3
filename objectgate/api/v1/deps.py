from __future__ import annotations

import logging

from fastapi import Header, HTTPException, Request

from objectgate.app.services.base import (
    StorageBackendNotConfiguredError,
    build_storage_client,
)
from objectgate.app.services.object_service import ObjectService
from objectgate.common.config import Settings

logger = logging.getLogger("http")


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_object_service(request: Request) -> ObjectService:
    state = request.app.state
    settings: Settings = state.settings
    if state.storage_client is None:
        try:
            state.storage_client = build_storage_client(settings)
        except StorageBackendNotConfiguredError as exc:
            logger.error("storage_not_configured detail=%s", exc)
            raise HTTPException(
                status_code=503,
                detail={"message": str(exc), "error_code": "storage_not_configured"},
            ) from exc
    return ObjectService(storage_client=state.storage_client, settings=settings)


def require_api_key(
    request: Request, x_api_key: str | None = Header(default=None)
) -> None:
    settings = get_app_settings(request)
    if settings.API_KEY_ENABLED:
        api_key_expected = settings.API_KEY
        if not x_api_key or (api_key_expected and x_api_key != api_key_expected):
            raise HTTPException(status_code=401, detail="Invalid API key")
