"""Object API router.

Endpoints for storing, reading and deleting objects in the configured bucket.
Object keys may contain slashes; the ``/meta`` and ``/url`` routes are
registered ahead of the plain object route so they take precedence.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from objectgate.api.v1.deps import get_object_service
from objectgate.api.v1.schemas.objects import (
    ObjectMetaOut,
    ObjectUploadOut,
    ObjectUrlOut,
)
from objectgate.app.services.multipart import PartUploadFailed, UploadError
from objectgate.app.services.object_service import (
    InvalidObjectKeyError,
    ObjectService,
    ObjectTooLargeError,
    normalize_object_key,
)
from objectgate.infra.storage.client import ObjectNotFoundError, StorageError

router = APIRouter()


def _upload_error_detail(exc: UploadError) -> dict[str, object]:
    detail: dict[str, object] = {"message": str(exc), "error_code": "upload_failed"}
    if isinstance(exc, PartUploadFailed):
        detail["part_number"] = exc.part_number
    if exc.abort_error is not None:
        detail["abort_error"] = str(exc.abort_error)
    return detail


def _storage_http_error(exc: StorageError) -> HTTPException:
    if isinstance(exc, ObjectNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(
        status_code=502,
        detail={"message": str(exc), "error_code": "storage_error"},
    )


@router.get(
    "/objects/{key:path}/meta",
    response_model=ObjectMetaOut,
    summary="Get object metadata",
)
def get_object_meta(
    key: str,
    service: ObjectService = Depends(get_object_service),
) -> ObjectMetaOut:
    try:
        object_key = normalize_object_key(key)
        head = service.head_object(object_key)
    except InvalidObjectKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise _storage_http_error(exc) from exc
    return ObjectMetaOut(
        object_key=object_key,
        size_bytes=head.size_bytes,
        etag=head.etag,
        content_type=head.content_type,
    )


@router.get(
    "/objects/{key:path}/url",
    response_model=ObjectUrlOut,
    summary="Get object URL",
    description="Public URL when a public base URL is configured, otherwise a presigned URL.",
)
def get_object_url(
    key: str,
    service: ObjectService = Depends(get_object_service),
) -> ObjectUrlOut:
    try:
        object_key = normalize_object_key(key)
        url = service.object_url(object_key)
    except InvalidObjectKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise _storage_http_error(exc) from exc
    return ObjectUrlOut(object_key=object_key, url=url)


@router.put(
    "/objects/{key:path}",
    response_model=ObjectUploadOut,
    status_code=status.HTTP_201_CREATED,
    summary="Upload object",
    description=(
        "Store the raw request body. Bodies larger than the part size are "
        "uploaded as a multipart upload with per-part retry."
    ),
)
async def put_object(
    key: str,
    request: Request,
    service: ObjectService = Depends(get_object_service),
) -> ObjectUploadOut:
    data = await request.body()
    content_type = request.headers.get("Content-Type")
    try:
        outcome = await run_in_threadpool(
            service.upload_object, key, data, content_type=content_type
        )
    except InvalidObjectKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ObjectTooLargeError as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except UploadError as exc:
        raise HTTPException(status_code=502, detail=_upload_error_detail(exc)) from exc
    return ObjectUploadOut.model_validate(outcome)


@router.get(
    "/objects/{key:path}",
    summary="Download object",
    response_class=Response,
)
def get_object(
    key: str,
    service: ObjectService = Depends(get_object_service),
) -> Response:
    try:
        content = service.get_object(key)
    except InvalidObjectKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise _storage_http_error(exc) from exc
    return Response(content=content, media_type="application/octet-stream")


@router.delete(
    "/objects/{key:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete object",
)
def delete_object(
    key: str,
    service: ObjectService = Depends(get_object_service),
) -> Response:
    try:
        service.delete_object(key)
    except InvalidObjectKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise _storage_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
