"""boto3-backed StorageClient for AWS S3, MinIO and other S3-compatible stores.

Every botocore failure is re-raised as the StorageError subclass matching the
operation (InitiationError, TransientPartError, ...), with the original
exception chained as ``__cause__``.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Sequence

from objectgate.infra.storage.client import (
    AbortError,
    CompletedPart,
    CompletionError,
    InitiationError,
    MultipartUpload,
    ObjectHead,
    ObjectNotFoundError,
    StorageError,
    TransientPartError,
)

if TYPE_CHECKING:
    from objectgate.common.config import Settings

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _is_not_found(exc: Exception) -> bool:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return False
    code = str(response.get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES


class S3StorageClient:
    """StorageClient implementation on top of a boto3 ``s3`` client."""

    def __init__(self, *, settings: "Settings") -> None:
        self._settings = settings
        self._client = self._build_client(settings)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        try:
            import boto3
            from botocore.config import Config
        except ImportError as exc:
            raise StorageError(
                "boto3 and botocore are required for S3 storage backend. "
                "Install with: pip install boto3"
            ) from exc

        addressing_style = (settings.S3_ADDRESSING_STYLE or "path").strip().lower()
        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=settings.S3_CONNECT_TIMEOUT,
            read_timeout=settings.S3_READ_TIMEOUT,
        )

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def _call(
        self,
        operation: str,
        failure: Callable[[Exception], StorageError],
        *,
        object_key: str | None = None,
        **params: Any,
    ) -> Any:
        """Invoke ``operation`` on the boto3 client, translating failures.

        A missing-object response becomes ObjectNotFoundError when
        ``object_key`` is given; anything else goes through ``failure``.
        """
        try:
            return getattr(self._client, operation)(**params)
        except Exception as exc:
            if object_key is not None and _is_not_found(exc):
                raise ObjectNotFoundError(f"Object not found: {object_key}") from exc
            raise failure(exc) from exc

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
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        optional = {
            "ContentType": content_type,
            "Metadata": metadata,
            "ACL": acl,
        }
        params.update({name: value for name, value in optional.items() if value})
        if expires_at is not None:
            params["Expires"] = expires_at

        response = self._call(
            "create_multipart_upload",
            lambda exc: InitiationError(f"Failed to create multipart upload: {exc}"),
            **params,
        )
        upload_id = response.get("UploadId")
        if not upload_id:
            raise InitiationError("S3 response missing UploadId")
        return MultipartUpload(
            upload_id=str(upload_id), bucket=bucket, object_key=object_key
        )

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> str:
        # 每次调用只尝试一次，重试由上层 PartUploader 负责
        response = self._call(
            "upload_part",
            lambda exc: TransientPartError(
                f"Failed to upload part {part_number}: {exc}", part_number=part_number
            ),
            Bucket=bucket,
            Key=object_key,
            UploadId=upload_id,
            PartNumber=int(part_number),
            Body=data,
            ContentLength=len(data),
        )
        etag = response.get("ETag")
        if not etag:
            raise TransientPartError(
                f"S3 response missing ETag for part {part_number}",
                part_number=part_number,
            )
        return str(etag)

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> None:
        """Submit the part list as given; callers pass it in ascending order."""
        self._call(
            "complete_multipart_upload",
            lambda exc: CompletionError(f"Failed to complete multipart upload: {exc}"),
            Bucket=bucket,
            Key=object_key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [
                    {"ETag": part.etag, "PartNumber": int(part.part_number)}
                    for part in parts
                ]
            },
        )

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        self._call(
            "abort_multipart_upload",
            lambda exc: AbortError(f"Failed to abort multipart upload: {exc}"),
            Bucket=bucket,
            Key=object_key,
            UploadId=upload_id,
        )

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        data: bytes,
        content_type: str | None = None,
        acl: str | None = None,
    ) -> None:
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        if acl:
            params["ACL"] = acl
        self._call(
            "put_object",
            lambda exc: StorageError(f"Failed to put object: {exc}"),
            **params,
        )

    def get_object(self, *, bucket: str, object_key: str) -> bytes:
        response = self._call(
            "get_object",
            lambda exc: StorageError(f"Failed to get object: {exc}"),
            object_key=object_key,
            Bucket=bucket,
            Key=object_key,
        )
        body = response["Body"]
        try:
            return body.read()
        except Exception as exc:
            raise StorageError(f"Failed to read object body: {exc}") from exc
        finally:
            body.close()

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        response = self._call(
            "head_object",
            lambda exc: StorageError(f"Failed to get object metadata: {exc}"),
            object_key=object_key,
            Bucket=bucket,
            Key=object_key,
        )
        size = response.get("ContentLength")
        return ObjectHead(
            size_bytes=int(size) if size is not None else 0,
            etag=response.get("ETag"),
            content_type=response.get("ContentType"),
        )

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        filename: str | None = None,
    ) -> str:
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if filename:
            quoted = filename.replace('"', '\\"')
            params["ResponseContentDisposition"] = f'attachment; filename="{quoted}"'

        url = self._call(
            "generate_presigned_url",
            lambda exc: StorageError(f"Failed to generate download URL: {exc}"),
            ClientMethod="get_object",
            Params=params,
            ExpiresIn=int(expires_in),
        )
        if not url:
            raise StorageError("Generated presigned URL is empty")
        return str(url)

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        self._call(
            "delete_object",
            lambda exc: StorageError(f"Failed to delete object: {exc}"),
            Bucket=bucket,
            Key=object_key,
        )
