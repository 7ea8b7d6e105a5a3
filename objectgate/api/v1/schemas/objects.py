"""Pydantic schemas for object API endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ObjectUploadOut(BaseModel):
    """Response model for a stored object."""

    model_config = ConfigDict(from_attributes=True)

    object_key: str
    size_bytes: int
    multipart: bool
    part_count: int
    upload_id: str | None = None


class ObjectMetaOut(BaseModel):
    """Object metadata as reported by the store."""

    object_key: str
    size_bytes: int
    etag: str | None = None
    content_type: str | None = None


class ObjectUrlOut(BaseModel):
    """Public or presigned URL for downloading an object."""

    object_key: str
    url: str
