"""
FastAPI router for course endpoints.

Create/update accept multipart form data: plain text fields plus an optional
`image` file part.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request, status
from starlette.datastructures import UploadFile

from core.cloudinary import MediaUpload
from media.lifecycle import MediaLifecycle

from . import schemas, service

router = APIRouter(prefix="/api/courses")

MEDIA_FIELD = "image"


def _lifecycle(request: Request) -> MediaLifecycle:
    return request.app.state.lifecycle


async def read_upload(file: UploadFile, max_bytes: int) -> MediaUpload:
    """
    Read the upload into memory, stopping as soon as it exceeds `max_bytes`.

    The oversized upload is not rejected here; its `byte_count` tells the blob
    store adapter to reject it before any network call.
    """
    chunk_size = 1024 * 1024  # 1 MiB
    buf = bytearray()

    while True:
        chunk = await file.read(chunk_size)
        if not chunk:
            break
        buf.extend(chunk)
        if len(buf) > max_bytes:
            break

    declared = file.size or 0
    return MediaUpload(
        data=bytes(buf),
        mime_type=file.content_type,
        byte_count=max(declared, len(buf)),
        filename=file.filename,
    )


async def _split_form(request: Request, max_bytes: int) -> tuple[dict[str, Any], MediaUpload | None]:
    form = await request.form()
    fields: dict[str, Any] = {}
    media: MediaUpload | None = None

    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            # Browsers send an empty, nameless part when no file was chosen.
            if key != MEDIA_FIELD or (not value.filename and not value.size):
                continue
            media = await read_upload(value, max_bytes)
        else:
            fields[key] = value
    return fields, media


@router.get("")
async def list_courses(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: str | None = Query(default=None, max_length=100),
    level: str | None = Query(default=None, max_length=50),
    search: str | None = Query(default=None, max_length=200),
    is_active: bool | None = Query(default=True, alias="isActive"),
) -> dict:
    data = await service.list_courses(
        _lifecycle(request),
        page=page,
        limit=limit,
        category=category,
        level=level,
        search=search,
        is_active=is_active,
    )
    return {"success": True, "data": data}


@router.get("/{course_id}")
async def get_course(course_id: int, request: Request) -> dict:
    course = await service.get_course(_lifecycle(request), course_id)
    return {"success": True, "data": course}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_course(request: Request) -> dict:
    lifecycle = _lifecycle(request)
    fields, media = await _split_form(request, lifecycle.constraints.max_bytes)
    payload = schemas.decode_create_form(fields)

    course = await service.create_course(lifecycle, payload, media)
    return {"success": True, "message": "Course created successfully", "data": course}


@router.put("/{course_id}")
async def update_course(course_id: int, request: Request) -> dict:
    lifecycle = _lifecycle(request)
    fields, media = await _split_form(request, lifecycle.constraints.max_bytes)
    changes = schemas.decode_update_form(fields)

    course = await service.update_course(lifecycle, course_id, changes, media)
    return {"success": True, "message": "Course updated successfully", "data": course}


@router.delete("/{course_id}")
async def delete_course(course_id: int, request: Request) -> dict:
    await service.delete_course(_lifecycle(request), course_id)
    return {"success": True, "message": "Course deleted successfully"}
