"""
Course "service layer".

Reads go straight to the repository through the connection cache; every
mutation goes through the media lifecycle so images and rows stay in step.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from core.cloudinary import MediaUpload
from core.errors import NotFound
from media.lifecycle import MediaLifecycle


async def list_courses(
    lifecycle: MediaLifecycle,
    *,
    page: int = 1,
    limit: int = 10,
    category: str | None = None,
    level: str | None = None,
    search: str | None = None,
    is_active: bool | None = True,
) -> dict[str, Any]:
    async with lifecycle.connections.session() as conn:
        rows, total = await lifecycle.repository.list_page(
            conn,
            is_active=is_active,
            category=category,
            level=level,
            search=search,
            limit=limit,
            offset=(page - 1) * limit,
        )
    return {
        "courses": rows,
        "pagination": {
            "current": page,
            "pages": math.ceil(total / limit) if limit else 0,
            "total": total,
        },
    }


async def get_course(lifecycle: MediaLifecycle, course_id: int) -> dict[str, Any]:
    async with lifecycle.connections.session() as conn:
        row = await lifecycle.repository.find(conn, course_id)
    if row is None:
        raise NotFound("Course not found.")
    return row


async def create_course(
    lifecycle: MediaLifecycle,
    fields: Mapping[str, Any],
    media: MediaUpload | None,
) -> dict[str, Any]:
    return await lifecycle.create(fields, media)


async def update_course(
    lifecycle: MediaLifecycle,
    course_id: int,
    changes: Mapping[str, Any],
    media: MediaUpload | None,
) -> dict[str, Any]:
    existing = await get_course(lifecycle, course_id)
    return await lifecycle.replace(existing, changes, media)


async def delete_course(lifecycle: MediaLifecycle, course_id: int) -> None:
    existing = await get_course(lifecycle, course_id)
    await lifecycle.delete(existing)
