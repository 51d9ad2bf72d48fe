"""
Course persistence (raw SQL).

Every function takes the pool handed out by the connection cache as its first
argument, so the module itself can be passed to `MediaLifecycle` as the repository.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import asyncpg

from core import db
from core.errors import NotFound, RecordValidationError

COLUMNS = (
    "title",
    "description",
    "category",
    "level",
    "price",
    "duration",
    "features",
    "instructor",
    "image",
    "is_active",
)
JSON_COLUMNS = {"features", "instructor"}

RETURNING = """
    id, title, description, category, level, price, duration,
    features, instructor, image, is_active, created_at, updated_at
"""


def _json_arg(value: Any) -> str | None:
    """
    asyncpg does not automatically encode Python objects for jsonb parameters.
    We pass JSON as a string and cast to jsonb in SQL.
    """
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True)


def _decode_row(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    for name in JSON_COLUMNS:
        if isinstance(row.get(name), str):
            row[name] = json.loads(row[name])
    return row


def _column_args(fields: Mapping[str, Any]) -> tuple[list[str], list[Any]]:
    unknown = set(fields) - set(COLUMNS)
    if unknown:
        raise RecordValidationError(f"Unknown course fields: {', '.join(sorted(unknown))}.")

    names: list[str] = []
    args: list[Any] = []
    for name in COLUMNS:
        if name not in fields:
            continue
        value = fields[name]
        names.append(name)
        args.append(_json_arg(value) if name in JSON_COLUMNS else value)
    return names, args


def _placeholder(name: str, index: int) -> str:
    return f"${index}::jsonb" if name in JSON_COLUMNS else f"${index}"


async def find(pool: asyncpg.Pool, course_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one(
        pool,
        f"""
        SELECT {RETURNING}
        FROM courses
        WHERE id = $1
        """,
        course_id,
    )
    return _decode_row(row)


async def find_by_media(pool: asyncpg.Pool, image: str) -> dict[str, Any] | None:
    row = await db.fetch_one(
        pool,
        f"""
        SELECT {RETURNING}
        FROM courses
        WHERE image = $1
        ORDER BY id DESC
        LIMIT 1
        """,
        image,
    )
    return _decode_row(row)


async def list_page(
    pool: asyncpg.Pool,
    *,
    is_active: bool | None = True,
    category: str | None = None,
    level: str | None = None,
    search: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    """
    Newest first. Returns (rows, total matching rows).
    """
    search = (search or "").strip()
    where = """
        WHERE ($1::boolean IS NULL OR is_active = $1)
          AND ($2::text IS NULL OR category = $2)
          AND ($3::text IS NULL OR level = $3)
          AND (
            $4 = ''
            OR title ILIKE ('%' || $4 || '%')
            OR description ILIKE ('%' || $4 || '%')
          )
    """
    args = (is_active, category or None, level or None, search)

    rows = await db.fetch_all(
        pool,
        f"""
        SELECT {RETURNING}
        FROM courses
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT $5
        OFFSET $6
        """,
        *args,
        limit,
        offset,
    )
    total = await db.fetch_value(pool, f"SELECT count(*) FROM courses {where}", *args)
    return [_decode_row(r) for r in rows], int(total or 0)


async def create(pool: asyncpg.Pool, fields: Mapping[str, Any]) -> dict[str, Any]:
    names, args = _column_args(fields)
    if not names:
        raise RecordValidationError("No course fields given.")

    placeholders = ", ".join(_placeholder(name, i) for i, name in enumerate(names, start=1))
    row = await db.fetch_one(
        pool,
        f"""
        INSERT INTO courses ({", ".join(names)})
        VALUES ({placeholders})
        RETURNING {RETURNING}
        """,
        *args,
    )
    if row is None:
        raise RuntimeError("Failed to insert course.")
    return _decode_row(row)


async def update_by_id(pool: asyncpg.Pool, course_id: int, fields: Mapping[str, Any]) -> dict[str, Any]:
    names, args = _column_args(fields)
    assignments = [f"{name} = {_placeholder(name, i)}" for i, name in enumerate(names, start=2)]
    assignments.append("updated_at = now()")

    row = await db.fetch_one(
        pool,
        f"""
        UPDATE courses
        SET {", ".join(assignments)}
        WHERE id = $1
        RETURNING {RETURNING}
        """,
        course_id,
        *args,
    )
    if row is None:
        raise NotFound("Course not found.")
    return _decode_row(row)


async def delete_by_id(pool: asyncpg.Pool, course_id: int) -> None:
    row = await db.fetch_one(
        pool,
        """
        DELETE FROM courses
        WHERE id = $1
        RETURNING id
        """,
        course_id,
    )
    if row is None:
        raise NotFound("Course not found.")
