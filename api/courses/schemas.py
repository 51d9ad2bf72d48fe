"""
Course payload schemas and the form decoding step.

Multipart forms carry every value as a string, and `features`/`instructor`
arrive as JSON inside a string. `decode_create_form` and `decode_update_form`
turn that into typed fields (or raise RecordValidationError) before anything
reaches the media lifecycle.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import RecordValidationError

JSON_FIELDS = ("features", "instructor")


class Instructor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="", max_length=200)
    bio: str = Field(default="", max_length=2000)
    experience: str = Field(default="", max_length=200)


class CourseCreate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    category: str = Field(..., min_length=1, max_length=100)
    level: str = Field(..., min_length=1, max_length=50)
    price: Decimal | None = Field(default=None, ge=0)
    duration: str | None = Field(default=None, max_length=100)
    features: list[str] = Field(default_factory=list)
    instructor: Instructor = Field(default_factory=Instructor)
    is_active: bool = Field(default=True, alias="isActive")


class CourseUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1, max_length=5000)
    category: str | None = Field(default=None, min_length=1, max_length=100)
    level: str | None = Field(default=None, min_length=1, max_length=50)
    price: Decimal | None = Field(default=None, ge=0)
    duration: str | None = Field(default=None, max_length=100)
    features: list[str] | None = None
    instructor: Instructor | None = None
    is_active: bool | None = Field(default=None, alias="isActive")
    # Only ever cleared (None) or echoed back unchanged; new images come in as files.
    image: str | None = None


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _decode_json_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    decoded = dict(fields)
    for name in JSON_FIELDS:
        raw = decoded.get(name)
        if not isinstance(raw, str):
            continue
        if not raw.strip():
            decoded.pop(name)
            continue
        try:
            decoded[name] = json.loads(raw)
        except ValueError as exc:
            raise RecordValidationError(f"{name}: must be valid JSON.") from exc
    return decoded


def decode_create_form(fields: Mapping[str, Any]) -> dict[str, Any]:
    data = _decode_json_fields(fields)
    data.pop("image", None)
    try:
        payload = CourseCreate.model_validate(data)
    except ValidationError as exc:
        raise RecordValidationError(_format_errors(exc)) from exc
    return payload.model_dump(mode="python")


def decode_update_form(fields: Mapping[str, Any]) -> dict[str, Any]:
    """
    Return only the fields the client sent. An empty `image` value means "clear it".
    """
    data = _decode_json_fields(fields)
    if "image" in data and isinstance(data["image"], str) and data["image"].strip() in ("", "null"):
        data["image"] = None
    try:
        payload = CourseUpdate.model_validate(data)
    except ValidationError as exc:
        raise RecordValidationError(_format_errors(exc)) from exc

    changes = payload.model_dump(mode="python", exclude_unset=True)
    for name in ("title", "description", "category", "level", "features", "instructor", "is_active"):
        if name in changes and changes[name] is None:
            raise RecordValidationError(f"{name}: cannot be null.")
    return changes
