"""
Cloudinary HTTP client helpers (blob store adapter).

Used endpoints:
- POST /v1_1/{cloud}/image/upload   -> {"public_id": "...", "secure_url": "https://res.cloudinary.com/..."}
- POST /v1_1/{cloud}/image/destroy  -> {"result": "ok" | "not found"}
- GET  /v1_1/{cloud}/ping           -> {"status": "ok"}

Upload and destroy are the only state-changing calls. Everything else here is
pure parsing and can be tested without a network.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from .errors import DeleteFailed, MalformedReference, UploadFailed, UploadRejected
from .settings import DEFAULT_ALLOWED_FORMATS, DEFAULT_MAX_UPLOAD_BYTES, Settings

API_BASE_URL = "https://api.cloudinary.com"
DELIVERY_HOST = "res.cloudinary.com"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaUpload:
    """
    Bytes received from the request boundary. `byte_count` is the size the
    client declared (or the size read so far when the body was cut off).
    """

    data: bytes
    mime_type: str | None
    byte_count: int
    filename: str | None = None


@dataclass(frozen=True)
class UploadConstraints:
    mime_prefix: str = "image/"
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_formats: tuple[str, ...] = DEFAULT_ALLOWED_FORMATS
    max_width: int = 1200
    max_height: int = 800
    crop: str = "limit"
    quality: str = "auto"

    def transformation(self) -> str:
        # Cloudinary transformation string, components sorted by key.
        return f"c_{self.crop},h_{self.max_height},q_{self.quality},w_{self.max_width}"


def extract_public_id(reference: str) -> str:
    """
    Return the public id embedded in a delivery URL.

    `https://res.cloudinary.com/demo/image/upload/v1/folder/abc123.jpg` -> `abc123`
    """
    raw = (reference or "").strip()
    segment = urlsplit(raw).path.rsplit("/", 1)[-1]
    if not segment:
        raise MalformedReference(f"Media reference has no path segment: {raw!r}")

    stem, sep, ext = segment.rpartition(".")
    if not sep or not stem or not ext:
        raise MalformedReference(f"Media reference has no file extension: {raw!r}")
    return stem


_VERSION_SEGMENT = re.compile(r"v\d+")


def asset_public_id(reference: str) -> str:
    """
    Return the full public id (folders included) of a Cloudinary delivery URL.

    `https://res.cloudinary.com/demo/image/upload/c_limit,w_1200/v17/folder/abc123.jpg` -> `folder/abc123`

    Everything up to the version segment is transformations. Without a version,
    only comma-joined transformation segments are recognised, since a single
    `w_100` cannot be told apart from a folder name.
    """
    public_id = extract_public_id(reference)
    segments = [s for s in urlsplit(reference.strip()).path.split("/") if s]
    if "upload" not in segments[:-1]:
        raise MalformedReference(f"Media reference is not a Cloudinary upload URL: {reference.strip()!r}")

    folders = segments[segments.index("upload") + 1 : -1]
    versions = [i for i, s in enumerate(folders) if _VERSION_SEGMENT.fullmatch(s)]
    if versions:
        folders = folders[versions[0] + 1 :]
    else:
        while folders and "," in folders[0]:
            folders.pop(0)
    return "/".join([*folders, public_id])


def check_constraints(media: MediaUpload, constraints: UploadConstraints) -> None:
    """
    Local checks that must pass before any bytes leave the process.
    """
    mime = (media.mime_type or "").strip().lower()
    if not mime.startswith(constraints.mime_prefix):
        raise UploadRejected("Only image files are allowed.")

    size = max(media.byte_count, len(media.data))
    if size > constraints.max_bytes:
        raise UploadRejected(f"File too large. Max is {constraints.max_bytes} bytes.")
    if not media.data:
        raise UploadRejected("Empty file uploaded.")


def sign_params(params: dict[str, Any], api_secret: str) -> str:
    """
    Cloudinary request signature: sha1 of `k=v&...` (sorted, empty values
    dropped, lists comma-joined) followed by the API secret.
    """
    parts = []
    for key in sorted(params):
        value = params[key]
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        parts.append(f"{key}={value}")
    to_sign = "&".join(parts) + api_secret
    return hashlib.sha1(to_sign.encode("utf-8")).hexdigest()


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])[:300]
    return resp.text[:300]


class CloudinaryStore:
    def __init__(
        self,
        *,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        folder: str = "",
        timeout_s: float = 30.0,
        base_url: str = API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        clock=time.time,
    ) -> None:
        if not cloud_name or not api_key or not api_secret:
            raise RuntimeError("Cloudinary credentials are incomplete.")
        self.cloud_name = cloud_name
        self.folder = folder.strip("/")
        self._api_key = api_key
        self._api_secret = api_secret
        self._timeout_s = timeout_s
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "CloudinaryStore":
        return cls(
            cloud_name=settings.cloudinary_cloud_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
            folder=settings.cloudinary_folder,
            timeout_s=settings.blob_timeout_s,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            transport=self._transport,
        )

    def _signed(self, params: dict[str, Any]) -> dict[str, str]:
        params = {k: v for k, v in params.items() if v is not None and v != ""}
        params["timestamp"] = str(int(self._clock()))
        signature = sign_params(params, self._api_secret)
        form = {
            k: ",".join(str(x) for x in v) if isinstance(v, (list, tuple)) else str(v)
            for k, v in params.items()
        }
        form["api_key"] = self._api_key
        form["signature"] = signature
        return form

    def destroy_id(self, reference: str) -> str:
        # The folder comes from the reference itself: assets written before a
        # CLOUDINARY_FOLDER change still live under their old folder.
        public_id = asset_public_id(reference)
        if self.folder and not public_id.startswith(f"{self.folder}/"):
            logger.info("media_outside_folder folder=%s public_id=%s", self.folder, public_id)
        return public_id

    async def upload(self, media: MediaUpload, constraints: UploadConstraints) -> str:
        """
        Store `media` and return its delivery URL.
        """
        check_constraints(media, constraints)

        form = self._signed(
            {
                "folder": self.folder,
                "allowed_formats": list(constraints.allowed_formats),
                "transformation": constraints.transformation(),
            }
        )
        files = {
            "file": (
                media.filename or "upload",
                media.data,
                media.mime_type or "application/octet-stream",
            )
        }

        try:
            async with self._client() as client:
                resp = await client.post(
                    f"/v1_1/{self.cloud_name}/image/upload",
                    data=form,
                    files=files,
                )
        except httpx.TimeoutException as exc:
            raise UploadFailed("Image upload timed out.") from exc
        except httpx.HTTPError as exc:
            raise UploadFailed(f"Image upload failed: {exc}") from exc

        if resp.status_code != 200:
            message = _error_message(resp)
            logger.warning("media_upload_failed status=%s error=%s", resp.status_code, message)
            raise UploadFailed(f"Image upload failed: {message}")

        try:
            data: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise UploadFailed("Image upload returned a malformed response.") from exc

        url = data.get("secure_url") if isinstance(data, dict) else None
        if not isinstance(url, str) or urlsplit(url).hostname != DELIVERY_HOST:
            raise UploadFailed("Image upload returned no usable URL.")

        logger.info("media_uploaded public_id=%s bytes=%s", data.get("public_id"), len(media.data))
        return url

    async def delete(self, reference: str) -> None:
        """
        Remove the blob behind `reference`. A blob that is already gone counts as deleted.
        """
        public_id = self.destroy_id(reference)
        form = self._signed({"public_id": public_id, "invalidate": "true"})

        try:
            async with self._client() as client:
                resp = await client.post(f"/v1_1/{self.cloud_name}/image/destroy", data=form)
        except httpx.HTTPError as exc:
            raise DeleteFailed(f"Image delete failed: {exc}") from exc

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise DeleteFailed(f"Image delete failed: {resp.status_code} {_error_message(resp)}")

        try:
            result = str(resp.json().get("result") or "")
        except (ValueError, AttributeError) as exc:
            raise DeleteFailed("Image delete returned a malformed response.") from exc

        if result == "ok":
            logger.info("media_deleted public_id=%s", public_id)
            return None
        if result == "not found":
            logger.info("media_already_deleted public_id=%s", public_id)
            return None
        raise DeleteFailed(f"Image delete failed: {result or 'unknown result'}")

    async def ping(self) -> bool:
        """
        Admin API reachability check. Used for a startup log line only.
        """
        try:
            async with self._client() as client:
                resp = await client.get(
                    f"/v1_1/{self.cloud_name}/ping",
                    auth=(self._api_key, self._api_secret),
                )
        except httpx.HTTPError as exc:
            logger.warning("cloudinary_ping_failed error=%s", exc)
            return False

        if resp.status_code != 200:
            logger.warning("cloudinary_ping_failed status=%s", resp.status_code)
            return False
        return True
