"""
Media lifecycle orchestrator.

Sequences blob uploads, record mutations and blob deletions so that:
- a record never points at a blob that does not exist
  (upload before the record changes, delete only after it changed)
- a blob that no record references is cleaned up on a best-effort basis
  (compensating deletes are logged when they fail, never raised)

Each mutation runs to a terminal state: the record is returned (committed)
or a `LifecycleError` is raised (rejected). When the reply to a persist is lost
(`ConnectionLost`, `QueryTimeout`) the record is read back before deciding
which blob to delete.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar

from core.cloudinary import MediaUpload, UploadConstraints, check_constraints
from core.connection import ConnectionCache
from core.errors import (
    ConnectionLost,
    DeleteFailed,
    LifecycleError,
    MalformedReference,
    MissingMedia,
    QueryTimeout,
    RecordValidationError,
)

T = TypeVar("T")

# The statement may or may not have committed when one of these is raised.
OUTCOME_UNKNOWN = (ConnectionLost, QueryTimeout)

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def upload(self, media: MediaUpload, constraints: UploadConstraints) -> str: ...

    async def delete(self, reference: str) -> None: ...


class Repository(Protocol):
    async def find(self, conn: Any, record_id: int) -> dict[str, Any] | None: ...

    async def find_by_media(self, conn: Any, reference: str) -> dict[str, Any] | None: ...

    async def create(self, conn: Any, fields: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update_by_id(self, conn: Any, record_id: int, fields: Mapping[str, Any]) -> dict[str, Any]: ...

    async def delete_by_id(self, conn: Any, record_id: int) -> None: ...

    async def list_page(self, conn: Any, **filters: Any) -> tuple[list[dict[str, Any]], int]: ...


async def run_to_completion(
    aw: Awaitable[T],
    *,
    on_cancel: Callable[[asyncio.Future[T]], Awaitable[None]] | None = None,
) -> T:
    """
    Await `aw` so that cancelling the caller does not interrupt it.

    If the caller is cancelled, wait for the step to finish, hand the finished
    future to `on_cancel` so the step can be settled, then re-raise the cancellation.
    """
    step = asyncio.ensure_future(aw)
    try:
        return await asyncio.shield(step)
    except asyncio.CancelledError:
        await asyncio.wait({step})
        if on_cancel is not None and not step.cancelled():
            await on_cancel(step)
        elif not step.cancelled():
            step.exception()
        raise


def _succeeded(step: asyncio.Future[Any]) -> bool:
    return not step.cancelled() and step.exception() is None


def _step_error(step: asyncio.Future[Any]) -> BaseException | None:
    return None if step.cancelled() else step.exception()


class MediaLifecycle:
    def __init__(
        self,
        connections: ConnectionCache[Any],
        blobs: BlobStore,
        repository: Repository,
        *,
        constraints: UploadConstraints | None = None,
        media_field: str = "image",
        id_field: str = "id",
        media_required: bool = True,
    ) -> None:
        self.connections = connections
        self.blobs = blobs
        self.repository = repository
        self.constraints = constraints or UploadConstraints()
        self.media_field = media_field
        self.id_field = id_field
        self.media_required = media_required

    async def create(self, fields: Mapping[str, Any], media: MediaUpload | None = None) -> dict[str, Any]:
        fields = dict(fields)
        if fields.pop(self.media_field, None) is not None:
            raise RecordValidationError(f"'{self.media_field}' can only be set by uploading a file.")

        if media is None:
            if self.media_required:
                raise MissingMedia("An image file is required.")
            async with self.connections.session() as conn:
                return await run_to_completion(self.repository.create(conn, fields))

        # A file that fails the local checks must not cost a connect or an upload.
        check_constraints(media, self.constraints)

        reference: str | None = None
        try:
            async with self.connections.session() as conn:
                reference = await self._upload(media)

                async def settle(step: asyncio.Future[dict[str, Any]]) -> None:
                    if not _succeeded(step):
                        await self._settle_failed_create(reference, _step_error(step))

                record = await run_to_completion(
                    self.repository.create(conn, {**fields, self.media_field: reference}),
                    on_cancel=settle,
                )
        except Exception as exc:
            if reference is not None:
                await self._settle_failed_create(reference, exc)
            raise

        logger.info("media_create_committed id=%s reference=%s", record.get(self.id_field), reference)
        return record

    async def replace(
        self,
        existing: Mapping[str, Any],
        changes: Mapping[str, Any],
        media: MediaUpload | None = None,
    ) -> dict[str, Any]:
        record_id = existing[self.id_field]
        old_reference = existing.get(self.media_field)
        changes = dict(changes)

        if media is None:
            changes = self._check_media_change(old_reference, changes)
            async with self.connections.session() as conn:
                return await run_to_completion(self.repository.update_by_id(conn, record_id, changes))

        changes.pop(self.media_field, None)
        check_constraints(media, self.constraints)

        new_reference: str | None = None
        try:
            async with self.connections.session() as conn:
                new_reference = await self._upload(media)

                async def settle(step: asyncio.Future[dict[str, Any]]) -> None:
                    if _succeeded(step):
                        await self._discard_replaced(old_reference, new_reference)
                    else:
                        await self._settle_failed_replace(record_id, old_reference, new_reference, _step_error(step))

                record = await run_to_completion(
                    self.repository.update_by_id(conn, record_id, {**changes, self.media_field: new_reference}),
                    on_cancel=settle,
                )
        except Exception as exc:
            if new_reference is not None:
                await self._settle_failed_replace(record_id, old_reference, new_reference, exc)
            raise

        await self._discard_replaced(old_reference, new_reference)
        logger.info("media_replace_committed id=%s reference=%s", record_id, new_reference)
        return record

    async def delete(self, existing: Mapping[str, Any]) -> None:
        record_id = existing[self.id_field]
        reference = existing.get(self.media_field)

        async def settle(step: asyncio.Future[None]) -> None:
            if _succeeded(step) and reference:
                await self._discard(reference, reason="deleted")

        # Record first: a crash in between leaves an orphaned blob, never a dangling reference.
        async with self.connections.session() as conn:
            await run_to_completion(self.repository.delete_by_id(conn, record_id), on_cancel=settle)

        if reference:
            await self._discard(reference, reason="deleted")
        logger.info("media_delete_committed id=%s", record_id)

    def _check_media_change(self, old_reference: Any, changes: dict[str, Any]) -> dict[str, Any]:
        if self.media_field not in changes:
            return changes

        value = changes[self.media_field]
        if value is None:
            if self.media_required:
                raise MissingMedia("The image cannot be removed; upload a replacement instead.")
            return changes
        if value == old_reference:
            changes.pop(self.media_field)
            return changes
        raise RecordValidationError(f"'{self.media_field}' can only be set by uploading a file.")

    async def _settle_failed_create(self, reference: str, error: BaseException | None) -> None:
        """
        Persist of a new record failed after its upload. Delete the upload,
        unless the failure leaves open whether the row was written.
        """
        if not isinstance(error, OUTCOME_UNKNOWN):
            await self._discard(reference, reason="create_rejected")
            return None

        try:
            record = await self._read_back(lambda conn: self.repository.find_by_media(conn, reference))
        except LifecycleError as exc:
            logger.warning("media_cleanup_skipped reason=create_outcome_unknown reference=%s error=%s", reference, exc)
            return None

        if record is None:
            await self._discard(reference, reason="create_rejected")
        else:
            logger.warning(
                "media_create_committed_despite_error id=%s reference=%s", record.get(self.id_field), reference
            )

    async def _settle_failed_replace(
        self,
        record_id: Any,
        old_reference: Any,
        new_reference: str,
        error: BaseException | None,
    ) -> None:
        if not isinstance(error, OUTCOME_UNKNOWN):
            await self._discard(new_reference, reason="replace_rejected")
            return None

        try:
            record = await self._read_back(lambda conn: self.repository.find(conn, record_id))
        except LifecycleError as exc:
            logger.warning(
                "media_cleanup_skipped reason=replace_outcome_unknown reference=%s error=%s", new_reference, exc
            )
            return None

        if record is not None and record.get(self.media_field) == new_reference:
            logger.warning("media_replace_committed_despite_error id=%s reference=%s", record_id, new_reference)
            await self._discard_replaced(old_reference, new_reference)
        else:
            await self._discard(new_reference, reason="replace_rejected")

    async def _read_back(self, read: Callable[[Any], Awaitable[T]]) -> T:
        # Fresh session: the failed one may have dropped the cached handle.
        async with self.connections.session() as conn:
            return await run_to_completion(read(conn))

    async def _upload(self, media: MediaUpload) -> str:
        async def settle(step: asyncio.Future[str]) -> None:
            if _succeeded(step):
                await self._discard(step.result(), reason="upload_cancelled")

        return await run_to_completion(self.blobs.upload(media, self.constraints), on_cancel=settle)

    async def _discard_replaced(self, old_reference: Any, new_reference: str) -> None:
        if old_reference and old_reference != new_reference:
            await self._discard(old_reference, reason="replaced")

    async def _discard(self, reference: str, *, reason: str) -> None:
        """
        Best-effort blob delete. Failures are logged; the blob may stay orphaned.
        """
        try:
            await run_to_completion(self.blobs.delete(reference))
        except (DeleteFailed, MalformedReference) as exc:
            logger.warning("media_cleanup_failed reason=%s reference=%s error=%s", reason, reference, exc)
            return None
        logger.info("media_cleanup_done reason=%s reference=%s", reason, reference)
