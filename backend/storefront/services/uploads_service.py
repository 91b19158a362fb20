import logging

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import UploadError
from storefront.core.file_types import AllowedTypeRules
from storefront.db.models import FileLocation, StoredFile
from storefront.ingestion.pipeline import UploadLimits, UploadRequest, ingest_upload
from storefront.services.storage import FileStore

logger = logging.getLogger(__name__)


def public_url(record: StoredFile) -> str:
    return f"/files/{record.location.value}/{record.storage_name}"


def _compensate(action, *args) -> None:
    """Undo a filesystem step after a failed commit, keeping the commit error."""
    try:
        action(*args)
    except UploadError:
        logger.error("Could not undo %s%r after failed commit", action.__name__, args, exc_info=True)


async def upload_file(
    session: AsyncSession,
    file: UploadFile,
    *,
    rules: AllowedTypeRules,
    store: FileStore,
    limits: UploadLimits,
) -> StoredFile:
    request = UploadRequest(
        stream=file,
        filename=file.filename,
        content_type=file.content_type,
        size=file.size,
    )
    descriptor = await ingest_upload(request, rules=rules, store=store, limits=limits)

    record = StoredFile(
        storage_name=descriptor.storage_name,
        original_name=descriptor.original_name,
        mime_type=descriptor.resolved_mime_type,
        byte_size=descriptor.byte_size,
        sha256=descriptor.sha256,
        storage_path=str(descriptor.storage_path),
        location=FileLocation.temp,
    )
    session.add(record)
    try:
        await session.commit()
    except Exception:
        # No record, no file
        await session.rollback()
        _compensate(store.delete, descriptor.storage_name)
        raise
    await session.refresh(record)
    logger.info("Created stored file id=%s storage_name=%s", record.id, record.storage_name)
    return record


async def list_files(session: AsyncSession) -> list[StoredFile]:
    result = await session.execute(select(StoredFile).order_by(StoredFile.created_at.desc()))
    return list(result.scalars().all())


async def get_file(session: AsyncSession, file_id: int) -> StoredFile | None:
    return await session.get(StoredFile, file_id)


async def promote_file(
    session: AsyncSession,
    record: StoredFile,
    *,
    source: FileStore,
    destination: FileStore,
) -> StoredFile:
    """Move a temp upload into the permanent images directory."""
    if record.location is FileLocation.permanent:
        raise ValueError(f"File {record.id} is already permanent")

    storage_name = record.storage_name
    new_path = source.move(storage_name, destination)
    record.location = FileLocation.permanent
    record.storage_path = str(new_path)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        _compensate(destination.move, storage_name, source)
        raise
    await session.refresh(record)
    return record


async def delete_file(
    session: AsyncSession,
    record: StoredFile,
    *,
    stores: dict[FileLocation, FileStore],
) -> None:
    """Remove the record, then its file.

    The file is only unlinked once the row is gone, so a failed commit never
    leaves a record pointing at nothing.
    """
    file_id = record.id
    storage_name = record.storage_name
    store = stores[record.location]

    await session.delete(record)
    await session.commit()

    if not store.delete(storage_name):
        logger.warning("File %s was already missing from %s", storage_name, store.root)
    logger.info("Deleted stored file id=%s", file_id)

