import logging
from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.schemas import StoredFileOut, UploadErrorResponse, UploadResponse
from storefront.core.config import settings
from storefront.core.errors import UploadError
from storefront.core.file_types import AllowedTypeRules, get_allowed_type_rules
from storefront.db.models import FileLocation, StoredFile
from storefront.db.session import get_session
from storefront.ingestion.pipeline import UploadLimits
from storefront.services.storage import FileStore, get_images_store, get_upload_store
from storefront.services.uploads_service import (
    delete_file,
    get_file,
    list_files,
    promote_file,
    public_url,
    upload_file,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


# ---------------------------------------------------------------------------
# Injectable providers
# ---------------------------------------------------------------------------

def _get_rules() -> AllowedTypeRules:
    return get_allowed_type_rules()


def _get_limits() -> UploadLimits:
    return UploadLimits.from_settings(settings)


def _get_upload_store() -> FileStore:
    return get_upload_store()


def _get_images_store() -> FileStore:
    return get_images_store()


def _to_out(record: StoredFile) -> StoredFileOut:
    out = StoredFileOut.model_validate(record)
    out.location = record.location.value
    out.url = public_url(record)
    return out


def _upload_http_error(exc: UploadError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


async def _get_record_or_404(session: AsyncSession, file_id: int) -> StoredFile:
    record = await get_file(session, file_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File {file_id} not found",
        )
    return record


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a single image",
    responses={
        400: {"model": UploadErrorResponse},
        403: {"model": UploadErrorResponse},
        413: {"model": UploadErrorResponse},
        415: {"model": UploadErrorResponse},
        500: {"model": UploadErrorResponse},
    },
)
async def upload_file_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    rules: Annotated[AllowedTypeRules, Depends(_get_rules)],
    limits: Annotated[UploadLimits, Depends(_get_limits)],
    store: Annotated[FileStore, Depends(_get_upload_store)],
    file: UploadFile = File(...),
) -> UploadResponse:
    try:
        record = await upload_file(session, file, rules=rules, store=store, limits=limits)
    except UploadError as exc:
        raise _upload_http_error(exc)
    finally:
        await file.close()

    return UploadResponse(
        file_id=record.id,
        storage_name=record.storage_name,
        original_name=record.original_name,
        mime_type=record.mime_type,
        byte_size=record.byte_size,
        sha256=record.sha256,
        url=public_url(record),
        message="File uploaded successfully.",
    )


@router.get("", response_model=list[StoredFileOut])
async def list_files_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> list[StoredFileOut]:
    records = await list_files(session)
    return [_to_out(r) for r in records]


@router.get("/{file_id}", response_model=StoredFileOut)
async def get_file_endpoint(
    file_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> StoredFileOut:
    record = await _get_record_or_404(session, file_id)
    return _to_out(record)


@router.post(
    "/{file_id}/promote",
    response_model=StoredFileOut,
    summary="Move a temporary upload into permanent image storage",
)
async def promote_file_endpoint(
    file_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    source: Annotated[FileStore, Depends(_get_upload_store)],
    destination: Annotated[FileStore, Depends(_get_images_store)],
) -> StoredFileOut:
    record = await _get_record_or_404(session, file_id)
    try:
        record = await promote_file(session, record, source=source, destination=destination)
    except ValueError as exc:
        logger.info("Promote refused for file_id=%d: %s", file_id, exc)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except UploadError as exc:
        raise _upload_http_error(exc)
    return _to_out(record)


@router.delete("/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file_endpoint(
    file_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    temp_store: Annotated[FileStore, Depends(_get_upload_store)],
    images_store: Annotated[FileStore, Depends(_get_images_store)],
) -> Response:
    record = await _get_record_or_404(session, file_id)
    try:
        await delete_file(
            session,
            record,
            stores={FileLocation.temp: temp_store, FileLocation.permanent: images_store},
        )
    except UploadError as exc:
        raise _upload_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
