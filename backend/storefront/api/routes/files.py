import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from storefront.core.errors import PathViolation
from storefront.core.file_types import AllowedTypeRules, get_allowed_type_rules
from storefront.core.security import extract_extension, is_storage_name
from storefront.db.models import FileLocation
from storefront.services.storage import FileStore, get_images_store, get_upload_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])

CACHE_MAX_AGE = 24 * 60 * 60  # 1 day


# ---------------------------------------------------------------------------
# Injectable providers
# ---------------------------------------------------------------------------

def _get_rules() -> AllowedTypeRules:
    return get_allowed_type_rules()


def _get_upload_store() -> FileStore:
    return get_upload_store()


def _get_images_store() -> FileStore:
    return get_images_store()


def _media_type(storage_name: str, rules: AllowedTypeRules) -> str:
    ext = extract_extension(storage_name)
    for rule in rules:
        if ext in rule.extensions:
            return rule.mime_type
    return "application/octet-stream"


@router.get("/{location}/{storage_name}", response_class=FileResponse)
async def serve_file_endpoint(
    location: FileLocation,
    storage_name: str,
    rules: Annotated[AllowedTypeRules, Depends(_get_rules)],
    temp_store: Annotated[FileStore, Depends(_get_upload_store)],
    images_store: Annotated[FileStore, Depends(_get_images_store)],
) -> FileResponse:
    not_found = HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    # Only names this service generated are ever served
    if not is_storage_name(storage_name):
        raise not_found

    store = images_store if location is FileLocation.permanent else temp_store
    try:
        path = store.open_path(storage_name)
    except PathViolation:
        raise not_found
    if path is None:
        logger.debug("No stored file %s in %s", storage_name, location.value)
        raise not_found

    return FileResponse(
        path,
        media_type=_media_type(storage_name, rules),
        headers={
            "Cache-Control": f"max-age={CACHE_MAX_AGE}",
            "X-Content-Type-Options": "nosniff",
        },
    )
