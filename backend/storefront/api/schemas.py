from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Stored files
# ---------------------------------------------------------------------------

class StoredFileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    storage_name: str
    original_name: str
    mime_type: str
    byte_size: int
    sha256: str
    location: str
    url: str = ""
    created_at: datetime


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

class UploadResponse(BaseModel):
    file_id: int
    storage_name: str
    original_name: str = Field(..., description="HTML-escaped client filename, display only")
    mime_type: str
    byte_size: int
    sha256: str
    url: str
    message: str = ""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UploadErrorDetail(BaseModel):
    kind: str = Field(..., examples=["content_mismatch"])
    message: str


class UploadErrorResponse(BaseModel):
    detail: UploadErrorDetail
