"""Typed rejections raised by the upload pipeline.

Every error carries a machine-readable ``kind`` and a human-readable
``message``. The HTTP layer maps ``kind`` (or ``status_code``) to a response.
"""


class UploadError(Exception):
    kind: str = "upload_error"
    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} kind={self.kind!r} message={self.message!r}>"


class DeclaredMetadataInvalid(UploadError):
    """MIME type, extension or size failed the static checks."""

    kind = "declared_metadata_invalid"
    status_code = 400


class FileTooLarge(DeclaredMetadataInvalid):
    """Declared or streamed size is over the configured maximum."""

    kind = "file_too_large"
    status_code = 413


class ContentMismatch(UploadError):
    """Sniffed signature disagrees with the declared or allowed types."""

    kind = "content_mismatch"
    status_code = 400


class UnsupportedContent(UploadError):
    """Content could not be sniffed conclusively (fail closed)."""

    kind = "unsupported_content"
    status_code = 415


class PathViolation(UploadError):
    """Computed storage path escapes the configured root."""

    kind = "path_violation"
    status_code = 403


class StorageFailure(UploadError):
    """I/O error while persisting bytes."""

    kind = "storage_failure"
    status_code = 500

