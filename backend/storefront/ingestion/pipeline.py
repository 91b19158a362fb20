import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from storefront.core.config import Settings
from storefront.core.errors import DeclaredMetadataInvalid, FileTooLarge, UploadError
from storefront.core.file_types import AllowedTypeRules
from storefront.core.security import display_name, validate_declared_metadata, verify_content
from storefront.services.storage import FileStore

logger = logging.getLogger(__name__)


class ByteStream(Protocol):
    """Anything with an async ``read``; FastAPI's UploadFile qualifies."""

    async def read(self, size: int = -1) -> bytes: ...


@dataclass
class UploadRequest:
    stream: ByteStream
    filename: str | None
    content_type: str | None
    size: int | None = None  # as reported by the transport, if at all


@dataclass(frozen=True)
class UploadLimits:
    min_size: int
    max_size: int
    chunk_size: int = 64 * 1024

    @classmethod
    def from_settings(cls, cfg: Settings) -> "UploadLimits":
        return cls(
            min_size=cfg.min_file_size_bytes,
            max_size=cfg.max_file_size_bytes,
            chunk_size=cfg.read_chunk_size,
        )


@dataclass(frozen=True)
class StoredFileDescriptor:
    storage_name: str
    original_name: str  # escaped, display only
    byte_size: int
    resolved_mime_type: str
    storage_path: Path
    sha256: str


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------

async def _read_head(stream: ByteStream, window: int) -> bytes:
    """Read until ``window`` bytes are buffered or the stream ends."""
    head = bytearray()
    while len(head) < window:
        chunk = await stream.read(window - len(head))
        if not chunk:
            break
        head += chunk
    return bytes(head)


async def _bounded_chunks(
    head: bytes,
    stream: ByteStream,
    limits: UploadLimits,
) -> AsyncIterator[bytes]:
    """Yield the head then the rest of the stream, enforcing size limits.

    The maximum is checked after every chunk so an oversized upload is
    abandoned as soon as it crosses the limit. The minimum can only be
    checked once the stream is exhausted.
    """
    total = len(head)
    if total > limits.max_size:
        raise FileTooLarge(f"File too large. Maximum is {limits.max_size} bytes.")
    if head:
        yield head

    while True:
        chunk = await stream.read(limits.chunk_size)
        if not chunk:
            break
        total += len(chunk)
        if total > limits.max_size:
            raise FileTooLarge(f"File too large. Maximum is {limits.max_size} bytes.")
        yield chunk

    if total < limits.min_size:
        raise DeclaredMetadataInvalid(
            f"File too small: {total} bytes. Minimum is {limits.min_size} bytes."
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def ingest_upload(
    request: UploadRequest,
    *,
    rules: AllowedTypeRules,
    store: FileStore,
    limits: UploadLimits,
) -> StoredFileDescriptor:
    """Validate, sniff, name, guard and store one upload.

    Stage order: declared metadata -> content sniffing -> name generation ->
    path guard -> write. The declared size is checked before any byte is
    read; the actual size is enforced while streaming.

    Raises:
        UploadError: one of its subclasses for every rejection. Nothing is
            left on disk when it is raised.
    """
    try:
        declared = validate_declared_metadata(
            request.filename,
            request.content_type,
            request.size,
            rules,
            min_size=limits.min_size,
            max_size=limits.max_size,
        )
        head = await _read_head(request.stream, rules.sniff_window)
        resolved = verify_content(head, declared, rules)
        blob = await store.store(
            _bounded_chunks(head, request.stream, limits),
            declared.extension,
        )
    except UploadError as exc:
        logger.warning(
            "Upload rejected (%s) filename=%r: %s", exc.kind, request.filename, exc.message
        )
        raise

    descriptor = StoredFileDescriptor(
        storage_name=blob.storage_name,
        original_name=display_name(request.filename),
        byte_size=blob.byte_size,
        resolved_mime_type=resolved,
        storage_path=blob.path,
        sha256=blob.sha256,
    )
    logger.info(
        "Accepted upload %r as %s (%s, %d bytes)",
        request.filename, descriptor.storage_name, resolved, descriptor.byte_size,
    )
    return descriptor
