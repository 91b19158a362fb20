import html
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from storefront.core.errors import (
    ContentMismatch,
    DeclaredMetadataInvalid,
    FileTooLarge,
    PathViolation,
    UnsupportedContent,
)
from storefront.core.file_types import AllowedTypeRules

logger = logging.getLogger(__name__)

MAX_DISPLAY_NAME_LENGTH = 255
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
STORAGE_NAME_RE = re.compile(r"^[0-9a-f]{32}\.[a-z0-9]+$")


@dataclass(frozen=True)
class DeclaredMetadata:
    mime_type: str
    extension: str
    size: int | None


# ---------------------------------------------------------------------------
# Declared metadata
# ---------------------------------------------------------------------------

def extract_extension(filename: str | None) -> str:
    """Lower-case extension of the last path component, "" if there is none.

    Both separators count, so "..\\..\\evil.PNG" -> ".png".
    """
    if not filename:
        return ""
    name = PurePosixPath(filename.replace("\\", "/")).name
    return PurePosixPath(name).suffix.lower()


def validate_declared_metadata(
    filename: str | None,
    content_type: str | None,
    size: int | None,
    rules: AllowedTypeRules,
    *,
    min_size: int,
    max_size: int,
) -> DeclaredMetadata:
    """Cheap pre-filter over client-declared metadata; reads no bytes.

    Raises:
        DeclaredMetadataInvalid: MIME type not allowed, extension missing or
            not mapped to the MIME type, or declared size below the minimum.
        FileTooLarge: declared size above the maximum.
    """
    mime = rules.canonical_mime(content_type)
    rule = rules.get(mime)
    if rule is None:
        raise DeclaredMetadataInvalid(
            f"Unsupported MIME type: {mime or 'missing'}. "
            f"Allowed: {', '.join(rules.mime_types)}."
        )

    ext = extract_extension(filename)
    if not ext:
        raise DeclaredMetadataInvalid("Invalid file extension.")
    if ext not in rule.extensions:
        raise DeclaredMetadataInvalid(
            f"MIME type {mime} does not match extension {ext}."
        )

    if size is not None:
        if size < min_size:
            raise DeclaredMetadataInvalid(
                f"File too small: {size} bytes. Minimum is {min_size} bytes."
            )
        if size > max_size:
            raise FileTooLarge(
                f"File too large: {size} bytes. Maximum is {max_size} bytes."
            )

    return DeclaredMetadata(mime_type=mime, extension=ext, size=size)


# ---------------------------------------------------------------------------
# Content sniffing
# ---------------------------------------------------------------------------

def sniff_content_type(head: bytes, rules: AllowedTypeRules) -> str | None:
    """Return the MIME type whose signature prefixes ``head``, if any."""
    rule = rules.match_signature(head)
    return rule.mime_type if rule else None


def verify_content(head: bytes, declared: DeclaredMetadata, rules: AllowedTypeRules) -> str:
    """Authoritative type decision from the leading bytes of the payload.

    Returns the resolved MIME type. The declared type is only used to check
    agreement; it never decides acceptance on its own.
    """
    declared_rule = rules.get(declared.mime_type)
    if declared_rule is not None and not declared_rule.signatures:
        # SVG and other text formats have no magic number: fail closed
        raise UnsupportedContent(
            f"Content of type {declared.mime_type} cannot be verified and is not accepted."
        )

    if len(head) < rules.sniff_window:
        raise UnsupportedContent(
            f"Not enough data to determine file type ({len(head)} bytes)."
        )

    resolved = sniff_content_type(head, rules)
    if resolved is None:
        raise ContentMismatch("Invalid file content. Not a valid image.")
    if resolved != declared.mime_type:
        raise ContentMismatch(
            f"File content is {resolved} but was declared as {declared.mime_type}."
        )

    rule = rules.get(resolved)
    if rule is None or declared.extension not in rule.extensions:
        raise ContentMismatch(
            f"Extension {declared.extension} is not permitted for {resolved}."
        )
    return resolved


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def generate_storage_name(extension: str) -> str:
    """Fresh "<uuid4 hex><ext>"; no client-controlled text reaches the stem."""
    ext = extension.lower()
    if not re.fullmatch(r"\.[a-z0-9]+", ext):
        raise DeclaredMetadataInvalid(f"Invalid file extension: {extension!r}")
    return f"{uuid.uuid4().hex}{ext}"


def is_storage_name(name: str) -> bool:
    return bool(STORAGE_NAME_RE.fullmatch(name))


def display_name(filename: str | None) -> str:
    """HTML-escaped, control-free copy of the client filename for display only."""
    if not filename:
        return ""
    cleaned = CONTROL_CHARS_RE.sub("", filename)[:MAX_DISPLAY_NAME_LENGTH]
    return html.escape(cleaned, quote=True)


# ---------------------------------------------------------------------------
# Path guard
# ---------------------------------------------------------------------------

def guard_path(root: Path, name: str) -> Path:
    """Resolve ``name`` under ``root`` and prove it stays strictly inside.

    Raises:
        PathViolation: the name carries path syntax, the canonical target is
            not a direct child of the canonical root, or the target is a
            symlink.
    """
    if (
        not name
        or name in {".", ".."}
        or "\x00" in name
        or "/" in name
        or "\\" in name
    ):
        logger.warning("Path violation: rejected storage name %r under %s", name, root)
        raise PathViolation("Forbidden path.")

    canonical_root = root.resolve()
    candidate = canonical_root / name
    resolved = candidate.resolve()

    if resolved.parent != canonical_root or resolved == canonical_root:
        logger.warning(
            "Path violation: %r resolves to %s outside %s", name, resolved, canonical_root
        )
        raise PathViolation("Forbidden path.")
    if candidate.is_symlink():
        logger.warning("Path violation: %s is a symlink", candidate)
        raise PathViolation("Forbidden path.")

    return resolved
