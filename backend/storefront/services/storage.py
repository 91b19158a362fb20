import errno
import hashlib
import logging
import os
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from storefront.core.config import settings
from storefront.core.errors import StorageFailure
from storefront.core.security import generate_storage_name, guard_path

logger = logging.getLogger(__name__)

# errno values worth a single retry; anything else (ENOSPC, EACCES, ...) surfaces
TRANSIENT_ERRNOS = frozenset({errno.EAGAIN, errno.EBUSY, errno.EINTR})
TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".part"


@dataclass(frozen=True)
class StoredBlob:
    storage_name: str
    path: Path
    byte_size: int
    sha256: str


def _is_transient(exc: OSError) -> bool:
    return exc.errno in TRANSIENT_ERRNOS


def _disk_io(func, *args):
    """Run one filesystem call, reporting OSError as StorageFailure.

    Only disk calls go through here; chunk source errors propagate as is.
    """
    try:
        return func(*args)
    except OSError as exc:
        logger.error("Write failed: %s", exc, exc_info=True)
        raise StorageFailure("Failed to write file.") from exc


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.error("Could not remove partial file %s", path, exc_info=True)


class FileStore:
    """Files kept flat under a single root directory.

    Every name is passed through ``guard_path`` before it is written, moved,
    served or removed. Writes go to a hidden temp file in the same directory
    and are committed with ``os.link`` so an existing file is never replaced.
    """

    def __init__(self, root: Path, *, max_name_attempts: int = 5) -> None:
        if max_name_attempts < 1:
            raise ValueError("max_name_attempts must be >= 1")
        self.root = Path(root)
        self.max_name_attempts = max_name_attempts

    def __repr__(self) -> str:
        return f"<FileStore root={str(self.root)!r}>"

    # ------------------------------------------------------------------
    def ensure_root(self) -> Path:
        """Create the root directory if missing. Safe to call repeatedly."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create upload root %s", self.root, exc_info=True)
            raise StorageFailure("Upload directory is not available.") from exc
        return self.root.resolve()

    def path_for(self, storage_name: str) -> Path:
        return guard_path(self.root, storage_name)

    def open_path(self, storage_name: str) -> Path | None:
        """Guarded path of an existing stored file, or None."""
        path = self.path_for(storage_name)
        return path if path.is_file() else None

    # ------------------------------------------------------------------
    async def store(self, chunks: AsyncIterator[bytes], extension: str) -> StoredBlob:
        """Persist ``chunks`` under a freshly generated name.

        Any exception raised by the chunk source (size limits, client
        disconnect, cancellation) propagates unchanged after the partial
        file has been removed.
        """
        self.ensure_root()
        storage_name = generate_storage_name(extension)
        target = self.path_for(storage_name)
        temp_path = target.with_name(f"{TEMP_PREFIX}{uuid.uuid4().hex}{TEMP_SUFFIX}")

        digest = hashlib.sha256()
        size = 0
        try:
            fh = _disk_io(open, temp_path, "xb")
            with fh:
                async for chunk in chunks:
                    _disk_io(fh.write, chunk)
                    digest.update(chunk)
                    size += len(chunk)
                _disk_io(fh.flush)
                _disk_io(os.fsync, fh.fileno())

            target = self._commit(temp_path, target, extension)
        finally:
            _unlink_quietly(temp_path)

        logger.info("Stored %s (%d bytes)", target.name, size)
        return StoredBlob(
            storage_name=target.name,
            path=target,
            byte_size=size,
            sha256=digest.hexdigest(),
        )

    def _commit(self, temp_path: Path, target: Path, extension: str) -> Path:
        """Link the temp file into place, renaming on collision."""
        for attempt in range(1, self.max_name_attempts + 1):
            try:
                self._link_with_retry(temp_path, target)
                return target
            except FileExistsError:
                # uuid4 collision or a hostile pre-created name: pick another
                logger.warning(
                    "Storage name collision on %s (attempt %d/%d)",
                    target.name, attempt, self.max_name_attempts,
                )
                target = self.path_for(generate_storage_name(extension))
        raise StorageFailure(
            f"Could not allocate a unique file name after {self.max_name_attempts} attempts."
        )

    @staticmethod
    def _link_with_retry(src: Path, dst: Path) -> None:
        try:
            os.link(src, dst)
            return
        except FileExistsError:
            raise
        except OSError as exc:
            if not _is_transient(exc):
                logger.error("Commit of %s failed: %s", dst.name, exc, exc_info=True)
                raise StorageFailure("Failed to save file.") from exc
            logger.warning("Transient error committing %s, retrying once: %s", dst.name, exc)

        try:
            os.link(src, dst)
        except FileExistsError:
            raise
        except OSError as exc:
            logger.error("Commit of %s failed after retry: %s", dst.name, exc, exc_info=True)
            raise StorageFailure("Failed to save file.") from exc

    # ------------------------------------------------------------------
    def move(self, storage_name: str, destination: "FileStore") -> Path:
        """Move a stored file into ``destination`` under the same name.

        Never overwrites: fails with StorageFailure if the name is taken there.
        Both roots must live on the same filesystem (hard link, then unlink).
        """
        source = self.open_path(storage_name)
        if source is None:
            raise StorageFailure(f"File {storage_name} not found.")

        destination.ensure_root()
        target = destination.path_for(storage_name)
        try:
            os.link(source, target)
        except FileExistsError as exc:
            raise StorageFailure(f"File {storage_name} already exists at destination.") from exc
        except OSError as exc:
            logger.error("Move of %s failed: %s", storage_name, exc, exc_info=True)
            raise StorageFailure("Failed to move file.") from exc

        try:
            source.unlink()
        except OSError as exc:
            # Keep exactly one copy: roll back the new link
            _unlink_quietly(target)
            logger.error("Move of %s failed removing source: %s", storage_name, exc, exc_info=True)
            raise StorageFailure("Failed to move file.") from exc

        logger.info("Moved %s from %s to %s", storage_name, self.root, destination.root)
        return target

    def delete(self, storage_name: str) -> bool:
        """Remove a stored file. Returns False if it was already gone."""
        path = self.path_for(storage_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.error("Delete of %s failed: %s", storage_name, exc, exc_info=True)
            raise StorageFailure("Failed to delete file.") from exc
        logger.info("Deleted %s from %s", storage_name, self.root)
        return True


def get_upload_store() -> FileStore:
    return FileStore(settings.upload_root, max_name_attempts=settings.max_name_attempts)


def get_images_store() -> FileStore:
    return FileStore(settings.images_root, max_name_attempts=settings.max_name_attempts)
