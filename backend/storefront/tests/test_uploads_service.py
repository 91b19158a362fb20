import io
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import UploadFile
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from starlette.datastructures import Headers

from storefront.core.config import _default_allowed_types
from storefront.core.errors import StorageFailure
from storefront.core.file_types import AllowedTypeRules
from storefront.db.base import Base
from storefront.db.models import FileLocation, StoredFile
from storefront.ingestion.pipeline import UploadLimits
from storefront.services.storage import FileStore
from storefront.services.uploads_service import delete_file, get_file, promote_file, upload_file


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * (3 * 1024 - 8)


@pytest_asyncio.fixture
async def session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with factory() as s:
        yield s
    await engine.dispose()


@pytest.fixture
def temp_store(tmp_path: Path) -> FileStore:
    return FileStore(tmp_path / "temp")


@pytest.fixture
def images_store(tmp_path: Path) -> FileStore:
    return FileStore(tmp_path / "images")


def _files(root: Path) -> list[str]:
    return sorted(p.name for p in root.iterdir()) if root.exists() else []


def _upload(data: bytes = PNG) -> UploadFile:
    return UploadFile(
        file=io.BytesIO(data),
        filename="product.png",
        size=len(data),
        headers=Headers({"content-type": "image/png"}),
    )


async def _create(session: AsyncSession, store: FileStore) -> StoredFile:
    return await upload_file(
        session,
        _upload(),
        rules=AllowedTypeRules.from_config(_default_allowed_types()),
        store=store,
        limits=UploadLimits(min_size=2048, max_size=10 * 1024 * 1024),
    )


def _fail_commit(monkeypatch, session: AsyncSession) -> None:
    async def broken_commit() -> None:
        raise RuntimeError("database is down")

    monkeypatch.setattr(session, "commit", broken_commit)


def _fail_storage(monkeypatch, store: FileStore, method: str) -> None:
    def broken(*args):
        raise StorageFailure("Disk unavailable.")

    broken.__name__ = method
    monkeypatch.setattr(store, method, broken)


# ---------------------------------------------------------------------------
# upload_file
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upload_removes_file_when_commit_fails(session, temp_store, monkeypatch) -> None:
    _fail_commit(monkeypatch, session)

    with pytest.raises(RuntimeError, match="database is down"):
        await _create(session, temp_store)

    assert _files(temp_store.root) == []


@pytest.mark.asyncio
async def test_upload_commit_error_survives_failed_cleanup(
    session, temp_store, monkeypatch, caplog
) -> None:
    _fail_commit(monkeypatch, session)
    _fail_storage(monkeypatch, temp_store, "delete")

    with pytest.raises(RuntimeError, match="database is down"):
        await _create(session, temp_store)

    assert "Could not undo delete" in caplog.text


# ---------------------------------------------------------------------------
# promote_file
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_promote_moves_file_back_when_commit_fails(
    session, temp_store, images_store, monkeypatch
) -> None:
    record = await _create(session, temp_store)
    storage_name = record.storage_name
    _fail_commit(monkeypatch, session)

    with pytest.raises(RuntimeError, match="database is down"):
        await promote_file(session, record, source=temp_store, destination=images_store)

    assert _files(temp_store.root) == [storage_name]
    assert _files(images_store.root) == []


@pytest.mark.asyncio
async def test_promote_commit_error_survives_failed_move_back(
    session, temp_store, images_store, monkeypatch, caplog
) -> None:
    record = await _create(session, temp_store)
    _fail_commit(monkeypatch, session)
    _fail_storage(monkeypatch, images_store, "move")

    with pytest.raises(RuntimeError, match="database is down"):
        await promote_file(session, record, source=temp_store, destination=images_store)

    assert "Could not undo move" in caplog.text


# ---------------------------------------------------------------------------
# delete_file
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_removes_record_and_file(session, temp_store, images_store) -> None:
    record = await _create(session, temp_store)
    file_id = record.id

    await delete_file(
        session,
        record,
        stores={FileLocation.temp: temp_store, FileLocation.permanent: images_store},
    )

    assert _files(temp_store.root) == []
    assert await get_file(session, file_id) is None


@pytest.mark.asyncio
async def test_delete_keeps_file_when_commit_fails(
    session, temp_store, images_store, monkeypatch
) -> None:
    record = await _create(session, temp_store)
    storage_name = record.storage_name
    _fail_commit(monkeypatch, session)

    with pytest.raises(RuntimeError, match="database is down"):
        await delete_file(
            session,
            record,
            stores={FileLocation.temp: temp_store, FileLocation.permanent: images_store},
        )

    assert _files(temp_store.root) == [storage_name]
