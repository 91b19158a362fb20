import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db.base import Base


class FileLocation(str, enum.Enum):
    temp = "temp"
    permanent = "permanent"


class StoredFile(Base):
    __tablename__ = "stored_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    storage_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    original_name: Mapped[str] = mapped_column(
        String(1536), nullable=False, comment="HTML-escaped client filename, display only"
    )
    mime_type: Mapped[str] = mapped_column(String(127), nullable=False)
    byte_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    location: Mapped[FileLocation] = mapped_column(
        Enum(FileLocation), default=FileLocation.temp, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_stored_files_sha256", "sha256"),
        Index("ix_stored_files_location", "location"),
    )

    def __repr__(self) -> str:
        return f"<StoredFile id={self.id} storage_name={self.storage_name!r} location={self.location}>"
