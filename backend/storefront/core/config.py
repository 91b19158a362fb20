from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AllowedTypeConfig(BaseModel):
    """One entry of the ``allowed_types`` table, as written in env/JSON."""

    extensions: list[str] = Field(..., min_length=1)
    # Hex-encoded byte prefixes, e.g. "ffd8ff" for JPEG
    signatures: list[str] = Field(default_factory=list)

    @field_validator("extensions")
    @classmethod
    def _normalise_extensions(cls, value: list[str]) -> list[str]:
        normalised = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext.startswith("."):
                ext = "." + ext
            if len(ext) < 2 or "/" in ext or "\\" in ext:
                raise ValueError(f"Invalid extension: {ext!r}")
            normalised.append(ext)
        return normalised

    @field_validator("signatures")
    @classmethod
    def _check_signatures(cls, value: list[str]) -> list[str]:
        for sig in value:
            try:
                raw = bytes.fromhex(sig)
            except ValueError as exc:
                raise ValueError(f"Signature {sig!r} is not valid hex") from exc
            if not raw:
                raise ValueError("Empty signature")
        return value


def _default_allowed_types() -> dict[str, AllowedTypeConfig]:
    return {
        "image/png": AllowedTypeConfig(
            extensions=[".png"],
            signatures=["89504e470d0a1a0a"],
        ),
        "image/jpeg": AllowedTypeConfig(
            extensions=[".jpg", ".jpeg"],
            signatures=["ffd8ff"],
        ),
        "image/gif": AllowedTypeConfig(
            extensions=[".gif"],
            signatures=["474946383761", "474946383961"],  # GIF87a, GIF89a
        ),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database (stored file records)
    database_url: str = "sqlite+aiosqlite:///./dev.db"

    # Uploads land in upload_root; promoted files move to images_root
    upload_root: Path = Path("public/temp")
    images_root: Path = Path("public/images")

    min_file_size_bytes: int = Field(default=2048, ge=0)
    max_file_size_bytes: int = Field(default=10 * 1024 * 1024, gt=0)  # 10 MiB
    read_chunk_size: int = Field(default=64 * 1024, gt=0)
    max_name_attempts: int = Field(default=5, ge=1)

    allowed_types: dict[str, AllowedTypeConfig] = Field(
        default_factory=_default_allowed_types
    )

    @model_validator(mode="after")
    def _check_size_bounds(self) -> "Settings":
        if self.min_file_size_bytes > self.max_file_size_bytes:
            raise ValueError("min_file_size_bytes must not exceed max_file_size_bytes")
        return self


settings = Settings()
