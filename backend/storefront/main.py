import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from storefront.api.middleware import UploadSizeLimitMiddleware
from storefront.api.router import router
from storefront.api.routes.files import router as files_router
from storefront.core.config import settings
from storefront.core.file_types import get_allowed_type_rules
from storefront.core.logging import configure_logging
from storefront.db.init_db import init_db
from storefront.services.storage import get_images_store, get_upload_store

configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    get_allowed_type_rules()
    get_upload_store().ensure_root()
    get_images_store().ensure_root()
    await init_db()
    logger.info("Storefront backend started (env=%s)", settings.env)
    yield


app = FastAPI(
    title="Storefront Backend",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    UploadSizeLimitMiddleware,
    paths=["/api/v1/uploads"],
    max_file_size=lambda: settings.max_file_size_bytes,
)

app.include_router(router)
app.include_router(files_router)


@app.get("/health", tags=["meta"])
async def health() -> dict[str, str]:
    return {"status": "ok", "env": settings.env}
