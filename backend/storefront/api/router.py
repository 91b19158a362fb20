from fastapi import APIRouter

from storefront.api.routes.uploads import router as uploads_router

router = APIRouter(prefix="/api/v1")

router.include_router(uploads_router)
