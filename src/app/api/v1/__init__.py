from fastapi import APIRouter

from .fetch import router as fetch_router
from .health import router as health_router

# Mounted at the root: the fetch interface is served on "/"
router = APIRouter()
router.include_router(fetch_router)
router.include_router(health_router)
