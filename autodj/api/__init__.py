"""API routers for the AutoDJ relay."""
from fastapi import APIRouter

from autodj.api.routes import status

router = APIRouter()
router.include_router(status.router, tags=["status"])
