from fastapi import APIRouter

from .health import router as health_router
from .batch import router as batch_router
from .analysis import router as analysis_router
from .settings import router as settings_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(batch_router)
api_router.include_router(analysis_router)
api_router.include_router(settings_router)
