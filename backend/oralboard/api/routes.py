from fastapi import APIRouter
from .cases import router as cases_router
from .webhook import router as webhook_router

api_router = APIRouter()
api_router.include_router(cases_router, prefix="/cases", tags=["cases"])
api_router.include_router(webhook_router, prefix="/elevenlabs", tags=["elevenlabs"])
