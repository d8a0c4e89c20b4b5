from fastapi import APIRouter
from endpoints.health import router as health_router
from endpoints.realtime_ws import router as realtime_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(realtime_router, tags=["realtime"])
