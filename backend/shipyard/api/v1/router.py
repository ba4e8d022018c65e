from fastapi import APIRouter
from shipyard.api.v1.endpoints import apps, health, message

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(message.router)
api_router.include_router(apps.router)
