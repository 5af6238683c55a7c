from fastapi import APIRouter

from src.api.routes.admin import router as admin_router
from src.api.routes.ops import router as ops_router
from src.api.routes.votes import router as votes_router
from src.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(votes_router, prefix="/votes", tags=["votes"])
api_router.include_router(admin_router, prefix="/admin", tags=["admin"])
api_router.include_router(ops_router, prefix="/ops", tags=["ops"])
