from fastapi import APIRouter

from app.api.v1.endpoints import computation

api_router = APIRouter()

api_router.include_router(computation.router, prefix="/computation", tags=["Results Computation"])
