"""API routes."""

from fastapi import APIRouter

from factory_app.api.routes import auth, catalog, requisitions

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(requisitions.router, prefix="/requisitions", tags=["requisitions"])
api_router.include_router(catalog.router, prefix="/catalog", tags=["catalog"])
