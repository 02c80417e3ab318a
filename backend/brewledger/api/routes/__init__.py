"""API routes."""

from fastapi import APIRouter

from brewledger.api.routes import inventory_engine

api_router = APIRouter()

api_router.include_router(inventory_engine.router, prefix="/inventory-engine", tags=["inventory-engine"])
