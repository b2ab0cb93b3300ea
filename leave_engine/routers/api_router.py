from fastapi import APIRouter
from leave_engine.routers import leaves

# Centralized API router hub: main.py only imports this single hub.
api_router = APIRouter()

api_router.include_router(leaves.router, tags=["Leave"])
