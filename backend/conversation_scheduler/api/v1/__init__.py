"""
API v1 module initialization.
"""

from fastapi import APIRouter
from .conversations import router as conversations_router

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(conversations_router, prefix="/conversations", tags=["conversations"])
