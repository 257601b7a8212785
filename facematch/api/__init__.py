"""API v1 router initialization."""
from fastapi import APIRouter

from .face_matching import router as face_matching_router

# Create v1 router
router = APIRouter()

# Include face matching endpoints
router.include_router(face_matching_router)
