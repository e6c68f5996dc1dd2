"""Profiles API endpoints.

GET /v1/profiles - List available resource profiles
"""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from pitcrew.config import get_settings

router = APIRouter()


class ProfileResponse(BaseModel):
    """Resource profile response model."""

    id: str
    cpus: float
    memory_mb: int
    java_heap_mb: int
    default: bool


class ProfileListResponse(BaseModel):
    """Profile list response."""

    items: list[ProfileResponse]


@router.get("", response_model=ProfileListResponse)
async def list_profiles() -> ProfileListResponse:
    """List available resource profiles."""
    settings = get_settings()
    items = [
        ProfileResponse(
            id=p.id,
            cpus=p.cpus,
            memory_mb=p.memory_mb,
            java_heap_mb=p.java_heap_mb,
            default=p.id == settings.session.default_profile,
        )
        for p in settings.profiles
    ]
    return ProfileListResponse(items=items)
