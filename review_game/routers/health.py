from __future__ import annotations

from fastapi import APIRouter

from ..settings import settings

router = APIRouter()

VERSION = "1.0.0"


@router.get("/", tags=["health"])
def health():
    return {
        "ok": True,
        "service": settings.service_name,
        "version": VERSION,
        "environment": settings.normalized_environment,
    }
