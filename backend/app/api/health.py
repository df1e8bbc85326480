"""Readiness and health endpoints."""

from typing import Any

from fastapi import APIRouter, Request

from backend.app.core.utils import utc_timestamp

router = APIRouter()


@router.get("/")
async def root() -> dict[str, Any]:
    """Readiness responder for the bare host."""
    return {
        "success": True,
        "status": "OK",
        "message": "Backend Running Successfully",
        "timestamp": utc_timestamp(),
    }


@router.get("/api/health")
async def health(request: Request) -> dict[str, Any]:
    """Liveness check. Always 200 while the process is serving."""
    database = request.app.state.database
    return {
        "status": "OK",
        "message": "Server is running",
        "timestamp": utc_timestamp(),
        "environment": request.app.state.settings.node_env,
        "database": "connected" if database.is_connected else "disconnected",
    }
