"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ...services.container import ServiceContainer
from ..deps import get_container

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root(container: ServiceContainer = Depends(get_container)) -> dict:
    """Simple health check endpoint that doesn't touch storage."""
    return {
        "status": "ok",
        "storage_backend": type(container.request_store).__name__,
        "active_count_feeds": container.presence.hub.active_feeds,
        "change_subscribers": container.request_store.changes.subscriber_count(),
    }


@router.get("/health/database", status_code=status.HTTP_200_OK)
def check_database(container: ServiceContainer = Depends(get_container)) -> dict:
    """Check Supabase connectivity and whether both tables are reachable."""
    from ...db.supabase import check_connection, get_supabase_client

    supabase = get_supabase_client(container.settings.supabase_url, container.settings.supabase_key)
    if not supabase:
        return {
            "configured": False,
            "message": "Supabase not configured. Set CELLMATCH_SUPABASE_URL and CELLMATCH_SUPABASE_KEY environment variables.",
        }

    tables = check_connection(supabase)
    connected = all(tables.values())
    return {
        "configured": True,
        "connected": connected,
        "tables": tables,
        "message": "Database connected." if connected else "Database reachable but some tables are missing.",
    }
