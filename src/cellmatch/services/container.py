"""Wiring of stores and services for one running application."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from ..config import Settings, settings as default_settings
from ..persistence.base import Clock, PresenceStore, RequestStore, utc_now
from ..persistence.memory import InMemoryPresenceStore, InMemoryRequestStore
from .presence.service import PresenceService
from .requests.service import RequestService
from .requests.sweeper import RequestSweeper

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Service handles passed to request handlers instead of module globals."""

    settings: Settings
    presence_store: PresenceStore
    request_store: RequestStore
    presence: PresenceService
    requests: RequestService
    sweeper: RequestSweeper

    async def start(self) -> None:
        if self.settings.sweeper_enabled:
            self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        self.presence.shutdown()


def _build_stores(settings: Settings, clock: Clock) -> tuple[PresenceStore, RequestStore]:
    common = {"clock": clock, "step_seconds": settings.cell_step_seconds}
    stale_after = timedelta(seconds=settings.presence_stale_seconds)
    if settings.storage_backend == "supabase":
        from ..db.supabase import get_supabase_client
        from ..persistence.supabase_store import SupabasePresenceStore, SupabaseRequestStore

        client = get_supabase_client(settings.supabase_url, settings.supabase_key)
        if client is not None:
            logger.info("Using Supabase storage backend")
            return (
                SupabasePresenceStore(client, stale_after=stale_after, **common),
                SupabaseRequestStore(client, **common),
            )
        logger.warning("Supabase backend selected but not configured - falling back to in-memory stores")
    return (
        InMemoryPresenceStore(stale_after=stale_after, **common),
        InMemoryRequestStore(**common),
    )


def build_container(settings: Settings | None = None, *, clock: Clock = utc_now) -> ServiceContainer:
    settings = settings or default_settings
    presence_store, request_store = _build_stores(settings, clock)
    return ServiceContainer(
        settings=settings,
        presence_store=presence_store,
        request_store=request_store,
        presence=PresenceService(presence_store, settings),
        requests=RequestService(request_store, settings),
        sweeper=RequestSweeper(request_store, presence_store, settings),
    )
