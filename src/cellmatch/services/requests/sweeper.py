"""Background cleanup of abandoned requests and long-dead presence records."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ...config import Settings, settings as default_settings
from ...errors import CellMatchError
from ...persistence.base import PresenceStore, RequestStore

logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired"


@dataclass(slots=True)
class SweepReport:
    cancelled_requests: list[str] = field(default_factory=list)
    purged_presence: int = 0


class RequestSweeper:
    """Cancels open requests whose rider stopped heartbeating.

    Open requests drop out of driver views once they are no longer fresh, but
    they stay ``open`` in the store. After ``request_abandon_seconds`` without a
    rider heartbeat they are cancelled with reason ``expired``. Presence rows
    older than ``presence_ttl_seconds`` are deleted outright.
    """

    def __init__(
        self,
        requests: RequestStore,
        presence: PresenceStore,
        settings: Settings | None = None,
    ) -> None:
        self.requests = requests
        self.presence = presence
        self.settings = settings or default_settings
        self._task: asyncio.Task | None = None

    def sweep_once(self, now: datetime | None = None) -> SweepReport:
        now = now or self.requests.clock()
        report = SweepReport()
        cutoff = now - timedelta(seconds=self.settings.request_abandon_seconds)
        for request in self.requests.list_open_stale(cutoff):
            try:
                self.requests.cancel(request.request_id, EXPIRED_REASON)
            except CellMatchError as exc:
                # Claimed or cancelled between the listing and the update.
                logger.debug("Skipping %s during sweep: %s", request.request_id, exc)
                continue
            report.cancelled_requests.append(request.request_id)
        presence_cutoff = now - timedelta(seconds=self.settings.presence_ttl_seconds)
        report.purged_presence = self.presence.purge_older_than(presence_cutoff)
        if report.cancelled_requests or report.purged_presence:
            logger.warning(
                "Sweep expired %d request(s) and purged %d presence record(s)",
                len(report.cancelled_requests),
                report.purged_presence,
            )
        return report

    async def _run(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("Request sweep failed")
            await asyncio.sleep(interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="request-sweeper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
