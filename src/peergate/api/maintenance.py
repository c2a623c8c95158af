from __future__ import annotations

import asyncio
import logging

from peergate.api.deps import build_service
from peergate.db import get_sessionmaker
from peergate.services.reconcile import SyncReport
from peergate.settings import Settings

logger = logging.getLogger("peergate.maintenance")


async def run_maintenance_once() -> SyncReport:
    """Fold live counters into the registry, then report drift (never heals on its own)."""
    async with get_sessionmaker()() as session:
        service = build_service(session)
        await service.sync_stats()
        return await service.reconcile()


async def maintenance_loop(settings: Settings) -> None:
    interval = max(5, int(settings.stats_sync_interval_seconds))
    while True:
        try:
            report = await run_maintenance_once()
            if report.actionable():
                logger.warning("drift detected actionable=%s counts=%s", len(report.actionable()), report.counts())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("maintenance_failed")
        await asyncio.sleep(interval)
