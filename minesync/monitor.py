"""
monitor.py - Display-tick session monitor.

Re-resolves every local record on each tick and remembers what it saw. When an
account that was active on the previous tick (or is flagged active in storage,
the first time it is seen) resolves inactive, the monitor hands it to the
mining service to persist the demotion.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional

from minesync.resolver import (
    DEFAULT_CONFIG,
    ResolverConfig,
    SessionStatus,
    find_demotions,
    format_countdown,
    resolve_all,
)

if TYPE_CHECKING:
    from minesync.mining import MiningService
    from minesync.storage import MiningRecordRepo

logger = logging.getLogger("monitor")


class SessionMonitor:
    def __init__(
        self,
        local: "MiningRecordRepo",
        mining: "MiningService",
        config: ResolverConfig = DEFAULT_CONFIG,
    ):
        self._local = local
        self._mining = mining
        self.config = config
        self.statuses: Dict[str, SessionStatus] = {}
        self.last_tick_at: float = 0.0
        self.last_demoted: List[str] = []
        self._tick_lock = asyncio.Lock()

    async def tick(self, now: Optional[float] = None) -> Dict[str, SessionStatus]:
        # One tick at a time; callers overlap
        async with self._tick_lock:
            return await self._tick(time.time() if now is None else now)

    async def _tick(self, now: float) -> Dict[str, SessionStatus]:
        records = await self._local.get_all()
        current = resolve_all(records, now, self.config)

        previous: Dict[str, bool] = {}
        for rec in records:
            if rec.key in self.statuses:
                previous[rec.key] = self.statuses[rec.key].is_active
            else:
                previous[rec.key] = rec.payload.get("is_active") is True

        demoted = find_demotions(previous, current)
        if demoted:
            logger.info("Sessions expired: %s", ", ".join(demoted))
            await self._mining.persist_demotions(demoted, now=now)

        self.statuses = current
        self.last_tick_at = now
        self.last_demoted = demoted
        return current

    def snapshot(self, now: Optional[float] = None) -> Dict[str, dict]:
        """Last resolved statuses, with a countdown rendered at ``now``."""
        now = time.time() if now is None else now
        result = {}
        for key, status in self.statuses.items():
            entry = status.to_dict()
            entry["countdown"] = format_countdown(status, now)
            result[key] = entry
        return result
