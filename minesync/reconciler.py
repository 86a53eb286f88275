"""
reconciler.py - Bidirectional mining-record sync.

Keeps the local (on-device) store and the remote (shared) store in agreement
using last-writer-wins on each record's ``updated_at``. A run reads both
snapshots, works out which side is stale for every key, then copies records
across: pulls are written locally one at a time, pushes are upserted remotely
in small batches with a pause in between.

Run-level bookkeeping (in-flight flag, last completed run) lives in a SyncState
owned by each Reconciler, so independent instances never share it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

from minesync.records import MiningRecord

if TYPE_CHECKING:
    from minesync.storage import MiningRecordRepo

logger = logging.getLogger("reconciler")

SYNC_COOLDOWN_SEC = 3600.0
SYNC_BATCH_SIZE = 10
SYNC_BATCH_DELAY_SEC = 0.3


class SyncStatus(str, Enum):
    SYNCED = "synced"
    NOTHING_TO_SYNC = "nothing_to_sync"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    FAILED = "failed"


@dataclass
class SyncPlan:
    to_push_remote: List[MiningRecord] = field(default_factory=list)
    to_pull_local: List[MiningRecord] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_push_remote and not self.to_pull_local


@dataclass
class SyncResult:
    status: SyncStatus
    pushed: int = 0
    pulled: int = 0
    failed: int = 0
    error: Optional[str] = None
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def changed(self) -> bool:
        """True when at least one record was copied in either direction."""
        return self.pushed > 0 or self.pulled > 0

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "changed": self.changed,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "failed": self.failed,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class SyncState:
    in_progress: bool = False
    last_sync_at: float = 0.0
    last_result: Optional[SyncResult] = None


def compare_records(
    local: Iterable[MiningRecord], remote: Iterable[MiningRecord]
) -> SyncPlan:
    """Decide which records must be copied in each direction.

    Strictly newer wins. Equal clocks are left alone, so repeated runs settle
    instead of bouncing the same record between stores.
    """
    local = list(local)
    remote = list(remote)
    remote_by_key = {r.key: r for r in remote}
    local_keys = {r.key for r in local}

    plan = SyncPlan()
    for local_rec in local:
        remote_rec = remote_by_key.get(local_rec.key)
        if remote_rec is None:
            plan.to_push_remote.append(local_rec)
        elif local_rec.clock > remote_rec.clock:
            plan.to_push_remote.append(local_rec)
        elif remote_rec.clock > local_rec.clock:
            plan.to_pull_local.append(remote_rec)

    for remote_rec in remote:
        if remote_rec.key not in local_keys:
            plan.to_pull_local.append(remote_rec)
    return plan


class Reconciler:
    """Syncs mining records between a local and a remote store."""

    def __init__(
        self,
        local: "MiningRecordRepo",
        remote: "MiningRecordRepo",
        cooldown_sec: float = SYNC_COOLDOWN_SEC,
        batch_size: int = SYNC_BATCH_SIZE,
        batch_delay_sec: float = SYNC_BATCH_DELAY_SEC,
        state: Optional[SyncState] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._local = local
        self._remote = remote
        self.cooldown_sec = cooldown_sec
        self.batch_size = batch_size
        self.batch_delay_sec = batch_delay_sec
        self.state = state or SyncState()

    async def sync(self, force: bool = False, keys: Optional[Iterable[str]] = None) -> SyncResult:
        """Run one reconciliation pass.

        ``keys`` adds account keys that may exist remotely without a local row
        yet. Never raises: systemic failures come back as ``SyncStatus.FAILED``.
        """
        if self.state.in_progress:
            logger.info("Sync already in progress, skipping")
            return SyncResult(SyncStatus.SKIPPED_IN_FLIGHT)

        now = time.time()
        if not force and self.state.last_sync_at and now - self.state.last_sync_at < self.cooldown_sec:
            logger.info(
                "Last sync finished %.0fs ago (cooldown %.0fs), skipping",
                now - self.state.last_sync_at, self.cooldown_sec,
            )
            return SyncResult(SyncStatus.SKIPPED_COOLDOWN)

        self.state.in_progress = True
        try:
            result = await self._run(now, keys)
        finally:
            self.state.in_progress = False

        self.state.last_result = result
        if result.status != SyncStatus.FAILED:
            self.state.last_sync_at = result.finished_at
        return result

    async def _run(self, started_at: float, keys: Optional[Iterable[str]]) -> SyncResult:
        logger.info("Starting bidirectional mining data sync")
        try:
            local = await self._local.get_all()
            wanted = list(dict.fromkeys([r.key for r in local] + list(keys or [])))
            if not wanted:
                logger.info("No accounts to sync")
                return SyncResult(
                    SyncStatus.NOTHING_TO_SYNC, started_at=started_at, finished_at=time.time(),
                )
            remote = await self._remote.select_by_keys(wanted)
        except Exception as e:
            logger.exception("Sync aborted: could not read stores")
            return SyncResult(
                SyncStatus.FAILED, error=str(e) or type(e).__name__,
                started_at=started_at, finished_at=time.time(),
            )

        logger.info("Retrieved %d local and %d remote mining records", len(local), len(remote))
        plan = compare_records(local, remote)
        logger.info(
            "Sync plan: %d local and %d remote updates needed",
            len(plan.to_pull_local), len(plan.to_push_remote),
        )

        result = SyncResult(SyncStatus.NOTHING_TO_SYNC, started_at=started_at)
        if not plan.empty:
            result.status = SyncStatus.SYNCED
            result.pulled, pull_failed = await self._apply_pulls(plan.to_pull_local)
            result.pushed, push_failed = await self._apply_pushes(plan.to_push_remote)
            result.failed = pull_failed + push_failed
            if not result.changed and result.failed:
                result.status = SyncStatus.FAILED
                result.error = f"All {result.failed} record writes failed"

        result.finished_at = time.time()
        logger.info(
            "Sync complete: status=%s pulled=%d pushed=%d failed=%d",
            result.status.value, result.pulled, result.pushed, result.failed,
        )
        return result

    async def _apply_pulls(self, records: List[MiningRecord]):
        ok = 0
        failed = 0
        for rec in records:
            try:
                await self._local.put(rec)
                ok += 1
            except Exception:
                failed += 1
                logger.exception("Failed to write %s to local store", rec.key)
        return ok, failed

    async def _apply_pushes(self, records: List[MiningRecord]):
        ok = 0
        failed = 0
        for i in range(0, len(records), self.batch_size):
            batch = records[i:i + self.batch_size]
            try:
                await self._remote.upsert_batch(batch)
                ok += len(batch)
            except Exception:
                logger.warning(
                    "Remote upsert of %d records failed, retrying one by one", len(batch),
                    exc_info=True,
                )
                for rec in batch:
                    try:
                        await self._remote.upsert_batch([rec])
                        ok += 1
                    except Exception:
                        failed += 1
                        logger.exception("Failed to push %s to remote store", rec.key)

            if i + self.batch_size < len(records) and self.batch_delay_sec > 0:
                await asyncio.sleep(self.batch_delay_sec)
        return ok, failed
