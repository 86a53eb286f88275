"""
server.py - Mining account dashboard server entry point.

Single-process server combining:
 - Local (on-device) and remote (shared) SQLite stores via StorageManager
 - Mining service (account registration, probe merges)
 - Reconciler for bidirectional local/remote sync
 - Session monitor re-resolving statuses on a display tick
 - REST API (FastAPI on uvicorn, port 8080)

Usage:
    python -m minesync.server [--api-port 8080] [--local-db data/local.db] [--remote-db data/remote.db]
"""

import argparse
import asyncio
import logging
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI

from minesync import __version__
from minesync.mining import MiningService
from minesync.monitor import SessionMonitor
from minesync.probe import DEFAULT_PROBE_URL, PROBE_TIMEOUT_SEC, ProbeClient
from minesync.reconciler import SYNC_COOLDOWN_SEC, Reconciler
from minesync.resolver import GRACE_WINDOW_SEC, KYC_SESSION_THRESHOLD, ResolverConfig
from minesync.routers import register_all_routers
from minesync.scheduler import PeriodicTask
from minesync.storage import StorageManager

logger = logging.getLogger("server")

DISPLAY_TICK_SEC = 1.0
SYNC_TICK_SEC = 30 * 60.0


class DashboardServer:
    """Wires storage, services, background ticks and the REST API together."""

    def __init__(
        self,
        api_port: int = 8080,
        local_db: str = "data/local.db",
        remote_db: str = "data/remote.db",
        probe: Optional[ProbeClient] = None,
        probe_url: str = DEFAULT_PROBE_URL,
        probe_timeout_sec: float = PROBE_TIMEOUT_SEC,
        sync_interval_sec: float = SYNC_TICK_SEC,
        sync_cooldown_sec: float = SYNC_COOLDOWN_SEC,
        display_interval_sec: float = DISPLAY_TICK_SEC,
        resolver_config: Optional[ResolverConfig] = None,
    ):
        self.api_port = api_port
        self.local_db = local_db
        self.remote_db = remote_db
        self.sync_interval_sec = sync_interval_sec
        self.sync_cooldown_sec = sync_cooldown_sec
        self.display_interval_sec = display_interval_sec
        self.resolver_config = resolver_config or ResolverConfig()

        self.probe = probe or ProbeClient(base_url=probe_url, timeout_sec=probe_timeout_sec)

        # Storage + services are initialized async in initialize()
        self.storage: Optional[StorageManager] = None
        self.remote: Optional[StorageManager] = None
        self.mining: Optional[MiningService] = None
        self.reconciler: Optional[Reconciler] = None
        self.monitor: Optional[SessionMonitor] = None

        self._display_tick: Optional[PeriodicTask] = None
        self._sync_tick: Optional[PeriodicTask] = None
        self._uvicorn_server: Optional[uvicorn.Server] = None

        self.app = FastAPI(title="minesync dashboard", version=__version__)
        self.app.state.server = self
        register_all_routers(self.app)

    async def initialize(self):
        """Open both stores and wire up services (must be called in async context)."""
        for path in (self.local_db, self.remote_db):
            db_dir = os.path.dirname(path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.local_db)
        await self.storage.initialize()
        self.remote = StorageManager(self.remote_db)
        await self.remote.initialize()

        self.mining = MiningService(
            self.storage.accounts,
            self.storage.records,
            self.remote.records,
            probe=self.probe,
            remote_accounts=self.remote.accounts,
        )
        self.reconciler = Reconciler(
            self.storage.records, self.remote.records, cooldown_sec=self.sync_cooldown_sec,
        )
        self.monitor = SessionMonitor(self.storage.records, self.mining, config=self.resolver_config)

        self._display_tick = PeriodicTask("display-tick", self.monitor.tick, self.display_interval_sec)
        self._sync_tick = PeriodicTask(
            "sync-tick", self._background_sync, self.sync_interval_sec, run_immediately=True,
        )
        logger.info("Services initialized (local=%s remote=%s)", self.local_db, self.remote_db)

    async def _background_sync(self):
        try:
            await self.mining.mirror_accounts()
        except Exception:
            logger.exception("Account mirror failed, syncing known accounts only")
        accounts = await self.mining.list_accounts()
        result = await self.reconciler.sync(keys=accounts.keys())
        if result.changed:
            await self.monitor.tick()

    def start_background(self):
        self._display_tick.start()
        self._sync_tick.start()

    async def stop_background(self):
        for task in (self._display_tick, self._sync_tick):
            if task is not None:
                await task.stop()

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Start storage, background ticks, and the API server."""
        await self.initialize()
        self.start_background()

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.api_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.api_port)
        try:
            await self._uvicorn_server.serve()
        finally:
            await self.close()

    async def close(self):
        """Stop ticks and release the probe client and both stores."""
        await self.stop_background()
        await self.probe.close()
        for sm in (self.storage, self.remote):
            if sm is not None:
                await sm.close()

    async def stop(self):
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True


def main():
    """CLI entry point for the dashboard server."""
    parser = argparse.ArgumentParser(description="Mining account dashboard server")
    parser.add_argument("--api-port", type=int, default=8080, help="REST API port (default: 8080)")
    parser.add_argument("--local-db", default="data/local.db", help="On-device SQLite path (default: data/local.db)")
    parser.add_argument("--remote-db", default="data/remote.db", help="Shared SQLite path (default: data/remote.db)")
    parser.add_argument("--probe-url", default=DEFAULT_PROBE_URL, help=f"Mining service base URL (default: {DEFAULT_PROBE_URL})")
    parser.add_argument("--probe-timeout", type=float, default=PROBE_TIMEOUT_SEC, help="Probe request timeout in seconds")
    parser.add_argument("--sync-interval", type=float, default=SYNC_TICK_SEC, help="Background sync interval in seconds (default: 1800)")
    parser.add_argument("--sync-cooldown", type=float, default=SYNC_COOLDOWN_SEC, help="Minimum seconds between unforced syncs (default: 3600)")
    parser.add_argument("--grace-hours", type=float, default=GRACE_WINDOW_SEC / 3600, help="Soft-expiry grace window in hours (default: 24)")
    parser.add_argument("--kyc-threshold", type=int, default=KYC_SESSION_THRESHOLD, help="Completed sessions before the KYC warning (default: 30)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    server = DashboardServer(
        api_port=args.api_port,
        local_db=args.local_db,
        remote_db=args.remote_db,
        probe_url=args.probe_url,
        probe_timeout_sec=args.probe_timeout,
        sync_interval_sec=args.sync_interval,
        sync_cooldown_sec=args.sync_cooldown,
        resolver_config=ResolverConfig(
            grace_sec=args.grace_hours * 3600,
            kyc_session_threshold=args.kyc_threshold,
        ),
    )

    logger.info("=" * 60)
    logger.info("  Mining account dashboard")
    logger.info("  REST API:   http://localhost:%d", args.api_port)
    logger.info("  Local db:   %s", args.local_db)
    logger.info("  Remote db:  %s", args.remote_db)
    logger.info("  Sync every: %.0fs (cooldown %.0fs)", args.sync_interval, args.sync_cooldown)
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
