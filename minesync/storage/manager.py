import logging
from typing import Optional

import aiosqlite

from ._migrate import run_migrations
from .accounts import AccountRepo
from .records import MiningRecordRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "minesync.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.accounts: Optional[AccountRepo] = None
        self.records: Optional[MiningRecordRepo] = None

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await run_migrations(self._db, logger)

        self.accounts = AccountRepo(self._db)
        self.records = MiningRecordRepo(self._db)

        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed: %s", self.db_path)
