import json
import logging
from typing import Iterable, List, Optional

import aiosqlite

from minesync.records import MiningRecord

logger = logging.getLogger("storage")

# SQLite caps bound parameters per statement; stay well under the default.
_SELECT_CHUNK = 500

# Equal clocks may overwrite, strictly older ones may not.
_UPSERT_SQL = (
    "INSERT INTO mining_records (phone_number, payload_json, updated_at) "
    "VALUES (?, ?, ?) "
    "ON CONFLICT(phone_number) DO UPDATE SET "
    "payload_json=excluded.payload_json, updated_at=excluded.updated_at "
    "WHERE COALESCE(excluded.updated_at, 0) >= COALESCE(mining_records.updated_at, 0)"
)


def _row_to_record(row) -> MiningRecord:
    try:
        payload = json.loads(row[1]) if row[1] else {}
    except ValueError:
        logger.warning("Corrupt payload for %s, treating as empty", row[0])
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    return MiningRecord(key=row[0], updated_at=row[2], payload=payload)


def _params(record: MiningRecord) -> tuple:
    return (record.key, json.dumps(record.payload), record.updated_at)


class MiningRecordRepo:
    """Keyed mining records; serves as both the local and the remote store."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    # -------------------------------------------------------------------
    # Local store surface
    # -------------------------------------------------------------------

    async def get(self, key: str) -> Optional[MiningRecord]:
        async with self._db.execute(
            "SELECT phone_number, payload_json, updated_at FROM mining_records "
            "WHERE phone_number = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    async def get_all(self) -> List[MiningRecord]:
        results = []
        async with self._db.execute(
            "SELECT phone_number, payload_json, updated_at FROM mining_records "
            "ORDER BY phone_number"
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_record(row))
        return results

    async def put(self, record: MiningRecord) -> bool:
        """Insert or replace ``record``. Returns False if a newer copy was kept."""
        cursor = await self._db.execute(_UPSERT_SQL, _params(record))
        await self._db.commit()
        return cursor.rowcount > 0

    async def delete(self, key: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM mining_records WHERE phone_number = ?", (key,)
        )
        await self._db.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------
    # Remote store surface
    # -------------------------------------------------------------------

    async def select_by_keys(self, keys: Iterable[str]) -> List[MiningRecord]:
        keys = list(dict.fromkeys(keys))
        results = []
        for i in range(0, len(keys), _SELECT_CHUNK):
            chunk = keys[i:i + _SELECT_CHUNK]
            marks = ", ".join("?" for _ in chunk)
            async with self._db.execute(
                "SELECT phone_number, payload_json, updated_at FROM mining_records "
                f"WHERE phone_number IN ({marks}) ORDER BY phone_number",
                chunk,
            ) as cursor:
                async for row in cursor:
                    results.append(_row_to_record(row))
        return results

    async def upsert_batch(self, records: List[MiningRecord]) -> int:
        """Upsert ``records`` in one transaction, keyed by phone number."""
        if not records:
            return 0
        try:
            cursor = await self._db.executemany(
                _UPSERT_SQL, [_params(r) for r in records]
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        return cursor.rowcount

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM mining_records") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
