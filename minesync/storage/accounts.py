import logging
import time
from typing import Dict, Optional

import aiosqlite

logger = logging.getLogger("storage")

_COLUMNS = "phone_number, user_id, username, access_token, created_at"


def _row_to_account(row) -> dict:
    return {
        "phone_number": row[0],
        "user_id": row[1],
        "username": row[2],
        "access_token": row[3],
        "created_at": row[4],
    }


class AccountRepo:
    """CRUD operations for the accounts table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def save(
        self,
        phone_number: str,
        user_id: str = "",
        access_token: str = "",
        username: str = "",
        created_at: Optional[float] = None,
    ) -> Optional[dict]:
        now = time.time() if created_at is None else created_at
        try:
            await self._db.execute(
                f"INSERT INTO accounts ({_COLUMNS}) VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(phone_number) DO UPDATE SET "
                "user_id=excluded.user_id, username=excluded.username, "
                "access_token=excluded.access_token",
                (phone_number, user_id, username, access_token, now),
            )
            await self._db.commit()
        except Exception:
            logger.exception("Failed to save account %s", phone_number)
            return None
        return await self.get(phone_number)

    async def get(self, phone_number: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM accounts WHERE phone_number = ?",
            (phone_number,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_account(row)

    async def delete(self, phone_number: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM accounts WHERE phone_number = ?", (phone_number,)
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def list_all(self) -> Dict[str, dict]:
        result = {}
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM accounts ORDER BY created_at, phone_number"
        ) as cursor:
            async for row in cursor:
                result[row[0]] = _row_to_account(row)
        return result

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM accounts") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
