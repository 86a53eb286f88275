"""
mining.py - Account and mining-session service.

Registers accounts, starts mining sessions through the probe client and merges
the probe response into the account's record, then writes the record to the
local store and mirrors it to the remote store. Writes for the same phone
number are serialized with a per-key lock; different accounts proceed
independently.

Accounts are mirrored to the remote account store when one is configured, and
can be bulk imported or exported (see transfer.py for the file formats).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from minesync.records import MiningRecord, placeholder

if TYPE_CHECKING:
    from minesync.probe import ProbeClient, ProbeResult
    from minesync.storage import AccountRepo, MiningRecordRepo

logger = logging.getLogger("mining")

# Account fields compared when mirroring to the remote store
_MIRRORED_FIELDS = ("user_id", "username", "access_token")


class KeyedLocks:
    """One asyncio.Lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def discard(self, key: str):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def merge_probe_success(record: MiningRecord, data: dict, now: float) -> MiningRecord:
    """Fold a successful probe response into ``record``."""
    team = data.get("earning_team") if isinstance(data.get("earning_team"), dict) else {}
    return record.with_payload(
        now=now,
        is_active=True,
        valid_until=data.get("valid_until"),
        expires_at=data.get("expires_at"),
        hourly_ratio=data.get("hourly_ratio"),
        team_count=team.get("team_count", 0),
        mining_count=team.get("mining_count", 0),
        pi_balance=data.get("pi_balance", 0),
        completed_sessions_count=data.get("completed_sessions_count", 0),
        last_mined_at=now,
        mining_response=data,
    )


def merge_probe_failure(record: MiningRecord, error: str, now: float) -> MiningRecord:
    return record.with_payload(
        now=now,
        is_active=False,
        mining_response={"error": error or "Mining failed"},
    )


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class MirrorResult:
    pushed: int = 0
    pulled: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"pushed": self.pushed, "pulled": self.pulled, "failed": self.failed}


class MiningService:
    """Account registration, probe merges, and demotion writes."""

    def __init__(
        self,
        account_repo: "AccountRepo",
        local: "MiningRecordRepo",
        remote: "MiningRecordRepo",
        probe: Optional["ProbeClient"] = None,
        remote_accounts: Optional["AccountRepo"] = None,
    ):
        self._accounts = account_repo
        self._remote_accounts = remote_accounts
        self._local = local
        self._remote = remote
        self._probe = probe
        self.locks = KeyedLocks()

    # -------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------

    async def register_account(
        self, phone_number: str, user_id: str = "", access_token: str = "", username: str = ""
    ) -> dict:
        phone_number = phone_number.strip()
        if not phone_number:
            raise ValueError("phone_number is required")
        acct = await self._accounts.save(
            phone_number, user_id=user_id, access_token=access_token, username=username,
        )
        if acct is None:
            raise RuntimeError(f"Failed to save account {phone_number}")
        async with self.locks.get(phone_number):
            if await self._local.get(phone_number) is None:
                await self._local.put(placeholder(phone_number))
        await self._mirror_account(acct)
        logger.info("Registered account %s", phone_number)
        return acct

    async def remove_account(self, phone_number: str) -> bool:
        async with self.locks.get(phone_number):
            removed = await self._accounts.delete(phone_number)
            await self._local.delete(phone_number)
        self.locks.discard(phone_number)
        if removed:
            logger.info("Removed account %s", phone_number)
            if self._remote_accounts is not None:
                try:
                    await self._remote_accounts.delete(phone_number)
                except Exception:
                    logger.exception("Failed to remove %s from remote accounts", phone_number)
        return removed

    async def get_account(self, phone_number: str) -> Optional[dict]:
        return await self._accounts.get(phone_number)

    async def list_accounts(self) -> Dict[str, dict]:
        return await self._accounts.list_all()

    # -------------------------------------------------------------------
    # Import / export / mirroring
    # -------------------------------------------------------------------

    async def export_accounts(self) -> List[dict]:
        return list((await self._accounts.list_all()).values())

    async def import_accounts(self, rows: Iterable[dict]) -> ImportResult:
        """Register each row; rows without a phone number are skipped."""
        result = ImportResult()
        for row in rows:
            phone_number = (row.get("phone_number") or "").strip()
            if not phone_number:
                result.skipped += 1
                continue
            try:
                await self.register_account(
                    phone_number,
                    user_id=row.get("user_id") or "",
                    access_token=row.get("access_token") or "",
                    username=row.get("username") or "",
                )
            except RuntimeError as e:
                result.failed += 1
                result.errors.append(str(e))
                continue
            result.imported += 1
        logger.info(
            "Imported %d accounts (%d skipped, %d failed)",
            result.imported, result.skipped, result.failed,
        )
        return result

    async def mirror_accounts(self) -> MirrorResult:
        """Copy accounts missing or outdated on the remote side up, and
        remote-only accounts down (with a placeholder record)."""
        if self._remote_accounts is None:
            raise RuntimeError("No remote account store configured")
        local = await self._accounts.list_all()
        remote = await self._remote_accounts.list_all()
        result = MirrorResult()

        for phone_number, acct in local.items():
            theirs = remote.get(phone_number)
            if theirs is not None and all(theirs[f] == acct[f] for f in _MIRRORED_FIELDS):
                continue
            if await self._save_account_to(self._remote_accounts, acct) is None:
                result.failed += 1
            else:
                result.pushed += 1

        for phone_number, acct in remote.items():
            if phone_number in local:
                continue
            if await self._save_account_to(self._accounts, acct) is None:
                result.failed += 1
                continue
            async with self.locks.get(phone_number):
                if await self._local.get(phone_number) is None:
                    await self._local.put(placeholder(phone_number))
            result.pulled += 1

        logger.info(
            "Account mirror: pushed=%d pulled=%d failed=%d",
            result.pushed, result.pulled, result.failed,
        )
        return result

    @staticmethod
    async def _save_account_to(repo: "AccountRepo", acct: dict) -> Optional[dict]:
        return await repo.save(
            acct["phone_number"],
            user_id=acct["user_id"],
            access_token=acct["access_token"],
            username=acct["username"],
            created_at=acct["created_at"],
        )

    async def _mirror_account(self, acct: dict):
        if self._remote_accounts is None:
            return
        if await self._save_account_to(self._remote_accounts, acct) is None:
            logger.warning("Account %s saved locally but not mirrored", acct["phone_number"])

    # -------------------------------------------------------------------
    # Mining
    # -------------------------------------------------------------------

    async def start_mining(self, phone_number: str) -> "ProbeResult":
        """Probe the mining endpoint for one account and store the outcome."""
        if self._probe is None:
            raise RuntimeError("No probe client configured")
        acct = await self._accounts.get(phone_number)
        if acct is None:
            raise KeyError(f"Account {phone_number} not found")

        async with self.locks.get(phone_number):
            result = await self._probe.start_mining(acct["access_token"])
            now = time.time()
            record = await self._local.get(phone_number) or placeholder(phone_number)
            if result.ok:
                record = merge_probe_success(record, result.data, now)
                logger.info("Mining started for %s", phone_number)
            else:
                record = merge_probe_failure(record, result.error, now)
                logger.warning("Mining failed for %s: %s", phone_number, result.error)
            await self._write_through(record)
        return result

    async def persist_demotions(
        self, keys: Iterable[str], now: Optional[float] = None
    ) -> List[str]:
        """Store is_active=False for each key. Returns the keys written."""
        written = []
        for key in keys:
            async with self.locks.get(key):
                record = await self._local.get(key)
                if record is None:
                    continue
                try:
                    stored = await self._write_through(
                        record.with_payload(now=time.time() if now is None else now, is_active=False)
                    )
                except Exception:
                    logger.exception("Failed to persist demotion for %s", key)
                    continue
                if stored:
                    written.append(key)
        if written:
            logger.info("Marked %d expired mining sessions inactive", len(written))
        return written

    async def _write_through(self, record: MiningRecord) -> bool:
        """Write locally, then mirror remotely; a remote failure is only logged.

        Returns False, without touching the remote store, when the local store
        already holds a newer copy.
        """
        if not await self._local.put(record):
            logger.info("Kept newer local copy of %s", record.key)
            return False
        try:
            await self._remote.upsert_batch([record])
        except Exception:
            logger.exception("Failed to mirror %s to remote store", record.key)
        return True
