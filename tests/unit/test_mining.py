"""
test_mining.py - Unit tests for MiningService.

Account registration, probe merges (success and failure), write-through to
the remote store, per-key serialization, and demotion writes.
"""

import asyncio

import pytest
import pytest_asyncio

from minesync.mining import KeyedLocks, MiningService, merge_probe_success
from minesync.probe import ProbeResult
from minesync.records import MiningRecord

from _support import FakeProbe

pytestmark = pytest.mark.asyncio

PHONE = "+15550001"

PROBE_DATA = {
    "valid_until": "2030-01-01T00:00:00+00:00",
    "hourly_ratio": 0.25,
    "pi_balance": 12.5,
    "completed_sessions_count": 31,
    "earning_team": {"team_count": 4, "mining_count": 2, "hourly_bonus": 0.1},
    "proof_of_presence": {"balance": 12.5},
}


@pytest_asyncio.fixture
async def service(local_storage, remote_storage, fake_probe):
    return MiningService(
        local_storage.accounts, local_storage.records, remote_storage.records, probe=fake_probe,
    )


class TestAccounts:

    async def test_register_creates_placeholder(self, service, local_storage):
        acct = await service.register_account(PHONE, user_id="u1", access_token="tok")
        assert acct["phone_number"] == PHONE
        rec = await local_storage.records.get(PHONE)
        assert rec.updated_at is None
        assert rec.payload == {}

    async def test_register_keeps_existing_record(self, service, local_storage):
        await local_storage.records.put(MiningRecord(PHONE, 5.0, {"balance": 1}))
        await service.register_account(PHONE, access_token="tok")
        assert (await local_storage.records.get(PHONE)).payload == {"balance": 1}

    async def test_register_requires_phone(self, service):
        with pytest.raises(ValueError):
            await service.register_account("  ")

    async def test_remove_account(self, service, local_storage):
        await service.register_account(PHONE)
        assert await service.remove_account(PHONE) is True
        assert await local_storage.records.get(PHONE) is None
        assert await service.remove_account(PHONE) is False


class TestStartMining:

    async def test_success_merges_and_mirrors(self, service, local_storage, remote_storage, fake_probe):
        await service.register_account(PHONE, access_token="tok")
        fake_probe.result = ProbeResult(ok=True, data=PROBE_DATA, status_code=200)

        result = await service.start_mining(PHONE)

        assert result.ok is True
        assert fake_probe.calls == ["tok"]
        local = await local_storage.records.get(PHONE)
        assert local.payload["is_active"] is True
        assert local.payload["valid_until"] == PROBE_DATA["valid_until"]
        assert local.payload["team_count"] == 4
        assert local.payload["mining_count"] == 2
        assert local.payload["completed_sessions_count"] == 31
        assert local.payload["mining_response"] == PROBE_DATA
        assert local.updated_at is not None
        remote = await remote_storage.records.get(PHONE)
        assert remote == local

    async def test_failure_stores_error(self, service, local_storage, fake_probe):
        await service.register_account(PHONE, access_token="tok")
        fake_probe.result = ProbeResult(ok=False, error="You can't start mining at the moment")

        result = await service.start_mining(PHONE)

        assert result.ok is False
        rec = await local_storage.records.get(PHONE)
        assert rec.payload["is_active"] is False
        assert rec.payload["mining_response"] == {"error": "You can't start mining at the moment"}

    async def test_unknown_account(self, service):
        with pytest.raises(KeyError):
            await service.start_mining("+19999999")

    async def test_no_probe_configured(self, local_storage, remote_storage):
        svc = MiningService(local_storage.accounts, local_storage.records, remote_storage.records)
        with pytest.raises(RuntimeError):
            await svc.start_mining(PHONE)

    async def test_remote_failure_keeps_local_result(self, local_storage, fake_probe):
        class BrokenRemote:
            async def upsert_batch(self, records):
                raise ConnectionError("down")

        svc = MiningService(
            local_storage.accounts, local_storage.records, BrokenRemote(), probe=fake_probe,
        )
        await svc.register_account(PHONE, access_token="tok")
        fake_probe.result = ProbeResult(ok=True, data=PROBE_DATA)

        await svc.start_mining(PHONE)

        assert (await local_storage.records.get(PHONE)).payload["is_active"] is True

    async def test_same_key_probes_are_serialized(self, local_storage, remote_storage):
        in_flight = []
        overlaps = []

        class SlowProbe(FakeProbe):
            async def start_mining(self, access_token):
                in_flight.append(access_token)
                if len(in_flight) > 1:
                    overlaps.append(list(in_flight))
                await asyncio.sleep(0.01)
                in_flight.remove(access_token)
                return ProbeResult(ok=True, data=PROBE_DATA)

        svc = MiningService(
            local_storage.accounts, local_storage.records, remote_storage.records, probe=SlowProbe(),
        )
        await svc.register_account(PHONE, access_token="tok")
        await asyncio.gather(svc.start_mining(PHONE), svc.start_mining(PHONE))
        assert overlaps == []


class TestDemotions:

    async def test_persist_demotions(self, service, local_storage, remote_storage):
        await local_storage.records.put(MiningRecord(PHONE, 10.0, {"is_active": True, "balance": 3}))

        written = await service.persist_demotions([PHONE, "+1missing"], now=50.0)

        assert written == [PHONE]
        local = await local_storage.records.get(PHONE)
        assert local.payload == {"is_active": False, "balance": 3}
        assert local.updated_at == 50.0
        assert (await remote_storage.records.get(PHONE)).payload["is_active"] is False

    async def test_demotion_older_than_stored_copy_is_not_counted(
        self, service, local_storage, remote_storage
    ):
        await local_storage.records.put(MiningRecord(PHONE, 100.0, {"is_active": True}))

        written = await service.persist_demotions([PHONE], now=50.0)

        assert written == []
        local = await local_storage.records.get(PHONE)
        assert local.updated_at == 100.0
        assert local.payload["is_active"] is True
        assert await remote_storage.records.get(PHONE) is None


class TestHelpers:

    async def test_merge_handles_missing_team(self):
        rec = merge_probe_success(MiningRecord(PHONE), {"valid_until": None}, now=7.0)
        assert rec.payload["team_count"] == 0
        assert rec.payload["last_mined_at"] == 7.0
        assert rec.updated_at == 7.0

    async def test_keyed_locks(self):
        locks = KeyedLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")
        locks.discard("a")
        assert len(locks) == 1


# ── Import / export / mirroring ───────────────────────────────────────────

@pytest_asyncio.fixture
async def mirrored(local_storage, remote_storage):
    return MiningService(
        local_storage.accounts,
        local_storage.records,
        remote_storage.records,
        remote_accounts=remote_storage.accounts,
    )


class TestImportExport:

    async def test_import_registers_and_skips(self, service, local_storage):
        rows = [
            {"phone_number": "+15550001", "access_token": "t1"},
            {"phone_number": "  ", "access_token": "t2"},
            {"phone_number": "+15550002", "username": "bob"},
        ]

        result = await service.import_accounts(rows)

        assert result.to_dict() == {"imported": 2, "skipped": 1, "failed": 0, "errors": []}
        assert list(await local_storage.accounts.list_all()) == ["+15550001", "+15550002"]
        assert (await local_storage.records.get("+15550002")).updated_at is None

    async def test_import_updates_existing_token(self, service, local_storage):
        await service.register_account(PHONE, access_token="old")
        await service.import_accounts([{"phone_number": PHONE, "access_token": "new"}])
        assert (await local_storage.accounts.get(PHONE))["access_token"] == "new"

    async def test_failed_save_is_counted(self, local_storage, remote_storage):
        class BrokenAccounts:
            async def save(self, *args, **kwargs):
                return None

        svc = MiningService(BrokenAccounts(), local_storage.records, remote_storage.records)
        result = await svc.import_accounts([{"phone_number": PHONE}])
        assert (result.imported, result.failed) == (0, 1)
        assert PHONE in result.errors[0]

    async def test_export_includes_tokens(self, service):
        await service.register_account(PHONE, access_token="tok")
        exported = await service.export_accounts()
        assert [a["access_token"] for a in exported] == ["tok"]


class TestMirror:

    async def test_register_and_remove_reach_remote(self, mirrored, remote_storage):
        await mirrored.register_account(PHONE, access_token="tok")
        assert (await remote_storage.accounts.get(PHONE))["access_token"] == "tok"

        await mirrored.remove_account(PHONE)
        assert await remote_storage.accounts.get(PHONE) is None

    async def test_mirror_both_directions(self, mirrored, local_storage, remote_storage):
        await local_storage.accounts.save("+1local", access_token="a", created_at=10.0)
        await local_storage.accounts.save("+1both", access_token="fresh", created_at=20.0)
        await remote_storage.accounts.save("+1both", access_token="stale", created_at=20.0)
        await remote_storage.accounts.save("+1remote", access_token="r", created_at=30.0)

        result = await mirrored.mirror_accounts()

        assert result.to_dict() == {"pushed": 2, "pulled": 1, "failed": 0}
        assert (await remote_storage.accounts.get("+1both"))["access_token"] == "fresh"
        assert (await remote_storage.accounts.get("+1local"))["created_at"] == 10.0
        pulled = await local_storage.accounts.get("+1remote")
        assert pulled["access_token"] == "r"
        assert pulled["created_at"] == 30.0
        assert (await local_storage.records.get("+1remote")).updated_at is None

        again = await mirrored.mirror_accounts()
        assert again.to_dict() == {"pushed": 0, "pulled": 0, "failed": 0}

    async def test_mirror_without_remote_accounts(self, service):
        with pytest.raises(RuntimeError):
            await service.mirror_accounts()
