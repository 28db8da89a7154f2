"""
Unit tests for the passport ledger (quota safety, identity, status).
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update

from passport_gateway.errors import LedgerCorruptionError, LedgerUnavailableError
from passport_gateway.ledger import MemoryLedger, SQLLedger
from passport_gateway.models import (
    IP_ADDRESS_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    Passport,
    PassportStatus,
    UsageLogEntry,
)

KEY_A = "1a2b3c4d" + "00" * 28
KEY_A_TWIN = "1a2b3c4d" + "11" * 28  # same passport id as KEY_A
KEY_B = "ffeeddcc" + "22" * 28


@pytest_asyncio.fixture
async def sql_ledger(tmp_path):
    """SQLite-backed ledger in a temporary directory."""
    ledger = SQLLedger.from_url(
        f"sqlite+aiosqlite:///{tmp_path / 'passports.db'}",
        tier_limits={"free": 100, "pro": 1000},
    )
    await ledger.create_tables()
    yield ledger
    await ledger.dispose()


@pytest_asyncio.fixture
async def tiny_sql_ledger(tmp_path):
    """SQLite-backed ledger where a free passport gets a single use."""
    ledger = SQLLedger.from_url(
        f"sqlite+aiosqlite:///{tmp_path / 'tiny.db'}",
        tier_limits={"free": 1, "pro": 10},
    )
    await ledger.create_tables()
    yield ledger
    await ledger.dispose()


async def _count_logs(ledger: SQLLedger) -> int:
    async with ledger._sessions() as session:
        return (await session.execute(select(func.count()).select_from(UsageLogEntry))).scalar_one()


async def _count_passports(ledger: SQLLedger) -> int:
    async with ledger._sessions() as session:
        return (await session.execute(select(func.count()).select_from(Passport))).scalar_one()


async def _set_status(ledger: SQLLedger, public_key: str, status: PassportStatus) -> None:
    async with ledger._sessions() as session:
        async with session.begin():
            await session.execute(
                update(Passport).where(Passport.public_key == public_key).values(status=status.value)
            )


class TestMemoryLedger:
    """In-memory ledger semantics."""

    @pytest.mark.asyncio
    async def test_first_request_creates_passport(self, ledger):
        snapshot = await ledger.resolve_and_admit(KEY_A, "10.0.0.1", "pytest")

        assert snapshot.passport_id == "cdx-1a2b3c4d"
        assert snapshot.tier == "free"
        assert snapshot.usage == "1/100"
        assert snapshot.status == "active"
        assert snapshot.can_proceed is True
        assert snapshot.usage_log_id is not None

    @pytest.mark.asyncio
    async def test_idempotent_identity(self, ledger):
        """The same new key twice creates one passport."""
        first = await ledger.resolve_and_admit(KEY_A, None, None)
        second = await ledger.resolve_and_admit(KEY_A.upper(), None, None)

        assert len(ledger.passports) == 1
        assert first.passport_id == second.passport_id
        assert second.usage_count == 2
        assert len(ledger.logs_for(KEY_A)) == 2

    @pytest.mark.asyncio
    async def test_quota_safety_under_concurrency(self):
        """N concurrent requests against a remaining quota of k admit exactly k."""
        ledger = MemoryLedger(tier_limits={"free": 5, "pro": 10})

        results = await asyncio.gather(
            *[ledger.resolve_and_admit(KEY_A, None, None) for _ in range(20)]
        )

        admitted = [r for r in results if r.can_proceed]
        assert len(admitted) == 5
        record = ledger.passports[KEY_A]
        assert record.usage_count == 5
        assert record.status == PassportStatus.LIMIT_REACHED.value
        assert len(ledger.logs_for(KEY_A)) == 5

    @pytest.mark.asyncio
    async def test_status_transition_at_limit(self):
        ledger = MemoryLedger(tier_limits={"free": 1, "pro": 10})

        first = await ledger.resolve_and_admit(KEY_A, None, None)
        assert first.can_proceed is True
        assert first.usage == "1/1"
        assert first.status == "limit_reached"

        second = await ledger.resolve_and_admit(KEY_A, None, None)
        assert second.can_proceed is False
        assert second.usage_count == 1
        assert second.usage_log_id is None
        assert len(ledger.logs_for(KEY_A)) == 1

    @pytest.mark.asyncio
    async def test_suspended_never_admitted(self, ledger):
        await ledger.resolve_and_admit(KEY_A, None, None)
        ledger.passports[KEY_A].status = PassportStatus.SUSPENDED.value

        snapshot = await ledger.resolve_and_admit(KEY_A, None, None)

        assert snapshot.can_proceed is False
        assert snapshot.status == "suspended"
        assert snapshot.usage_count == 1

    @pytest.mark.asyncio
    async def test_passport_id_collision(self, ledger):
        await ledger.resolve_and_admit(KEY_A, None, None)
        with pytest.raises(LedgerCorruptionError):
            await ledger.resolve_and_admit(KEY_A_TWIN, None, None)

    @pytest.mark.asyncio
    async def test_record_tokens_once(self, ledger):
        snapshot = await ledger.resolve_and_admit(KEY_A, None, None)

        assert await ledger.record_tokens(snapshot.usage_log_id, 42) is True
        assert await ledger.record_tokens(snapshot.usage_log_id, 99) is False
        assert ledger.usage_logs[snapshot.usage_log_id].tokens_used == 42
        assert await ledger.record_tokens("missing", 1) is False

    @pytest.mark.asyncio
    async def test_get_passport(self, ledger):
        assert await ledger.get_passport(KEY_A) is None
        await ledger.resolve_and_admit(KEY_A, None, None)

        snapshot = await ledger.get_passport(KEY_A)
        assert snapshot.usage == "1/100"
        assert snapshot.can_proceed is True


class TestSQLLedger:
    """SQL ledger on SQLite via aiosqlite."""

    @pytest.mark.asyncio
    async def test_first_request_creates_passport(self, sql_ledger):
        snapshot = await sql_ledger.resolve_and_admit(KEY_A, "10.0.0.1", "pytest")

        assert snapshot.passport_id == "cdx-1a2b3c4d"
        assert snapshot.usage == "1/100"
        assert snapshot.status == "active"
        assert snapshot.can_proceed is True
        assert await _count_logs(sql_ledger) == 1

    @pytest.mark.asyncio
    async def test_idempotent_identity(self, sql_ledger):
        await sql_ledger.resolve_and_admit(KEY_A, None, None)
        second = await sql_ledger.resolve_and_admit(KEY_A, None, None)

        assert second.usage_count == 2
        assert await _count_passports(sql_ledger) == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_distinct_passports(self, sql_ledger):
        a = await sql_ledger.resolve_and_admit(KEY_A, None, None)
        b = await sql_ledger.resolve_and_admit(KEY_B, None, None)

        assert a.passport_id != b.passport_id
        assert await _count_passports(sql_ledger) == 2

    @pytest.mark.asyncio
    async def test_status_transition_at_limit(self, tiny_sql_ledger):
        first = await tiny_sql_ledger.resolve_and_admit(KEY_A, None, None)
        assert first.can_proceed is True
        assert first.usage == "1/1"
        assert first.status == "limit_reached"

        second = await tiny_sql_ledger.resolve_and_admit(KEY_A, None, None)
        assert second.can_proceed is False
        assert second.usage_count == 1
        assert await _count_logs(tiny_sql_ledger) == 1

    @pytest.mark.asyncio
    async def test_quota_safety_under_concurrency(self, tmp_path):
        ledger = SQLLedger.from_url(
            f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
            tier_limits={"free": 3, "pro": 10},
        )
        await ledger.create_tables()
        try:
            results = await asyncio.gather(
                *[ledger.resolve_and_admit(KEY_A, None, None) for _ in range(8)]
            )

            assert sum(1 for r in results if r.can_proceed) == 3
            snapshot = await ledger.get_passport(KEY_A)
            assert snapshot.usage == "3/3"
            assert snapshot.status == "limit_reached"
            assert await _count_passports(ledger) == 1
            assert await _count_logs(ledger) == 3
        finally:
            await ledger.dispose()

    @pytest.mark.asyncio
    async def test_suspended_never_admitted(self, sql_ledger):
        await sql_ledger.resolve_and_admit(KEY_A, None, None)
        await _set_status(sql_ledger, KEY_A, PassportStatus.SUSPENDED)

        snapshot = await sql_ledger.resolve_and_admit(KEY_A, None, None)

        assert snapshot.can_proceed is False
        assert snapshot.status == "suspended"
        assert snapshot.usage_count == 1

    @pytest.mark.asyncio
    async def test_passport_id_collision(self, sql_ledger):
        await sql_ledger.resolve_and_admit(KEY_A, None, None)
        with pytest.raises(LedgerCorruptionError):
            await sql_ledger.resolve_and_admit(KEY_A_TWIN, None, None)
        assert await _count_passports(sql_ledger) == 1

    @pytest.mark.asyncio
    async def test_record_tokens_once(self, sql_ledger):
        snapshot = await sql_ledger.resolve_and_admit(KEY_A, None, None)

        assert await sql_ledger.record_tokens(snapshot.usage_log_id, 42) is True
        assert await sql_ledger.record_tokens(snapshot.usage_log_id, 7) is False

    @pytest.mark.asyncio
    async def test_unreachable_store(self, tmp_path):
        """Connection failures surface as LedgerUnavailableError after retries."""
        ledger = SQLLedger.from_url(
            f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}",
            max_retries=1,
            retry_backoff=0,
        )
        try:
            with pytest.raises(LedgerUnavailableError):
                await ledger.resolve_and_admit(KEY_A, None, None)
        finally:
            await ledger.dispose()


class TestSQLLedgerErrors:
    """Store errors surface as structured ledger errors."""

    @pytest.mark.asyncio
    async def test_long_request_metadata_is_clipped(self, sql_ledger):
        snapshot = await sql_ledger.resolve_and_admit(KEY_A, "2001:db8::" + "f" * 60, "agent/" + "x" * 600)

        async with sql_ledger._sessions() as session:
            log = await session.get(UsageLogEntry, snapshot.usage_log_id)
        assert len(log.ip_address) == IP_ADDRESS_MAX_LENGTH
        assert len(log.user_agent) == USER_AGENT_MAX_LENGTH
        assert log.user_agent.startswith("agent/")

    @pytest.mark.asyncio
    async def test_memory_ledger_clips_the_same_way(self, ledger):
        snapshot = await ledger.resolve_and_admit(KEY_A, None, "x" * 600)
        assert len(ledger.usage_logs[snapshot.usage_log_id].user_agent) == USER_AGENT_MAX_LENGTH

    @pytest.mark.asyncio
    async def test_unstorable_value_is_corruption(self, sql_ledger):
        """A driver-level rejection is classified, not leaked raw."""
        snapshot = await sql_ledger.resolve_and_admit(KEY_A, None, None)
        with pytest.raises(LedgerCorruptionError):
            await sql_ledger.record_tokens(snapshot.usage_log_id, 2**70)

    @pytest.mark.asyncio
    async def test_timed_out_attempt_is_not_retried(self, tmp_path):
        """A cut-off attempt may already have committed, so it is never replayed."""
        ledger = SQLLedger.from_url(
            f"sqlite+aiosqlite:///{tmp_path / 'slow.db'}",
            max_retries=3,
            retry_backoff=0,
            timeout=0.05,
        )
        calls = []

        async def slow_attempt(*args):
            calls.append(args)
            await asyncio.sleep(1)

        ledger._admit_once = slow_attempt
        try:
            with pytest.raises(LedgerUnavailableError):
                await ledger.resolve_and_admit(KEY_A, None, None)
        finally:
            await ledger.dispose()

        assert len(calls) == 1
