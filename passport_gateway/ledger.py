"""
Passport Gateway Ledger.

Turns a public key into a durable passport and meters it against its quota.
The whole resolve, admit and increment sequence runs as one atomic unit per
request: two concurrent requests for the same key serialize on the passport
row, so the second one always sees the first one's increment before it
decides whether it may proceed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, event, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from passport_gateway.config import (
    LEDGER_MAX_RETRIES,
    LEDGER_RETRY_BACKOFF,
    LEDGER_TIMEOUT,
    PASSPORT_ID_PREFIX,
    TIER_LIMITS,
)
from passport_gateway.errors import LedgerCorruptionError, LedgerUnavailableError
from passport_gateway.keys import derive_passport_id
from passport_gateway.models import (
    IP_ADDRESS_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    Base,
    Passport,
    PassportStatus,
    Tier,
    UsageLogEntry,
    generate_uuid,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TYPE = "explain"


@dataclass
class PassportSnapshot:
    """
    State of a passport right after a resolution attempt.

    ``usage_log_id`` is internal bookkeeping for token accounting and is
    never sent to clients.
    """

    passport_id: str
    tier: str
    usage_count: int
    usage_limit: int
    status: str
    can_proceed: bool
    usage_log_id: Optional[str] = None

    @property
    def usage(self) -> str:
        return f"{self.usage_count}/{self.usage_limit}"

    def to_frame_data(self) -> Dict[str, Any]:
        """Client-facing passport summary."""
        return {
            "passportId": self.passport_id,
            "tier": self.tier,
            "usage": self.usage,
            "status": self.status,
        }


class LedgerInterface(ABC):
    """Abstract interface for passport ledgers."""

    @abstractmethod
    async def resolve_and_admit(
        self,
        public_key_hex: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        request_type: str = DEFAULT_REQUEST_TYPE,
    ) -> PassportSnapshot:
        """
        Resolve (or lazily create) the passport for a key and try to admit.

        When admitted, the usage count is incremented and one usage log
        entry appended in the same atomic step; the status flips to
        ``limit_reached`` in that step if the ceiling is reached.

        Raises:
            LedgerUnavailableError: Store unreachable after bounded retries.
            LedgerCorruptionError: Unexpected constraint violation.
        """
        pass

    @abstractmethod
    async def record_tokens(self, usage_log_id: str, tokens_used: int) -> bool:
        """Fill ``tokens_used`` on a log entry. Returns False if already set or missing."""
        pass

    @abstractmethod
    async def get_passport(self, public_key_hex: str) -> Optional[PassportSnapshot]:
        """Read-only lookup. ``can_proceed`` reflects whether a request would be admitted."""
        pass


def _would_admit(status: str, usage_count: int, usage_limit: int) -> bool:
    return status == PassportStatus.ACTIVE.value and usage_count < usage_limit


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    """Fit request metadata into its column."""
    return value[:limit] if value is not None else None


# =============================================================================
# In-memory ledger
# =============================================================================


@dataclass
class PassportRecord:
    """In-memory passport row."""

    id: str
    public_key: str
    passport_id: str
    tier: str
    usage_count: int
    usage_limit: int
    status: str
    created_at: datetime
    last_used_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageLogRecord:
    """In-memory usage log row."""

    id: str
    passport_ref: str
    request_type: str
    timestamp: datetime
    ip_address: Optional[str]
    user_agent: Optional[str]
    tokens_used: Optional[int] = None


class MemoryLedger(LedgerInterface):
    """
    In-memory passport ledger.

    Suitable for tests and single-process development. Each public key has
    its own lock, so unrelated passports never contend.

    Example:
        >>> ledger = MemoryLedger()
        >>> snapshot = await ledger.resolve_and_admit(public_key_hex, "10.0.0.1", "curl/8.0")
        >>> snapshot.can_proceed
        True
    """

    def __init__(
        self,
        tier_limits: Optional[Dict[str, int]] = None,
        id_prefix: str = PASSPORT_ID_PREFIX,
    ):
        self._tier_limits = tier_limits or dict(TIER_LIMITS)
        self._id_prefix = id_prefix
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._passport_ids: Dict[str, str] = {}  # passport_id -> public_key
        self.passports: Dict[str, PassportRecord] = {}
        self.usage_logs: Dict[str, UsageLogRecord] = {}

    def _snapshot(self, record: PassportRecord, can_proceed: bool, log_id: Optional[str] = None):
        return PassportSnapshot(
            passport_id=record.passport_id,
            tier=record.tier,
            usage_count=record.usage_count,
            usage_limit=record.usage_limit,
            status=record.status,
            can_proceed=can_proceed,
            usage_log_id=log_id,
        )

    def _create(self, public_key: str, now: datetime) -> PassportRecord:
        passport_id = derive_passport_id(public_key, self._id_prefix)
        if passport_id in self._passport_ids:
            raise LedgerCorruptionError()
        record = PassportRecord(
            id=generate_uuid(),
            public_key=public_key,
            passport_id=passport_id,
            tier=Tier.FREE.value,
            usage_count=0,
            usage_limit=self._tier_limits[Tier.FREE.value],
            status=PassportStatus.ACTIVE.value,
            created_at=now,
            last_used_at=now,
        )
        self._passport_ids[passport_id] = public_key
        self.passports[public_key] = record
        logger.info(f"Provisioned passport {passport_id}")
        return record

    async def resolve_and_admit(
        self,
        public_key_hex: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        request_type: str = DEFAULT_REQUEST_TYPE,
    ) -> PassportSnapshot:
        public_key = public_key_hex.lower()
        async with self._locks[public_key]:
            now = utc_now()
            record = self.passports.get(public_key)
            if record is None:
                record = self._create(public_key, now)
            record.last_used_at = now

            if not _would_admit(record.status, record.usage_count, record.usage_limit):
                return self._snapshot(record, can_proceed=False)

            record.usage_count += 1
            if record.usage_count >= record.usage_limit:
                record.status = PassportStatus.LIMIT_REACHED.value

            log = UsageLogRecord(
                id=generate_uuid(),
                passport_ref=record.id,
                request_type=request_type,
                timestamp=now,
                ip_address=_clip(ip_address, IP_ADDRESS_MAX_LENGTH),
                user_agent=_clip(user_agent, USER_AGENT_MAX_LENGTH),
            )
            self.usage_logs[log.id] = log
            return self._snapshot(record, can_proceed=True, log_id=log.id)

    async def record_tokens(self, usage_log_id: str, tokens_used: int) -> bool:
        log = self.usage_logs.get(usage_log_id)
        if log is None or log.tokens_used is not None:
            return False
        log.tokens_used = tokens_used
        return True

    async def get_passport(self, public_key_hex: str) -> Optional[PassportSnapshot]:
        record = self.passports.get(public_key_hex.lower())
        if record is None:
            return None
        return self._snapshot(
            record, _would_admit(record.status, record.usage_count, record.usage_limit)
        )

    def logs_for(self, public_key_hex: str) -> List[UsageLogRecord]:
        """All usage log entries of a passport, oldest first."""
        record = self.passports.get(public_key_hex.lower())
        if record is None:
            return []
        return [log for log in self.usage_logs.values() if log.passport_ref == record.id]


# =============================================================================
# SQL ledger
# =============================================================================

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, ConnectionError)


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own transaction boundaries on SQLite.

    The sqlite3 driver defers BEGIN until the first write, which breaks
    savepoints. BEGIN IMMEDIATE also takes the write lock up front, so
    concurrent admissions queue on the busy timeout instead of failing.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SQLLedger(LedgerInterface):
    """
    Durable passport ledger on SQLAlchemy's asyncio extension.

    Admission is a conditional UPDATE (``status = 'active' AND usage_count <
    usage_limit``) inside the same transaction that resolves the passport and
    appends the usage log; the affected row count is the decision. The row
    lock taken by the UPDATE serializes concurrent admissions for one key
    while leaving other keys untouched.

    Example:
        >>> ledger = SQLLedger.from_url("postgresql+asyncpg://gateway@db/passports")
        >>> await ledger.create_tables()
        >>> snapshot = await ledger.resolve_and_admit(public_key_hex, ip, user_agent)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        tier_limits: Optional[Dict[str, int]] = None,
        id_prefix: str = PASSPORT_ID_PREFIX,
        max_retries: int = LEDGER_MAX_RETRIES,
        retry_backoff: float = LEDGER_RETRY_BACKOFF,
        timeout: float = LEDGER_TIMEOUT,
    ):
        """
        Initialize the SQL ledger.

        Args:
            engine: An async SQLAlchemy engine.
            tier_limits: Usage limit provisioned per tier.
            id_prefix: Literal prefix of external passport ids.
            max_retries: Retries on transient store errors before giving up.
            retry_backoff: Base delay in seconds, doubled on every retry.
            timeout: Upper bound in seconds for one transaction attempt.
        """
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._tier_limits = tier_limits or dict(TIER_LIMITS)
        self._id_prefix = id_prefix
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._timeout = timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SQLLedger":
        """Create a ledger with its own engine."""
        engine = create_async_engine(url, pool_pre_ping=True)
        if engine.dialect.name == "sqlite":
            _configure_sqlite(engine)
        return cls(engine, **kwargs)

    async def create_tables(self) -> None:
        """Create the passport tables if they don't exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self._engine.dispose()

    async def _run(self, operation: str, attempt_fn, *args):
        """Run one transactional attempt with bounded retries on transient errors."""
        for attempt in range(self._max_retries + 1):
            try:
                return await asyncio.wait_for(attempt_fn(*args), timeout=self._timeout)
            except IntegrityError as e:
                logger.error(f"Ledger constraint violation during {operation}: {e.orig!r}")
                raise LedgerCorruptionError() from e
            except asyncio.TimeoutError as e:
                # The attempt may have been cut off mid-COMMIT; a retry could admit twice.
                logger.error(f"Ledger attempt timed out during {operation} after {self._timeout}s")
                raise LedgerUnavailableError() from e
            except _TRANSIENT_ERRORS as e:
                if attempt >= self._max_retries:
                    logger.error(
                        f"Ledger unavailable during {operation} after {attempt + 1} attempts: "
                        f"{type(e).__name__}"
                    )
                    raise LedgerUnavailableError() from e
                delay = self._retry_backoff * (2 ** attempt)
                logger.warning(
                    f"Transient ledger error during {operation} "
                    f"(attempt {attempt + 1}, retrying in {delay:.3f}s): {type(e).__name__}"
                )
                await asyncio.sleep(delay)
            except (SQLAlchemyError, OverflowError) as e:
                logger.error(f"Ledger rejected {operation}: {type(e).__name__}")
                raise LedgerCorruptionError() from e

    async def _load_or_create(self, session, public_key: str, now: datetime) -> Passport:
        stmt = select(Passport).where(Passport.public_key == public_key)
        passport = (await session.execute(stmt)).scalar_one_or_none()
        if passport is not None:
            return passport

        passport_id = derive_passport_id(public_key, self._id_prefix)
        try:
            async with session.begin_nested():
                passport = Passport(
                    public_key=public_key,
                    passport_id=passport_id,
                    tier=Tier.FREE.value,
                    usage_count=0,
                    usage_limit=self._tier_limits[Tier.FREE.value],
                    status=PassportStatus.ACTIVE.value,
                    created_at=now,
                    last_used_at=now,
                    metadata_={},
                )
                session.add(passport)
            logger.info(f"Provisioned passport {passport_id}")
            return passport
        except IntegrityError as e:
            # A concurrent request may have created the same key first.
            passport = (await session.execute(stmt)).scalar_one_or_none()
            if passport is None:
                logger.error(f"Passport id {passport_id} already bound to a different key")
                raise LedgerCorruptionError() from e
            return passport

    async def _admit_once(
        self,
        public_key: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        request_type: str,
    ) -> PassportSnapshot:
        now = utc_now()
        async with self._sessions() as session:
            async with session.begin():
                passport = await self._load_or_create(session, public_key, now)
                row_id = passport.id

                next_count = Passport.usage_count + 1
                result = await session.execute(
                    update(Passport)
                    .where(
                        Passport.id == row_id,
                        Passport.status == PassportStatus.ACTIVE.value,
                        Passport.usage_count < Passport.usage_limit,
                    )
                    .values(
                        usage_count=next_count,
                        last_used_at=now,
                        status=case(
                            (next_count >= Passport.usage_limit, PassportStatus.LIMIT_REACHED.value),
                            else_=Passport.status,
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
                admitted = result.rowcount == 1

                log_id = None
                if admitted:
                    log = UsageLogEntry(
                        passport_ref=row_id,
                        request_type=request_type,
                        timestamp=now,
                        ip_address=_clip(ip_address, IP_ADDRESS_MAX_LENGTH),
                        user_agent=_clip(user_agent, USER_AGENT_MAX_LENGTH),
                    )
                    session.add(log)
                    await session.flush()
                    log_id = log.id
                else:
                    await session.execute(
                        update(Passport)
                        .where(Passport.id == row_id)
                        .values(last_used_at=now)
                        .execution_options(synchronize_session=False)
                    )

                current = (
                    await session.execute(
                        select(Passport)
                        .where(Passport.id == row_id)
                        .execution_options(populate_existing=True)
                    )
                ).scalar_one()

                return PassportSnapshot(
                    passport_id=current.passport_id,
                    tier=current.tier,
                    usage_count=current.usage_count,
                    usage_limit=current.usage_limit,
                    status=current.status,
                    can_proceed=admitted,
                    usage_log_id=log_id,
                )

    async def resolve_and_admit(
        self,
        public_key_hex: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        request_type: str = DEFAULT_REQUEST_TYPE,
    ) -> PassportSnapshot:
        return await self._run(
            "resolve_and_admit",
            self._admit_once,
            public_key_hex.lower(),
            ip_address,
            user_agent,
            request_type,
        )

    async def _record_tokens_once(self, usage_log_id: str, tokens_used: int) -> bool:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(UsageLogEntry)
                    .where(UsageLogEntry.id == usage_log_id, UsageLogEntry.tokens_used.is_(None))
                    .values(tokens_used=tokens_used)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def record_tokens(self, usage_log_id: str, tokens_used: int) -> bool:
        return await self._run("record_tokens", self._record_tokens_once, usage_log_id, tokens_used)

    async def _get_once(self, public_key: str) -> Optional[PassportSnapshot]:
        async with self._sessions() as session:
            passport = (
                await session.execute(select(Passport).where(Passport.public_key == public_key))
            ).scalar_one_or_none()
            if passport is None:
                return None
            return PassportSnapshot(
                passport_id=passport.passport_id,
                tier=passport.tier,
                usage_count=passport.usage_count,
                usage_limit=passport.usage_limit,
                status=passport.status,
                can_proceed=_would_admit(passport.status, passport.usage_count, passport.usage_limit),
            )

    async def get_passport(self, public_key_hex: str) -> Optional[PassportSnapshot]:
        return await self._run("get_passport", self._get_once, public_key_hex.lower())
