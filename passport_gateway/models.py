"""
Database Models - SQLAlchemy ORM models for the passport ledger.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Tier(str, Enum):
    """Passport tiers. Only affects the usage limit given at creation."""

    FREE = "free"
    PRO = "pro"


class PassportStatus(str, Enum):
    """Lifecycle status of a passport."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    LIMIT_REACHED = "limit_reached"


IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 512


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Passport(Base):
    """
    One row per distinct public key.

    ``id`` is internal and never leaves the gateway; ``passport_id`` is the
    external identifier derived from ``public_key``.
    """

    __tablename__ = "passports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    public_key: Mapped[str] = mapped_column(String(64), nullable=False)
    passport_id: Mapped[str] = mapped_column(String(64), nullable=False)

    tier: Mapped[str] = mapped_column(String(16), nullable=False, default=Tier.FREE.value)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PassportStatus.ACTIVE.value
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("public_key", name="uq_passports_public_key"),
        UniqueConstraint("passport_id", name="uq_passports_passport_id"),
        CheckConstraint("usage_count >= 0", name="ck_usage_count_non_negative"),
        CheckConstraint("usage_limit > 0", name="ck_usage_limit_positive"),
        CheckConstraint("usage_count <= usage_limit", name="ck_usage_within_limit"),
    )


class UsageLogEntry(Base):
    """Append-only record of one admitted request."""

    __tablename__ = "usage_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    passport_ref: Mapped[str] = mapped_column(
        String(36), ForeignKey("passports.id"), nullable=False, index=True
    )
    request_type: Mapped[str] = mapped_column(String(32), nullable=False)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(IP_ADDRESS_MAX_LENGTH), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(USER_AGENT_MAX_LENGTH), nullable=True)
