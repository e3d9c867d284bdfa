"""
keystone.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- distributed_locks     — Cross-process mutex rows
- cache_entries         — Shared TTL cache (JSON values)
- guild_members         — Members known to the bot, per guild
- economy_accounts      — Per-member wallet + bank balances (versioned)
- economy_transactions  — Append-only journal of balance movements

All timestamps on the coordination tables (``distributed_locks``,
``cache_entries``) are **integer milliseconds since the epoch**.  Lock
expiry is compared against those integers directly, so every process must
agree on wall-clock time to within a fraction of the lock TTL.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Keystone ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TransactionType(enum.StrEnum):
    """Kinds of balance movement recorded in economy_transactions."""
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TRANSFER = "TRANSFER"
    DAILY = "DAILY"
    ADMIN_GRANT = "ADMIN_GRANT"


# ---------------------------------------------------------------------------
# DistributedLock — one row per held critical section
# ---------------------------------------------------------------------------
class DistributedLock(Base):
    """A named lock shared by every bot process on the same database.

    At most one *live* row (``expires_at > now``) exists per ``lock_key``.
    A row whose ``expires_at`` has passed is abandoned and may be replaced
    by any contender through a conditional UPDATE.
    """
    __tablename__ = "distributed_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    lock_token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (
        Index("idx_locks_expires", "expires_at"),
        Index("idx_locks_owner", "owner_id"),
    )

    def to_dict(self) -> dict:
        return {
            "lock_key": self.lock_key,
            "lock_token": self.lock_token,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
            "owner_id": self.owner_id,
        }

    def __repr__(self) -> str:
        return (
            f"<DistributedLock key={self.lock_key!r} owner={self.owner_id!r} "
            f"expires_at={self.expires_at}>"
        )


# ---------------------------------------------------------------------------
# CacheEntry — shared TTL cache backing CacheManager
# ---------------------------------------------------------------------------
class CacheEntry(Base):
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_cache_entries_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<CacheEntry key={self.key!r} expires_at={self.expires_at}>"


# ---------------------------------------------------------------------------
# GuildMember — one row per (guild, user)
# ---------------------------------------------------------------------------
class GuildMember(Base):
    __tablename__ = "guild_members"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<GuildMember guild={self.guild_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# EconomyAccount — balances, guarded by MutexManager + AtomicOperations
# ---------------------------------------------------------------------------
class EconomyAccount(Base):
    """Wallet and bank balance for one member.

    ``version`` is bumped by every optimistic-lock update so concurrent
    writers that skipped the mutex still cannot silently overwrite each other.
    """
    __tablename__ = "economy_accounts"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bank: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["guild_id", "user_id"],
            ["guild_members.guild_id", "guild_members.user_id"],
            ondelete="CASCADE",
        ),
        Index("ix_economy_accounts_guild_balance", "guild_id", "balance"),
    )

    def __repr__(self) -> str:
        return (
            f"<EconomyAccount guild={self.guild_id} user={self.user_id} "
            f"balance={self.balance} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# EconomyTransaction — append-only journal
# ---------------------------------------------------------------------------
class EconomyTransaction(Base):
    __tablename__ = "economy_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    to_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_economy_transactions_guild_ts", "guild_id", created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<EconomyTransaction id={self.id} type={self.type!r} "
            f"amount={self.amount}>"
        )
