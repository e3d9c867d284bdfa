"""
keystone.services.economy_service — Balances, Deposits & Transfers
===================================================================

Every balance mutation follows the same recipe:

    1. Take the member lock(s) through :class:`MutexManager.with_lock`.
       A transfer needs two; they are always taken in sorted key order so
       two opposite transfers cannot deadlock each other.
    2. Apply all writes (balance update, version bump, journal row) in one
       :meth:`AtomicOperations.run` transaction.
    3. Drop the cached balances once the transaction has committed.

Reads go through :class:`CacheInvalidator.get_or_fetch`, so a burst of
``/balance`` calls for the same member costs one query.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from keystone.cache.invalidator import CacheInvalidator
from keystone.coordination.atomic import AtomicOperations
from keystone.coordination.mutex import MutexManager
from keystone.database.engine import get_session, run_db
from keystone.database.models import (
    EconomyAccount,
    EconomyTransaction,
    GuildMember,
    TransactionType,
)
from keystone.errors import InsufficientFundsError, ValidationError

logger = logging.getLogger(__name__)

BALANCE_TTL_MS = 5 * 60 * 1000
LOCK_TTL_MS = 10_000


def balance_cache_key(guild_id: int, user_id: int) -> str:
    return f"economy:balance:{guild_id}:{user_id}"


def member_lock_key(guild_id: int, user_id: int) -> str:
    return f"economy:{guild_id}:{user_id}"


def ensure_account(session: Session, guild_id: int, user_id: int) -> EconomyAccount:
    """Fetch or insert the member + account rows for (guild, user)."""
    if session.get(GuildMember, (guild_id, user_id)) is None:
        session.add(GuildMember(guild_id=guild_id, user_id=user_id))
        session.flush()
    account = session.get(EconomyAccount, (guild_id, user_id))
    if account is None:
        account = EconomyAccount(guild_id=guild_id, user_id=user_id, balance=0, bank=0, version=0)
        session.add(account)
        session.flush()
    return account


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer", amount=amount)


class EconomyService:
    def __init__(
        self,
        mutex: MutexManager,
        atomic: AtomicOperations,
        invalidator: CacheInvalidator,
    ) -> None:
        self.mutex = mutex
        self.atomic = atomic
        self.invalidator = invalidator
        self.engine = atomic.engine

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _read_balance_sync(self, guild_id: int, user_id: int) -> dict[str, int]:
        with get_session(self.engine) as session:
            account = session.get(EconomyAccount, (guild_id, user_id))
            if account is None:
                return {"balance": 0, "bank": 0}
            return {"balance": account.balance, "bank": account.bank}

    async def get_balance(self, guild_id: int, user_id: int) -> dict[str, int]:
        """Wallet and bank for a member (zeros for an unknown member)."""
        return await self.invalidator.get_or_fetch(
            balance_cache_key(guild_id, user_id),
            lambda: run_db(self._read_balance_sync, guild_id, user_id),
            BALANCE_TTL_MS,
        )

    def _history_sync(self, guild_id: int, user_id: int, limit: int) -> list[dict[str, Any]]:
        with get_session(self.engine) as session:
            rows = session.scalars(
                select(EconomyTransaction)
                .where(
                    EconomyTransaction.guild_id == guild_id,
                    (EconomyTransaction.from_user_id == user_id)
                    | (EconomyTransaction.to_user_id == user_id),
                )
                .order_by(EconomyTransaction.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "id": row.id,
                    "type": row.type,
                    "amount": row.amount,
                    "from_user_id": row.from_user_id,
                    "to_user_id": row.to_user_id,
                }
                for row in rows
            ]

    async def get_history(self, guild_id: int, user_id: int, limit: int = 10) -> list[dict[str, Any]]:
        return await run_db(self._history_sync, guild_id, user_id, limit)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def deposit(
        self,
        guild_id: int,
        user_id: int,
        amount: int,
        kind: TransactionType = TransactionType.DEPOSIT,
    ) -> int:
        """Credit *amount* to a member's wallet; return the new balance."""
        _validate_amount(amount)

        def _apply(session: Session) -> int:
            account = ensure_account(session, guild_id, user_id)
            account.balance += amount
            account.version += 1
            session.add(EconomyTransaction(
                guild_id=guild_id, to_user_id=user_id, amount=amount, type=kind.value,
            ))
            return account.balance

        new_balance = await self.mutex.with_lock(
            member_lock_key(guild_id, user_id),
            lambda: self.atomic.run(_apply, operation="economy deposit"),
            LOCK_TTL_MS,
        )
        await self.invalidator.invalidate([balance_cache_key(guild_id, user_id)])
        logger.info("Deposit %d → %d/%d (%s)", amount, guild_id, user_id, kind)
        return new_balance

    async def transfer(
        self, guild_id: int, from_user_id: int, to_user_id: int, amount: int
    ) -> dict[str, int]:
        """Move *amount* between two members' wallets, all or nothing.

        Raises
        ------
        ValidationError
            Non-positive amount or a transfer to oneself.
        InsufficientFundsError
            The sender's wallet does not cover *amount*.
        """
        _validate_amount(amount)
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer to yourself", user_id=from_user_id)

        def _apply(session: Session) -> dict[str, int]:
            sender = ensure_account(session, guild_id, from_user_id)
            receiver = ensure_account(session, guild_id, to_user_id)
            if sender.balance < amount:
                raise InsufficientFundsError(
                    "Insufficient funds",
                    user_id=from_user_id,
                    balance=sender.balance,
                    amount=amount,
                )
            sender.balance -= amount
            sender.version += 1
            receiver.balance += amount
            receiver.version += 1
            session.add(EconomyTransaction(
                guild_id=guild_id,
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                amount=amount,
                type=TransactionType.TRANSFER.value,
            ))
            return {"from_balance": sender.balance, "to_balance": receiver.balance}

        first, second = sorted(
            [member_lock_key(guild_id, from_user_id), member_lock_key(guild_id, to_user_id)]
        )

        async def _locked_transfer() -> dict[str, int]:
            return await self.mutex.with_lock(
                second,
                lambda: self.atomic.run(_apply, operation="economy transfer"),
                LOCK_TTL_MS,
            )

        result = await self.mutex.with_lock(first, _locked_transfer, LOCK_TTL_MS)
        await self.invalidator.invalidate([
            balance_cache_key(guild_id, from_user_id),
            balance_cache_key(guild_id, to_user_id),
        ])
        logger.info(
            "Transfer %d in guild %d: %d → %d", amount, guild_id, from_user_id, to_user_id
        )
        return result
