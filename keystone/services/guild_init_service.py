"""
keystone.services.guild_init_service — Batch Member Initialization
===================================================================

When the bot joins a guild (or restarts after missing joins) every member
needs a ``guild_members`` row and an empty ``economy_accounts`` row.  Two
processes receiving the same ``on_guild_join`` must not both do it, so the
work runs under a ``guild-init:<guild_id>`` lock; the loser simply skips.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from keystone.coordination.atomic import AtomicOperations
from keystone.coordination.mutex import MutexManager
from keystone.database.models import EconomyAccount, GuildMember

logger = logging.getLogger(__name__)

INIT_LOCK_TTL_MS = 60_000


def guild_init_lock_key(guild_id: int) -> str:
    return f"guild-init:{guild_id}"


async def initialize_guild_members(
    mutex: MutexManager,
    atomic: AtomicOperations,
    guild_id: int,
    member_ids: Iterable[int],
) -> int | None:
    """Create missing member and account rows for *guild_id* in one transaction.

    Returns the number of members added, or ``None`` when another process
    already holds the initialization lock.  Running it twice adds nothing
    the second time.
    """
    member_ids = sorted(set(member_ids))
    lock_key = guild_init_lock_key(guild_id)

    token = await mutex.try_acquire(lock_key, INIT_LOCK_TTL_MS)
    if token is None:
        logger.info("Guild %d is already being initialized elsewhere; skipping", guild_id)
        return None

    def _apply(session: Session) -> int:
        known = set(session.scalars(
            select(GuildMember.user_id).where(GuildMember.guild_id == guild_id)
        ))
        with_account = set(session.scalars(
            select(EconomyAccount.user_id).where(EconomyAccount.guild_id == guild_id)
        ))
        missing = [uid for uid in member_ids if uid not in known]
        session.add_all(GuildMember(guild_id=guild_id, user_id=uid) for uid in missing)
        session.flush()
        session.add_all(
            EconomyAccount(guild_id=guild_id, user_id=uid, balance=0, bank=0, version=0)
            for uid in member_ids
            if uid not in with_account
        )
        return len(missing)

    try:
        added = await atomic.run(_apply, operation=f"guild init {guild_id}")
    finally:
        await mutex.release(lock_key, token)

    logger.info("Guild %d initialized: %d new member(s)", guild_id, added)
    return added
