"""
tests/test_cogs.py — Slash Command and Listener Tests
======================================================
Command callbacks are invoked directly with mocked interactions; the
coordination stack behind ``bot.runtime`` is mocked as well.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import discord

from conftest import run_async
from keystone.bot.cogs.economy import Economy
from keystone.bot.cogs.ops import Ops
from keystone.errors import InsufficientFundsError, LockContentionError
from keystone.services.health_service import HealthCheckResult, HealthStatus


def _make_bot(ops_role_id=None) -> MagicMock:
    bot = MagicMock()
    bot.cfg = SimpleNamespace(ops_role_id=ops_role_id, instance_id="test")
    bot.runtime = MagicMock()
    bot.runtime.economy.transfer = AsyncMock()
    bot.runtime.economy.get_balance = AsyncMock(return_value={"balance": 1200, "bank": 5})
    bot.runtime.health.check_health = AsyncMock()
    bot.runtime.mutex.get_active_locks = AsyncMock(return_value=[])
    bot.runtime.mutex.get_stats.return_value = {
        "locks_acquired": 1, "locks_failed": 0, "expired_locks_removed": 0,
    }
    bot.runtime.cache.cleanup = AsyncMock(return_value=0)
    return bot


def _make_interaction(user_id=10, guild_id=1, roles=()) -> MagicMock:
    interaction = MagicMock()
    interaction.guild_id = guild_id
    interaction.user.id = user_id
    interaction.user.display_name = "Sender"
    interaction.user.roles = [SimpleNamespace(id=r) for r in roles]
    interaction.response.send_message = AsyncMock()
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


def _member(user_id=11, bot=False) -> MagicMock:
    member = MagicMock()
    member.id = user_id
    member.bot = bot
    member.display_name = "Receiver"
    member.guild.id = 1
    return member


class TestTransferCommand:
    def test_success_posts_embed(self):
        bot = _make_bot()
        bot.runtime.economy.transfer.return_value = {"from_balance": 70, "to_balance": 30}
        cog = Economy(bot)
        interaction = _make_interaction()

        run_async(cog.transfer.callback(cog, interaction, _member(), 30))

        bot.runtime.economy.transfer.assert_awaited_once_with(1, 10, 11, 30)
        embed = interaction.response.send_message.await_args.kwargs["embed"]
        assert "70" in embed.description

    def test_insufficient_funds(self):
        bot = _make_bot()
        bot.runtime.economy.transfer.side_effect = InsufficientFundsError(
            "Insufficient funds", balance=20, amount=50
        )
        cog = Economy(bot)
        interaction = _make_interaction()

        run_async(cog.transfer.callback(cog, interaction, _member(), 50))

        message = interaction.response.send_message.await_args.args[0]
        assert "20" in message
        assert interaction.response.send_message.await_args.kwargs["ephemeral"] is True

    def test_contention_asks_to_retry(self):
        bot = _make_bot()
        bot.runtime.economy.transfer.side_effect = LockContentionError("economy:1:10")
        cog = Economy(bot)
        interaction = _make_interaction()

        run_async(cog.transfer.callback(cog, interaction, _member(), 5))

        assert "try again" in interaction.response.send_message.await_args.args[0]


class TestBalanceCommand:
    def test_defaults_to_caller(self):
        bot = _make_bot()
        cog = Economy(bot)
        interaction = _make_interaction(user_id=42)

        run_async(cog.balance.callback(cog, interaction, None))

        bot.runtime.economy.get_balance.assert_awaited_once_with(1, 42)
        embed = interaction.response.send_message.await_args.kwargs["embed"]
        assert embed.fields[0].value == "1,200"


class TestMemberListeners:
    def test_guild_join_initializes_humans(self):
        bot = _make_bot()
        cog = Economy(bot)
        guild = MagicMock()
        guild.id = 1
        guild.members = [_member(11), _member(12, bot=True), _member(13)]

        with patch(
            "keystone.bot.cogs.economy.initialize_guild_members", new=AsyncMock(return_value=2)
        ) as init:
            run_async(cog.on_guild_join(guild))

        args = init.await_args.args
        assert args[2] == 1
        assert list(args[3]) == [11, 13]

    def test_member_join_skips_bots(self):
        cog = Economy(_make_bot())
        with patch(
            "keystone.bot.cogs.economy.initialize_guild_members", new=AsyncMock()
        ) as init:
            run_async(cog.on_member_join(_member(99, bot=True)))
        init.assert_not_called()

    def test_listener_errors_are_logged(self):
        cog = Economy(_make_bot())
        with patch(
            "keystone.bot.cogs.economy.initialize_guild_members",
            new=AsyncMock(side_effect=RuntimeError("db down")),
        ):
            run_async(cog.on_member_join(_member(5)))  # does not raise


class TestOpsCommands:
    def test_health_embed(self):
        bot = _make_bot()
        bot.runtime.health.check_health.return_value = HealthCheckResult(
            status=HealthStatus.DEGRADED,
            timestamp=0,
            response_time_ms=8,
            checks={
                "database": {"status": HealthStatus.HEALTHY, "issues": []},
                "migrations": {"status": HealthStatus.DEGRADED, "issues": ["1 pending migration(s)"]},
            },
            issues=["1 pending migration(s)"],
        )
        cog = Ops(bot)
        interaction = _make_interaction()

        run_async(cog.health.callback(cog, interaction))

        interaction.response.defer.assert_awaited_once()
        embed = interaction.followup.send.await_args.kwargs["embed"]
        assert "DEGRADED" in embed.title
        assert embed.color == discord.Color.gold()
        assert embed.fields[1].value == "1 pending migration(s)"

    def test_locks_empty(self):
        bot = _make_bot()
        cog = Ops(bot)
        interaction = _make_interaction()

        run_async(cog.locks.callback(cog, interaction))

        embed = interaction.response.send_message.await_args.kwargs["embed"]
        assert embed.description == "No locks are held right now."

    def test_ops_role_check(self):
        predicate = Ops.locks.checks[0]
        bot = _make_bot(ops_role_id=777)

        allowed = _make_interaction(roles=[777])
        allowed.client = bot
        denied = _make_interaction(roles=[1])
        denied.client = bot

        assert run_async(predicate(allowed)) is True
        assert run_async(predicate(denied)) is False

    def test_cache_cleanup_loop_swallows_errors(self):
        bot = _make_bot()
        bot.runtime.cache.cleanup.side_effect = RuntimeError("db down")
        cog = Ops(bot)

        run_async(cog.cache_cleanup_loop.coro(cog))
        bot.runtime.cache.cleanup.assert_awaited_once()
