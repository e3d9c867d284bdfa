"""
keystone.bot.cogs.ops — Operational Slash Commands
===================================================

- /health — run a health check of the data stack now
- /locks  — list the distributed locks currently held (ops role only)

Plus an hourly sweep of expired cache rows on a ``discord.ext.tasks`` loop.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands, tasks

from keystone.services.health_service import HealthStatus

if TYPE_CHECKING:
    from keystone.bot.core import KeystoneBot

logger = logging.getLogger(__name__)

_STATUS_COLORS = {
    HealthStatus.HEALTHY: discord.Color.green(),
    HealthStatus.DEGRADED: discord.Color.gold(),
    HealthStatus.UNHEALTHY: discord.Color.red(),
}

_STATUS_ICONS = {
    HealthStatus.HEALTHY: "✅",
    HealthStatus.DEGRADED: "⚠️",
    HealthStatus.UNHEALTHY: "❌",
    HealthStatus.SKIPPED: "⏭️",
}


def is_ops():
    """Check that the user holds the configured ops role (if one is set)."""
    async def predicate(interaction: discord.Interaction) -> bool:
        bot: KeystoneBot = interaction.client  # type: ignore[assignment]
        role_id = bot.cfg.ops_role_id
        if role_id is None:
            return True
        if not interaction.user or not hasattr(interaction.user, "roles"):
            return False
        return any(role.id == role_id for role in interaction.user.roles)
    return app_commands.check(predicate)


class Ops(commands.Cog, name="Ops"):
    """Health and lock introspection for operators."""

    def __init__(self, bot: KeystoneBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.cache_cleanup_loop.start()

    async def cog_unload(self) -> None:
        self.cache_cleanup_loop.cancel()

    # -------------------------------------------------------------------
    # Expired cache rows — hourly
    # -------------------------------------------------------------------
    @tasks.loop(hours=1)
    async def cache_cleanup_loop(self):
        try:
            await self.bot.runtime.cache.cleanup()
        except Exception:
            logger.exception("Cache cleanup failed", extra={"task": "cache_cleanup"})

    # -------------------------------------------------------------------
    # /health
    # -------------------------------------------------------------------
    @app_commands.command(name="health", description="Check database, pool, cache and migrations.")
    async def health(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        result = await self.bot.runtime.health.check_health()

        embed = discord.Embed(
            title=f"{_STATUS_ICONS[result.status]} Data stack: {result.status.upper()}",
            color=_STATUS_COLORS[result.status],
        )
        for name, check in result.checks.items():
            status = HealthStatus(check["status"])
            detail = "\n".join(check.get("issues", [])) or "OK"
            embed.add_field(
                name=f"{_STATUS_ICONS[status]} {name.replace('_', ' ')}",
                value=detail[:1024],
                inline=False,
            )
        embed.set_footer(
            text=f"{result.response_time_ms} ms · {result.consecutive_failures} failure(s) in a row"
        )
        await interaction.followup.send(embed=embed, ephemeral=True)

    # -------------------------------------------------------------------
    # /locks
    # -------------------------------------------------------------------
    @app_commands.command(name="locks", description="List the distributed locks currently held.")
    @is_ops()
    async def locks(self, interaction: discord.Interaction) -> None:
        mutex = self.bot.runtime.mutex
        active = await mutex.get_active_locks()
        stats = mutex.get_stats()

        if active:
            lines = [
                f"`{lock['lock_key']}` — {lock['owner_id']} (expires <t:{lock['expires_at'] // 1000}:R>)"
                for lock in active[:20]
            ]
            if len(active) > 20:
                lines.append(f"…and {len(active) - 20} more")
            description = "\n".join(lines)
        else:
            description = "No locks are held right now."

        embed = discord.Embed(
            title=f"\U0001f512 Active locks ({len(active)})",
            description=description,
            color=discord.Color.blurple(),
        )
        embed.add_field(name="Acquired", value=str(stats["locks_acquired"]))
        embed.add_field(name="Contended", value=str(stats["locks_failed"]))
        embed.add_field(name="Expired removed", value=str(stats["expired_locks_removed"]))
        await interaction.response.send_message(embed=embed, ephemeral=True)


async def setup(bot: KeystoneBot) -> None:
    await bot.add_cog(Ops(bot))
