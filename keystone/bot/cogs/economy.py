"""
keystone.bot.cogs.economy — Balance & Transfer Commands
========================================================

- /balance  — wallet and bank of you or another member
- /transfer — send coins to another member

Also initializes member accounts when the bot joins a guild and when a
member joins.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from keystone.errors import (
    InsufficientFundsError,
    LockContentionError,
    StorageError,
    ValidationError,
)
from keystone.services.guild_init_service import initialize_guild_members

if TYPE_CHECKING:
    from keystone.bot.core import KeystoneBot

logger = logging.getLogger(__name__)

COIN = "\U0001fa99"


class Economy(commands.Cog, name="Economy"):
    """Member balances, guarded by distributed locks."""

    def __init__(self, bot: KeystoneBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------
    @commands.Cog.listener()
    async def on_guild_join(self, guild: discord.Guild) -> None:
        runtime = self.bot.runtime
        try:
            await initialize_guild_members(
                runtime.mutex, runtime.atomic, guild.id,
                (m.id for m in guild.members if not m.bot),
            )
        except Exception:
            logger.exception("Guild initialization failed for %d", guild.id)

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot:
            return
        runtime = self.bot.runtime
        try:
            await initialize_guild_members(
                runtime.mutex, runtime.atomic, member.guild.id, [member.id]
            )
        except Exception:
            logger.exception("Member initialization failed for %d", member.id)

    # -------------------------------------------------------------------
    # /balance
    # -------------------------------------------------------------------
    @app_commands.command(name="balance", description="Show a member's wallet and bank.")
    @app_commands.describe(member="The member to look up (defaults to you)")
    @app_commands.guild_only()
    async def balance(
        self, interaction: discord.Interaction, member: discord.Member | None = None
    ) -> None:
        target = member or interaction.user
        data = await self.bot.runtime.economy.get_balance(interaction.guild_id, target.id)

        embed = discord.Embed(
            title=f"{COIN} {target.display_name}",
            color=discord.Color.gold(),
        )
        embed.add_field(name="Wallet", value=f"{data['balance']:,}")
        embed.add_field(name="Bank", value=f"{data['bank']:,}")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # -------------------------------------------------------------------
    # /transfer
    # -------------------------------------------------------------------
    @app_commands.command(name="transfer", description="Send coins to another member.")
    @app_commands.describe(member="Who receives the coins", amount="How many coins to send")
    @app_commands.guild_only()
    async def transfer(
        self,
        interaction: discord.Interaction,
        member: discord.Member,
        amount: app_commands.Range[int, 1],
    ) -> None:
        economy = self.bot.runtime.economy
        try:
            result = await economy.transfer(
                interaction.guild_id, interaction.user.id, member.id, amount
            )
        except InsufficientFundsError as exc:
            await interaction.response.send_message(
                f"❌ You only have {exc.context['balance']:,} {COIN}.", ephemeral=True
            )
            return
        except ValidationError as exc:
            await interaction.response.send_message(f"❌ {exc.message}", ephemeral=True)
            return
        except (LockContentionError, StorageError):
            logger.warning("Transfer temporarily unavailable", exc_info=True)
            await interaction.response.send_message(
                "⏳ Another transaction is in progress — try again in a moment.",
                ephemeral=True,
            )
            return

        embed = discord.Embed(
            title=f"{COIN} Transfer complete",
            description=(
                f"**{interaction.user.display_name}** sent **{amount:,}** {COIN} "
                f"to **{member.display_name}**.\n"
                f"Your wallet: {result['from_balance']:,} {COIN}"
            ),
            color=discord.Color.green(),
        )
        await interaction.response.send_message(embed=embed)


async def setup(bot: KeystoneBot) -> None:
    await bot.add_cog(Economy(bot))
