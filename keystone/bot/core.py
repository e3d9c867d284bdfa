"""
keystone.bot.core — Bot Instance & Cog Loader
==============================================

Defines :class:`KeystoneBot`, a ``commands.Bot`` subclass that:

1. Carries the shared config (``bot.cfg``), DB engine (``bot.engine``) and
   coordination stack (``bot.runtime``) so every Cog can reach them.
2. Loads every Cog listed in :data:`EXTENSIONS`.
3. Starts the mutex cleanup task and the periodic health checks in
   ``setup_hook`` and stops them again in ``close``.  ``close`` also
   releases every lock this instance still holds, so a restart never
   leaves phantom locks behind until their TTL runs out.
4. Syncs the slash-command tree on startup (guild-scoped for dev, global
   for production, controlled by the ``DEV_GUILD_ID`` env var).
"""

from __future__ import annotations

import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from keystone.config import KeystoneConfig
from keystone.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "keystone.bot.cogs.ops",
    "keystone.bot.cogs.economy",
]


class KeystoneBot(commands.Bot):
    """Custom Bot subclass that owns the coordination stack.

    Parameters
    ----------
    cfg:
        The parsed :class:`KeystoneConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to the shared database.
    runtime:
        Pre-built stack; built from *cfg* and *engine* when omitted.
    """

    def __init__(
        self, cfg: KeystoneConfig, engine: Engine, runtime: Runtime | None = None
    ) -> None:
        intents = discord.Intents.default()
        intents.members = True            # Privileged: guild member initialization
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description="Keystone — coordinated economy bot",
        )

        self.cfg = cfg
        self.engine = engine
        self.runtime = runtime or build_runtime(cfg, engine)

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Called once before the bot connects to Discord.

        Starts the coordination stack, then loads Cog extensions.  A broken
        Cog is logged and skipped; a database that cannot be reached is not.
        """
        await self.runtime.start()
        logger.info("Coordination stack started (owner=%s)", self.runtime.mutex.owner_id)

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

    async def close(self) -> None:
        """Graceful shutdown — stop background tasks and release our locks."""
        logger.info("Bot shutting down…")
        try:
            await self.runtime.shutdown()
        except Exception:
            logger.exception("Coordination stack did not shut down cleanly")
        await super().close()
