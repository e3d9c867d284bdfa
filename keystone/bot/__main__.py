"""
keystone.bot.__main__ — Entry point for ``python -m keystone.bot``
==================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (per-process settings, lock identity).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Create the KeystoneBot; it builds the coordination stack from 2 + 3.
5. Start the bot (blocking — runs the asyncio event loop).

Run with::

    python -m keystone.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from keystone.bot.core import KeystoneBot
from keystone.config import load_config
from keystone.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("keystone")


def main() -> None:
    """Bootstrap and run the Keystone bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    try:
        cfg = load_config(os.getenv("KEYSTONE_CONFIG", "config.yaml"))
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)
    logger.info("Config loaded — instance: %s", cfg.instance_id)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Bot.
    bot = KeystoneBot(cfg=cfg, engine=engine)

    # 5. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Keystone bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
