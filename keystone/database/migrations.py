"""
keystone.database.migrations — Alembic Status for Health Checks
================================================================

:class:`MigrationManager` compares the revisions shipped in ``keystone/alembic/``
with what the database has recorded in ``alembic_version``.  Anything
shipped but not yet applied is *pending*; the health service reports that
as ``degraded``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Engine

from keystone.database.engine import run_db

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_LOCATION = Path(__file__).resolve().parents[1] / "alembic"


class MigrationManager:
    def __init__(self, engine: Engine, script_location: str | Path | None = None) -> None:
        self.engine = engine
        self.config = Config()
        self.config.set_main_option(
            "script_location", str(script_location or DEFAULT_SCRIPT_LOCATION)
        )
        self.script = ScriptDirectory.from_config(self.config)

    def _status_sync(self) -> dict[str, Any]:
        with self.engine.connect() as conn:
            current = MigrationContext.configure(conn).get_current_heads()

        shipped = [rev.revision for rev in self.script.walk_revisions()]
        applied = {
            rev.revision
            for head in current
            for rev in self.script.walk_revisions(base="base", head=head)
        }
        # walk_revisions goes newest → oldest; report pending oldest first
        pending = [rev for rev in reversed(shipped) if rev not in applied]

        return {
            "total": len(shipped),
            "executed": len(applied),
            "pending": len(pending),
            "pending_revisions": pending,
            "current": list(current),
            "heads": list(self.script.get_heads()),
        }

    async def get_status(self) -> dict[str, Any]:
        return await run_db(self._status_sync)

    def _upgrade_sync(self, revision: str) -> None:
        with self.engine.begin() as conn:
            self.config.attributes["connection"] = conn
            try:
                command.upgrade(self.config, revision)
            finally:
                self.config.attributes.pop("connection", None)

    async def upgrade(self, revision: str = "head") -> None:
        """Apply migrations up to *revision* over this manager's engine."""
        logger.info("Upgrading database schema to %s", revision)
        await run_db(self._upgrade_sync, revision)
