"""
keystone.api.deps — FastAPI dependency injection
=================================================
"""

from __future__ import annotations

import os
from functools import lru_cache

from fastapi import HTTPException, Request, status
from sqlalchemy import Engine

from keystone.config import KeystoneConfig, load_config
from keystone.database.engine import create_db_engine
from keystone.runtime import Runtime


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> KeystoneConfig:
    return load_config(os.getenv("KEYSTONE_CONFIG", "config.yaml"))


def get_runtime(request: Request) -> Runtime:
    """The coordination stack built during application startup."""
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Keystone is not started")
    return runtime
