"""
keystone.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for the infrastructure settings of one bot process:
its lock identity, the mutex / cache / health tuning, and the dashboard
port.  Secrets (``DISCORD_TOKEN``, ``DATABASE_URL``) never live here; they
come from the environment (``.env`` via python-dotenv).

Every section is optional and falls back to the defaults below, so a
minimal ``config.yaml`` is just::

    instance_id: keystone-eu-1

Usage::

    from keystone.config import load_config

    cfg = load_config()               # reads ./config.yaml by default
    print(cfg.instance_id)            # "keystone-eu-1"
    print(cfg.mutex.default_ttl_ms)   # 5000
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class MutexSettings:
    default_ttl_ms: int = 5_000
    cleanup_interval_ms: int = 60_000
    cleanup_batch_size: int = 500
    cleanup_sleep_ms: int = 5
    max_retries: int = 3
    retry_delay_ms: int = 100


@dataclass(frozen=True, slots=True)
class CacheSettings:
    default_ttl_ms: int = 600_000
    stampede_timeout_ms: int = 5_000
    poll_interval_ms: int = 50
    local_max_size: int = 100
    local_ttl_ms: int = 2_000
    statement_cache_size: int = 100


@dataclass(frozen=True, slots=True)
class HealthSettings:
    check_interval_ms: int = 300_000
    slow_query_ms: int = 1_000
    check_migrations: bool = True


@dataclass(frozen=True, slots=True)
class KeystoneConfig:
    """Immutable configuration loaded from ``config.yaml``.

    ``instance_id`` becomes the ``owner_id`` on every lock this process
    takes, so it must be unique per running process.
    """

    instance_id: str
    bot_prefix: str = "!"
    dashboard_port: int = 8000
    ops_role_id: int | None = None  # Role allowed to run /locks
    mutex: MutexSettings = field(default_factory=MutexSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    health: HealthSettings = field(default_factory=HealthSettings)


def _positive(section: str, values: dict[str, Any]) -> None:
    for name, value in values.items():
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and value <= 0:
            raise ValueError(f"{section}.{name} must be > 0 (got {value})")


def _section(cls, raw: dict, name: str):
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a mapping")
    unknown = set(data) - set(cls.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown {name} setting(s): {', '.join(sorted(unknown))}")
    values = {key: int(val) if not isinstance(val, bool) else val for key, val in data.items()}
    _positive(name, values)
    return cls(**values)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_config(raw: dict) -> KeystoneConfig:
    """Build a :class:`KeystoneConfig` from already-parsed YAML.

    Raises
    ------
    ValueError
        If a value is malformed or an interval is not positive.
    """
    instance_id = str(raw.get("instance_id") or "").strip()
    if not instance_id:
        raise ValueError("instance_id is required and must be unique per process")

    return KeystoneConfig(
        instance_id=instance_id,
        bot_prefix=raw.get("bot_prefix", "!"),
        dashboard_port=int(raw.get("dashboard_port", 8000)),
        ops_role_id=int(raw["ops_role_id"]) if raw.get("ops_role_id") else None,
        mutex=_section(MutexSettings, raw, "mutex"),
        cache=_section(CacheSettings, raw, "cache"),
        health=_section(HealthSettings, raw, "health"),
    )


def load_config(path: str | Path = "config.yaml") -> KeystoneConfig:
    """Read *path* and return a :class:`KeystoneConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a setting is missing or invalid.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return parse_config(raw)
