"""
Keystone — Distributed Coordination for a Multi-Process Discord Bot
====================================================================
Serializes critical sections (economy transfers, guild initialization)
across every bot process sharing one database, protects hot cache keys
from stampedes, and keeps a running health verdict of the data stack.

Package layout::

    keystone/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Typed failures + retryable-error classifier
    ├── runtime.py         # Builds and owns the coordination stack
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, async bridge, Database handle
    │   ├── models.py      # ORM models (locks, cache, economy)
    │   ├── pool.py        # Connection pool health probe
    │   └── migrations.py  # Alembic pending-revision status
    ├── coordination/
    │   ├── mutex.py       # MutexManager — DB-backed distributed locks
    │   └── atomic.py      # AtomicOperations — retryable transactions
    ├── cache/
    │   ├── lru.py         # LRUCache + PreparedStatementCache
    │   ├── manager.py     # CacheManager — shared TTL cache table
    │   └── invalidator.py # CacheInvalidator — stampede protection
    ├── services/
    │   ├── health_service.py      # HealthCheckService
    │   ├── economy_service.py     # Balances, deposits, transfers
    │   └── guild_init_service.py  # Batch member initialization
    ├── bot/
    │   ├── core.py        # Bot subclass, lifecycle, cog loader
    │   └── cogs/
    │       ├── ops.py     # /health, /locks, cache sweep
    │       └── economy.py # /balance, /transfer, member init
    └── api/
        ├── main.py        # FastAPI app (health + locks)
        └── deps.py        # Dependency injection
"""

__version__ = "0.1.0"
