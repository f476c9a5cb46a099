# storage/__init__.py
# ============================================================================
# ECHOBEATS LANDING — STORAGE MODULE
# ============================================================================
# Order and subscriber persistence (in-memory or PostgreSQL)
# ============================================================================

from storage.order_store import (
    IOrderStore,
    ISubscriberStore,
    IStore,
    InMemoryStore,
    PostgresStore,
    create_store,
)

__all__ = [
    "IOrderStore",
    "ISubscriberStore",
    "IStore",
    "InMemoryStore",
    "PostgresStore",
    "create_store",
]
