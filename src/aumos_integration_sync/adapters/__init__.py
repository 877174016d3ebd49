"""Adapters — persistence for the integration sync engine.

Contains:
- repositories.py  — SQLAlchemy repositories for the primary DB
- store.py         — SqlSyncStore and the transactional sql_store_factory
"""

from aumos_integration_sync.adapters.store import SqlSyncStore, sql_store_factory

__all__ = ["SqlSyncStore", "sql_store_factory"]
