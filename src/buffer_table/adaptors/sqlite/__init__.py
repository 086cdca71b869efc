from .factory import sqlite_store_factory
from .store import SQLiteEventStore, SQLiteTransaction

__all__ = ["sqlite_store_factory", "SQLiteEventStore", "SQLiteTransaction"]
