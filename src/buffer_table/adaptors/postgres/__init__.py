from .store import PostgresEventStore, PostgresTransaction, postgres_store_factory

__all__ = ["PostgresEventStore", "PostgresTransaction", "postgres_store_factory"]
