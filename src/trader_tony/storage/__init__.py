"""Durable record storage."""

from trader_tony.storage.duckdb_store import MEMORY_DATABASE, DuckDBStore, Record

__all__ = ["DuckDBStore", "Record", "MEMORY_DATABASE"]
