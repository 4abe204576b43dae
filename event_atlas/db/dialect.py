"""Dialect-specific statement helpers (PostgreSQL in production, SQLite in tests)."""
from sqlalchemy.dialects import postgresql, sqlite


def insert_for(conn, table):
    """Return an ``INSERT`` construct supporting ``on_conflict_*`` for the connection's dialect."""
    if conn.dialect.name == "postgresql":
        return postgresql.insert(table)
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Unsupported database dialect for upserts: {conn.dialect.name}")
