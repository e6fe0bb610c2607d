"""
SQLite database management for certificates and DNS providers.

Provides async database operations using aiosqlite for storing
certificate records, their lifecycle logs, and DNS provider credentials.
"""

import logging
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager

import aiosqlite

from config import get_database_path

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
-- DNS providers (credentials encrypted at rest)
CREATE TABLE IF NOT EXISTS dns_providers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    config_encrypted TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

-- Certificates
CREATE TABLE IF NOT EXISTS certificates (
    id TEXT PRIMARY KEY,
    domain TEXT NOT NULL UNIQUE,
    domains_json TEXT NOT NULL,
    dns_provider_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',

    cert_path TEXT,
    key_path TEXT,

    issuer TEXT,
    not_before TIMESTAMP,
    not_after TIMESTAMP,

    error TEXT,
    auto_renew BOOLEAN DEFAULT TRUE,
    last_renew_at TIMESTAMP,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_certificates_domain ON certificates(domain);
CREATE INDEX IF NOT EXISTS idx_certificates_not_after ON certificates(not_after);

-- Append-only certificate lifecycle log
CREATE TABLE IF NOT EXISTS certificate_logs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    certificate_id TEXT NOT NULL,
    action TEXT NOT NULL,
    message TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_certificate_logs_certificate_id ON certificate_logs(certificate_id);
"""


class Database:
    """
    Async SQLite database manager.

    Each call opens its own connection; `transaction()` groups several
    statements under one commit.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or str(get_database_path())
        self._initialized = False

    async def initialize(self) -> None:
        """Create the database file and schema."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA)
            await db.commit()

        self._initialized = True
        logger.info(f"Database initialized at {self.db_path}")

    async def ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @asynccontextmanager
    async def connection(self):
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Yield a connection whose statements commit together.

        Any exception rolls the whole group back and propagates.
        """
        await self.ensure_initialized()
        async with self.connection() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Run a single write statement. Returns the affected row count."""
        async with self.transaction() as db:
            cursor = await db.execute(query, params)
            return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        await self.ensure_initialized()
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        await self.ensure_initialized()
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            return [dict(row) for row in await cursor.fetchall()]

    async def insert(self, table: str, data: Dict[str, Any]) -> str:
        """Insert a row and return its id."""
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        await self.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(data.values()))
        return data.get("id", "")

    async def update(self, table: str, id_value: str, data: Dict[str, Any], id_column: str = "id") -> bool:
        """Update a row by id. Returns False when no row matched."""
        assignments = ", ".join(f"{column} = ?" for column in data)
        count = await self.execute(
            f"UPDATE {table} SET {assignments} WHERE {id_column} = ?",
            tuple(data.values()) + (id_value,),
        )
        return count > 0

    async def delete(self, table: str, id_value: str, id_column: str = "id") -> int:
        """Delete rows matching an id. Returns the count deleted."""
        return await self.execute(f"DELETE FROM {table} WHERE {id_column} = ?", (id_value,))


# Singleton database instance
_db_instance: Optional[Database] = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


async def initialize_database() -> Database:
    """Initialize and return the database instance."""
    db = get_database()
    await db.initialize()
    return db
