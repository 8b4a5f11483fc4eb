from __future__ import annotations

import logging
from typing import Sequence

import aiosqlite

from .constants import SCHEMA_VERSION
from .errors import SchemaError
from .services.base import BaseService

log = logging.getLogger("groupsentry.database")


async def _table_columns(db: aiosqlite.Connection, table: str) -> set[str]:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return {str(r[1]) for r in rows}


async def check_schema(sqlite_path: str, stores: Sequence[BaseService]) -> None:
    """Refuse databases written by a newer version or missing columns we rely on."""
    async with aiosqlite.connect(sqlite_path) as db:
        async with db.execute("PRAGMA user_version") as cur:
            row = await cur.fetchone()
        version = int(row[0]) if row else 0
        if version > SCHEMA_VERSION:
            raise SchemaError(f"database schema version {version} is newer than supported version {SCHEMA_VERSION}")

        for store in stores:
            for table, columns in store.required_columns.items():
                present = await _table_columns(db, table)
                missing = [c for c in columns if c not in present]
                if missing:
                    raise SchemaError(f"table {table} is missing columns: {', '.join(missing)}")

        if version < SCHEMA_VERSION:
            await db.execute(f"PRAGMA user_version = {int(SCHEMA_VERSION)}")
            await db.commit()
            log.info("Schema version set to %d", SCHEMA_VERSION)


async def initialize_database(sqlite_path: str, stores: Sequence[BaseService]) -> None:
    """Initialize the database with all stores."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.execute("PRAGMA temp_store=MEMORY")
            await db.commit()

        log.info("Applied SQLite optimizations")

        for store in stores:
            await store.init()
            log.info("Initialized %s", store.__class__.__name__)

        await check_schema(sqlite_path, stores)
        log.info("Database initialization completed")

    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


async def get_database_info(sqlite_path: str) -> dict:
    """Size, schema version and table names of the database."""
    async with aiosqlite.connect(sqlite_path) as db:
        cursor = await db.execute("PRAGMA page_count")
        page_count = (await cursor.fetchone())[0]

        cursor = await db.execute("PRAGMA page_size")
        page_size = (await cursor.fetchone())[0]

        cursor = await db.execute("PRAGMA user_version")
        version = (await cursor.fetchone())[0]

        cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = [row[0] for row in await cursor.fetchall()]

    return {
        "size_bytes": page_count * page_size,
        "schema_version": version,
        "tables": tables,
    }
