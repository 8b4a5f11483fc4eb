from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Generic, Mapping, Optional, TypeVar

import aiosqlite

from .cache import TTLCache

T = TypeVar("T")
log = logging.getLogger("groupsentry.base_service")


class BaseService(ABC, Generic[T]):
    """Base class for all SQLite-backed stores.

    Each operation opens its own short-lived connection; nothing holds a
    transaction open across awaits in the calling service.
    """

    #: table name -> columns the running code relies on; checked at startup.
    required_columns: Mapping[str, tuple[str, ...]] = {}

    def __init__(self, sqlite_path: str, cache_ttl_seconds: int = 120) -> None:
        self._path = sqlite_path
        self._cache: TTLCache[str, T] = TTLCache(default_ttl_seconds=cache_ttl_seconds)
        self._logger = logging.getLogger(f"groupsentry.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        """Initialize the database schema."""
        async with aiosqlite.connect(self._path) as db:
            await self._create_tables(db)
            await db.commit()

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        """Create the necessary database tables."""

    @abstractmethod
    def _from_row(self, row: aiosqlite.Row) -> T:
        """Convert a database row to the store's data type."""

    @property
    @abstractmethod
    def _get_query(self) -> str:
        """SQL query for getting one record by key."""

    async def get(self, key: str) -> Optional[T]:
        """Get cached record or fetch it from the database."""
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(self._get_query, (key,)) as cur:
                row = await cur.fetchone()
        if row is None:
            return None

        data = self._from_row(row)
        self._cache.set(key, data)
        return data
