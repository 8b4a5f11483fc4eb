from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

import aiosqlite

from ..monitor.models import AuditLogEntry
from ..utils import from_iso, opt_datetime, opt_iso, to_iso
from .base import BaseService

_COLUMNS = (
    "audit_log_id, group_id, event_type, actor_id, actor_name, target_id, target_name, "
    "description, created_at_iso, inserted_at_iso, raw_data, discord_sent_at_iso"
)

# SQLite's default host parameter limit is 999 on older builds.
_ID_CHUNK = 500


class AuditLogStore(BaseService[AuditLogEntry]):
    """Audit log entries keyed by the source id; inserts are idempotent."""

    required_columns = {
        "audit_logs": (
            "audit_log_id",
            "group_id",
            "event_type",
            "created_at_iso",
            "inserted_at_iso",
            "discord_sent_at_iso",
        ),
    }

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              audit_log_id TEXT NOT NULL UNIQUE,
              group_id TEXT NOT NULL,
              event_type TEXT NOT NULL,
              actor_id TEXT,
              actor_name TEXT,
              target_id TEXT,
              target_name TEXT,
              description TEXT NOT NULL DEFAULT '',
              created_at_iso TEXT NOT NULL,
              inserted_at_iso TEXT NOT NULL,
              raw_data TEXT,
              discord_sent_at_iso TEXT
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_group_created ON audit_logs(group_id, created_at_iso)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_logs(event_type)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_unsent ON audit_logs(group_id, discord_sent_at_iso)")

    def _from_row(self, row: aiosqlite.Row) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["audit_log_id"]),
            group_id=str(row["group_id"]),
            event_type=str(row["event_type"]),
            actor_id=row["actor_id"],
            actor_name=row["actor_name"],
            target_id=row["target_id"],
            target_name=row["target_name"],
            description=str(row["description"] or ""),
            created_at=from_iso(row["created_at_iso"]),
            inserted_at=from_iso(row["inserted_at_iso"]),
            raw_data=row["raw_data"],
            discord_sent_at=opt_datetime(row["discord_sent_at_iso"]),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM audit_logs WHERE audit_log_id = ?"

    async def insert_many(self, entries: Iterable[AuditLogEntry]) -> int:
        """Insert entries, ignoring ids already stored. Returns how many were new."""
        rows = [
            (
                e.id,
                e.group_id,
                e.event_type,
                e.actor_id,
                e.actor_name,
                e.target_id,
                e.target_name,
                e.description,
                to_iso(e.created_at),
                to_iso(e.inserted_at),
                e.raw_data,
                opt_iso(e.discord_sent_at),
            )
            for e in entries
        ]
        if not rows:
            return 0
        async with aiosqlite.connect(self._path) as db:
            before = db.total_changes
            await db.executemany(
                f"INSERT OR IGNORE INTO audit_logs ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            await db.commit()
            return db.total_changes - before

    async def filter_new_ids(self, ids: Sequence[str]) -> set[str]:
        """Return the subset of ``ids`` not yet stored."""
        wanted = set(ids)
        if not wanted:
            return set()
        existing: set[str] = set()
        ordered = list(wanted)
        async with aiosqlite.connect(self._path) as db:
            for i in range(0, len(ordered), _ID_CHUNK):
                chunk = ordered[i:i + _ID_CHUNK]
                marks = ",".join("?" for _ in chunk)
                async with db.execute(
                    f"SELECT audit_log_id FROM audit_logs WHERE audit_log_id IN ({marks})", chunk
                ) as cur:
                    existing.update(str(r[0]) for r in await cur.fetchall())
        return wanted - existing

    async def list_for_group(self, group_id: str, limit: int = 1000, offset: int = 0) -> list[AuditLogEntry]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM audit_logs
                WHERE group_id = ?
                ORDER BY created_at_iso DESC
                LIMIT ? OFFSET ?
                """,
                (group_id, max(1, int(limit)), max(0, int(offset))),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def count_for_group(self, group_id: str) -> int:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute("SELECT COUNT(*) FROM audit_logs WHERE group_id = ?", (group_id,)) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def last_created_at(self, group_id: str) -> Optional[datetime]:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                "SELECT MAX(created_at_iso) FROM audit_logs WHERE group_id = ?", (group_id,)
            ) as cur:
                row = await cur.fetchone()
        return opt_datetime(row[0]) if row else None

    async def search(
        self,
        group_id: str,
        query: Optional[str] = None,
        event_type: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 10_000,
    ) -> list[AuditLogEntry]:
        """Search by free text over description/actor/target, event type substring and date range.

        ``to_date`` is inclusive of its whole day.
        """
        clauses = ["group_id = ?"]
        params: list[object] = [group_id]
        if query and query.strip():
            needle = f"%{query.strip().lower()}%"
            clauses.append("(lower(description) LIKE ? OR lower(coalesce(actor_name, '')) LIKE ? OR lower(coalesce(target_name, '')) LIKE ?)")
            params.extend([needle, needle, needle])
        if event_type and event_type.strip() and event_type != "All":
            clauses.append("event_type LIKE ?")
            params.append(f"%{event_type.strip()}%")
        if from_date is not None:
            clauses.append("created_at_iso >= ?")
            params.append(to_iso(from_date))
        if to_date is not None:
            end_of_day = to_date.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
            clauses.append("created_at_iso < ?")
            params.append(to_iso(end_of_day))
        params.append(max(1, int(limit)))

        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM audit_logs WHERE {' AND '.join(clauses)} ORDER BY created_at_iso DESC LIMIT ?",
                params,
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def unsent_for_group(self, group_id: str, limit: int = 100) -> list[AuditLogEntry]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM audit_logs
                WHERE group_id = ? AND discord_sent_at_iso IS NULL
                ORDER BY created_at_iso DESC
                LIMIT ?
                """,
                (group_id, max(1, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def mark_sent(self, ids: Iterable[str], sent_at: datetime) -> int:
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        stamp = to_iso(sent_at)
        async with aiosqlite.connect(self._path) as db:
            before = db.total_changes
            await db.executemany(
                "UPDATE audit_logs SET discord_sent_at_iso = ? WHERE audit_log_id = ? AND discord_sent_at_iso IS NULL",
                [(stamp, i) for i in id_list],
            )
            await db.commit()
            changed = db.total_changes - before
        for i in id_list:
            self._cache.delete(i)
        return changed
