from __future__ import annotations

from datetime import datetime

import aiosqlite

from ..monitor.models import SecurityAction
from ..utils import from_iso, to_iso
from .base import BaseService

_COLUMNS = (
    "id, group_id, actor_user_id, actor_display_name, action_type, target_user_id, "
    "target_display_name, action_time_iso, additional_data"
)


class SecurityActionStore(BaseService[SecurityAction]):
    """Append-only log of moderation actions considered for threshold checks."""

    required_columns = {
        "security_actions": ("group_id", "actor_user_id", "action_type", "action_time_iso"),
    }

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS security_actions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              group_id TEXT NOT NULL,
              actor_user_id TEXT NOT NULL,
              actor_display_name TEXT NOT NULL DEFAULT '',
              action_type TEXT NOT NULL,
              target_user_id TEXT,
              target_display_name TEXT,
              action_time_iso TEXT NOT NULL,
              additional_data TEXT
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_secaction_window ON security_actions(group_id, actor_user_id, action_type, action_time_iso)"
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_secaction_group_time ON security_actions(group_id, action_time_iso)")

    def _from_row(self, row: aiosqlite.Row) -> SecurityAction:
        return SecurityAction(
            id=int(row["id"]),
            group_id=str(row["group_id"]),
            actor_user_id=str(row["actor_user_id"]),
            actor_display_name=str(row["actor_display_name"] or ""),
            action_type=str(row["action_type"]),
            target_user_id=row["target_user_id"],
            target_display_name=row["target_display_name"],
            action_time=from_iso(row["action_time_iso"]),
            additional_data=row["additional_data"],
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM security_actions WHERE id = ?"

    async def add(self, action: SecurityAction) -> int:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                """
                INSERT INTO security_actions (
                  group_id, actor_user_id, actor_display_name, action_type,
                  target_user_id, target_display_name, action_time_iso, additional_data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action.group_id,
                    action.actor_user_id,
                    action.actor_display_name,
                    action.action_type,
                    action.target_user_id,
                    action.target_display_name,
                    to_iso(action.action_time),
                    action.additional_data,
                ),
            )
            await db.commit()
            return int(cur.lastrowid)

    async def count_recent(self, group_id: str, actor_user_id: str, action_type: str, cutoff: datetime) -> int:
        """Count actions strictly newer than ``cutoff``."""
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                """
                SELECT COUNT(*) FROM security_actions
                WHERE group_id = ? AND actor_user_id = ? AND action_type = ? AND action_time_iso > ?
                """,
                (group_id, actor_user_id, action_type, to_iso(cutoff)),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def recent(
        self,
        group_id: str,
        actor_user_id: str,
        action_type: str,
        cutoff: datetime,
        limit: int = 10,
    ) -> list[SecurityAction]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM security_actions
                WHERE group_id = ? AND actor_user_id = ? AND action_type = ? AND action_time_iso > ?
                ORDER BY action_time_iso DESC, id DESC
                LIMIT ?
                """,
                (group_id, actor_user_id, action_type, to_iso(cutoff), max(1, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def for_user(self, group_id: str, actor_user_id: str, since: datetime) -> list[SecurityAction]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM security_actions
                WHERE group_id = ? AND actor_user_id = ? AND action_time_iso >= ?
                ORDER BY action_time_iso DESC, id DESC
                """,
                (group_id, actor_user_id, to_iso(since)),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def for_group(self, group_id: str, since: datetime) -> list[SecurityAction]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM security_actions
                WHERE group_id = ? AND action_time_iso >= ?
                ORDER BY action_time_iso DESC, id DESC
                """,
                (group_id, to_iso(since)),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def purge_older_than(self, group_id: str, cutoff: datetime) -> int:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                "DELETE FROM security_actions WHERE group_id = ? AND action_time_iso < ?",
                (group_id, to_iso(cutoff)),
            )
            await db.commit()
            return int(cur.rowcount or 0)
