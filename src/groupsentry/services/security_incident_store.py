from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

import aiosqlite

from ..monitor.models import SecurityIncident
from ..utils import from_iso, opt_datetime, opt_iso, to_iso
from .base import BaseService

_COLUMNS = (
    "incident_id, group_id, actor_user_id, actor_display_name, incident_type, action_count, "
    "timeframe_minutes, threshold, detected_at_iso, details, roles_removed, removed_role_ids, "
    "discord_notified, discord_notified_at_iso, is_resolved, resolved_at_iso"
)


class SecurityIncidentStore(BaseService[SecurityIncident]):
    """Detected incidents.

    ``roles_removed`` and ``discord_notified`` only ever move from 0 to 1 and
    ``details`` is only appended to.
    """

    required_columns = {
        "security_incidents": (
            "incident_id",
            "group_id",
            "actor_user_id",
            "incident_type",
            "detected_at_iso",
            "is_resolved",
        ),
    }

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS security_incidents (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              incident_id TEXT NOT NULL UNIQUE,
              group_id TEXT NOT NULL,
              actor_user_id TEXT NOT NULL,
              actor_display_name TEXT NOT NULL DEFAULT '',
              incident_type TEXT NOT NULL,
              action_count INTEGER NOT NULL,
              timeframe_minutes INTEGER NOT NULL,
              threshold INTEGER NOT NULL,
              detected_at_iso TEXT NOT NULL,
              details TEXT NOT NULL DEFAULT '',
              roles_removed INTEGER NOT NULL DEFAULT 0,
              removed_role_ids TEXT,
              discord_notified INTEGER NOT NULL DEFAULT 0,
              discord_notified_at_iso TEXT,
              is_resolved INTEGER NOT NULL DEFAULT 0,
              resolved_at_iso TEXT
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_incident_open ON security_incidents(group_id, actor_user_id, incident_type, is_resolved, detected_at_iso)"
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_incident_group_time ON security_incidents(group_id, detected_at_iso)")

    def _from_row(self, row: aiosqlite.Row) -> SecurityIncident:
        return SecurityIncident(
            incident_id=str(row["incident_id"]),
            group_id=str(row["group_id"]),
            actor_user_id=str(row["actor_user_id"]),
            actor_display_name=str(row["actor_display_name"] or ""),
            incident_type=str(row["incident_type"]),
            action_count=int(row["action_count"]),
            timeframe_minutes=int(row["timeframe_minutes"]),
            threshold=int(row["threshold"]),
            detected_at=from_iso(row["detected_at_iso"]),
            details=str(row["details"] or ""),
            roles_removed=bool(row["roles_removed"]),
            removed_role_ids=row["removed_role_ids"],
            discord_notified=bool(row["discord_notified"]),
            discord_notified_at=opt_datetime(row["discord_notified_at_iso"]),
            is_resolved=bool(row["is_resolved"]),
            resolved_at=opt_datetime(row["resolved_at_iso"]),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM security_incidents WHERE incident_id = ?"

    async def create(self, incident: SecurityIncident) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                f"INSERT INTO security_incidents ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    incident.incident_id,
                    incident.group_id,
                    incident.actor_user_id,
                    incident.actor_display_name,
                    incident.incident_type,
                    int(incident.action_count),
                    int(incident.timeframe_minutes),
                    int(incident.threshold),
                    to_iso(incident.detected_at),
                    incident.details,
                    int(incident.roles_removed),
                    incident.removed_role_ids,
                    int(incident.discord_notified),
                    opt_iso(incident.discord_notified_at),
                    int(incident.is_resolved),
                    opt_iso(incident.resolved_at),
                ),
            )
            await db.commit()

    async def find_open(
        self, group_id: str, actor_user_id: str, incident_type: str, since: datetime
    ) -> Optional[SecurityIncident]:
        """Newest unresolved incident for this actor and type detected after ``since``."""
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM security_incidents
                WHERE group_id = ? AND actor_user_id = ? AND incident_type = ?
                  AND is_resolved = 0 AND detected_at_iso > ?
                ORDER BY detected_at_iso DESC
                LIMIT 1
                """,
                (group_id, actor_user_id, incident_type, to_iso(since)),
            ) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def recent_for_group(self, group_id: str, since: datetime) -> list[SecurityIncident]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM security_incidents
                WHERE group_id = ? AND detected_at_iso >= ?
                ORDER BY detected_at_iso DESC
                """,
                (group_id, to_iso(since)),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def _update(self, incident_id: str, sql: str, params: tuple) -> bool:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(sql, params)
            await db.commit()
            changed = (cur.rowcount or 0) > 0
        self._cache.delete(incident_id)
        return changed

    async def append_details(self, incident_id: str, note: str) -> bool:
        return await self._update(
            incident_id,
            """
            UPDATE security_incidents
            SET details = CASE WHEN details = '' THEN ? ELSE details || char(10) || ? END
            WHERE incident_id = ?
            """,
            (note, note, incident_id),
        )

    async def mark_roles_removed(self, incident_id: str, role_ids: Iterable[str], note: str) -> bool:
        """Record the remediation outcome; ``roles_removed`` is set only when ``role_ids`` is non-empty."""
        ids = [r for r in role_ids if r]
        return await self._update(
            incident_id,
            """
            UPDATE security_incidents
            SET roles_removed = MAX(roles_removed, ?),
                removed_role_ids = COALESCE(?, removed_role_ids),
                details = CASE WHEN details = '' THEN ? ELSE details || char(10) || ? END
            WHERE incident_id = ?
            """,
            (int(bool(ids)), ",".join(ids) if ids else None, note, note, incident_id),
        )

    async def mark_notified(self, incident_id: str, at: datetime) -> bool:
        return await self._update(
            incident_id,
            """
            UPDATE security_incidents
            SET discord_notified = 1, discord_notified_at_iso = COALESCE(discord_notified_at_iso, ?)
            WHERE incident_id = ?
            """,
            (to_iso(at), incident_id),
        )

    async def resolve(self, incident_id: str, at: datetime) -> bool:
        return await self._update(
            incident_id,
            "UPDATE security_incidents SET is_resolved = 1, resolved_at_iso = ? WHERE incident_id = ? AND is_resolved = 0",
            (to_iso(at), incident_id),
        )
