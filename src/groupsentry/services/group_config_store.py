from __future__ import annotations

import json

import aiosqlite

from ..monitor.policy import GroupPolicy
from ..utils import to_iso, utcnow
from .base import BaseService


class GroupConfigStore(BaseService[GroupPolicy]):
    """Per-group policy overrides, stored as one JSON document per group."""

    required_columns = {"group_config": ("group_id", "doc_json", "updated_at_iso")}

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS group_config (
              group_id TEXT PRIMARY KEY,
              doc_json TEXT NOT NULL,
              updated_at_iso TEXT NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> GroupPolicy:
        doc = json.loads(row["doc_json"])
        doc["group_id"] = row["group_id"]
        return GroupPolicy.from_dict(doc)

    @property
    def _get_query(self) -> str:
        return "SELECT group_id, doc_json FROM group_config WHERE group_id = ?"

    async def upsert(self, policy: GroupPolicy) -> None:
        doc_json = json.dumps(policy.to_dict(), separators=(",", ":"), ensure_ascii=False)
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                INSERT INTO group_config (group_id, doc_json, updated_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT(group_id) DO UPDATE SET
                    doc_json=excluded.doc_json,
                    updated_at_iso=excluded.updated_at_iso
                """,
                (policy.group_id, doc_json, to_iso(utcnow())),
            )
            await db.commit()
        self._cache.set(policy.group_id, policy)
