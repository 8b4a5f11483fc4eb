from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from ..errors import MalformedEntryError
from ..utils import from_iso


def _opt(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text else None


@dataclass(frozen=True)
class AuditLogEntry:
    """One audit event ingested from the group API."""

    id: str
    group_id: str
    event_type: str
    actor_id: Optional[str]
    actor_name: Optional[str]
    target_id: Optional[str]
    target_name: Optional[str]
    description: str
    created_at: datetime
    inserted_at: datetime
    raw_data: Optional[str] = None
    discord_sent_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, group_id: str, item: Mapping[str, Any], *, inserted_at: datetime) -> "AuditLogEntry":
        if not isinstance(item, Mapping):
            raise MalformedEntryError(f"audit item is {type(item).__name__}, expected object")
        event_type = item.get("eventType")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEntryError("audit item has no eventType")
        created_raw = item.get("created_at") or item.get("createdAt")
        if not isinstance(created_raw, str):
            raise MalformedEntryError(f"audit item {item.get('id')!r} has no created_at")
        try:
            created_at = from_iso(created_raw)
        except ValueError as e:
            raise MalformedEntryError(f"audit item {item.get('id')!r} has bad created_at {created_raw!r}") from e

        data = item.get("data")
        raw_data = json.dumps(data, sort_keys=True, separators=(",", ":")) if data else None
        entry_id = _opt(item.get("id")) or content_id(item)

        return cls(
            id=entry_id,
            group_id=str(item.get("groupId") or group_id),
            event_type=event_type,
            actor_id=_opt(item.get("actorId")),
            actor_name=_opt(item.get("actorDisplayName")),
            target_id=_opt(item.get("targetId")),
            target_name=_opt(item.get("targetDisplayName")),
            description=str(item.get("description") or ""),
            created_at=created_at,
            inserted_at=inserted_at,
            raw_data=raw_data,
        )

    def dedup_key(self) -> str:
        """Identity used to collapse repeated copies of the same event in the backlog."""
        if self.raw_data:
            return hashlib.sha256(self.raw_data.encode("utf-8")).hexdigest()
        return "|".join(
            (
                self.event_type,
                self.actor_id or "",
                self.target_id or "",
                self.description or "",
                self.created_at.isoformat(),
            )
        )


def content_id(item: Mapping[str, Any]) -> str:
    """Stable id for items the API delivered without one."""
    raw = json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest().upper()


@dataclass(frozen=True)
class SecurityAction:
    group_id: str
    actor_user_id: str
    actor_display_name: str
    action_type: str
    action_time: datetime
    target_user_id: Optional[str] = None
    target_display_name: Optional[str] = None
    additional_data: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class SecurityIncident:
    incident_id: str
    group_id: str
    actor_user_id: str
    actor_display_name: str
    incident_type: str
    action_count: int
    timeframe_minutes: int
    threshold: int
    detected_at: datetime
    details: str
    roles_removed: bool = False
    removed_role_ids: Optional[str] = None
    discord_notified: bool = False
    discord_notified_at: Optional[datetime] = None
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None

    @property
    def removed_roles(self) -> list[str]:
        if not self.removed_role_ids:
            return []
        return [r for r in self.removed_role_ids.split(",") if r]
