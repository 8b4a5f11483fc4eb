"""Stand-ins shared by the test modules."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import discord

from groupsentry.database import initialize_database
from groupsentry.monitor.dispatcher import NotificationDispatcher
from groupsentry.monitor.policy import ConfigResolver, GlobalPolicy
from groupsentry.monitor.remediation import RemediationExecutor
from groupsentry.monitor.threshold import SecurityMonitor
from groupsentry.services.audit_log_store import AuditLogStore
from groupsentry.services.group_config_store import GroupConfigStore
from groupsentry.services.security_action_store import SecurityActionStore
from groupsentry.services.security_incident_store import SecurityIncidentStore

GROUP = "grp_00000000-0000-0000-0000-000000000001"
T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class SleepRecorder:
    """Records requested sleeps without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeGroupApi:
    """In-memory group API: audit items newest first, member roles, call log."""

    def __init__(self, items: Optional[list[dict[str, Any]]] = None, *, current_user_id: Optional[str] = "usr_owner") -> None:
        self.items: list[dict[str, Any]] = list(items or [])
        self.current_user_id = current_user_id
        self.roles: dict[str, list[str]] = {}
        self.failing_roles: set[str] = set()
        self.raising_roles: set[str] = set()
        self.removed: list[tuple[str, str, str]] = []
        self.fetch_calls: list[tuple[str, int, int]] = []
        self.fetch_errors: dict[int, Exception] = {}
        self.gate: Optional[asyncio.Event] = None

    async def fetch_audit_logs(self, group_id: str, count: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        self.fetch_calls.append((group_id, count, offset))
        if self.gate is not None:
            await self.gate.wait()
        if offset in self.fetch_errors:
            raise self.fetch_errors[offset]
        return self.items[offset:offset + count]

    async def get_member_role_ids(self, group_id: str, user_id: str) -> list[str]:
        return list(self.roles.get(user_id, []))

    async def remove_member_role(self, group_id: str, user_id: str, role_id: str) -> bool:
        if role_id in self.raising_roles:
            raise RuntimeError(f"boom removing {role_id}")
        if role_id in self.failing_roles:
            return False
        self.removed.append((group_id, user_id, role_id))
        return True

    async def add_member_role(self, group_id: str, user_id: str, role_id: str) -> bool:
        return True

    async def kick_member(self, group_id: str, user_id: str) -> bool:
        return True

    async def ban_member(self, group_id: str, user_id: str) -> bool:
        return True

    async def unban_member(self, group_id: str, user_id: str) -> bool:
        return True

    async def respond_to_join_request(self, group_id: str, user_id: str, action: str) -> bool:
        return True


class FakeWebhookSender:
    """Records webhook messages; raises ``error`` when set."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.error: Optional[BaseException] = None

    async def send(self, url: str, *, embeds: Sequence[discord.Embed], content: Optional[str] = None) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"url": url, "embeds": list(embeds), "content": content})


def audit_item(
    n: int,
    *,
    event_type: str = "group.user.join",
    created_at: Optional[datetime] = None,
    actor_id: str = "usr_actor",
    actor_name: str = "Actor",
    target_id: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """One raw audit item as the API returns it; higher ``n`` means newer."""
    when = created_at or (T0 + timedelta(seconds=n))
    return {
        "id": f"gaud_{n:05d}",
        "groupId": GROUP,
        "eventType": event_type,
        "actorId": actor_id,
        "actorDisplayName": actor_name,
        "targetId": target_id or f"usr_target_{n}",
        "targetDisplayName": f"Target {n}",
        "description": f"event {n}",
        "created_at": when.isoformat().replace("+00:00", "Z"),
        "data": data if data is not None else {"seq": n},
    }


def newest_first(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(items, key=lambda i: i["created_at"], reverse=True)


@dataclass
class Stores:
    audit: AuditLogStore
    actions: SecurityActionStore
    incidents: SecurityIncidentStore
    configs: GroupConfigStore


async def make_stores(tmp_path: Path) -> Stores:
    path = str(tmp_path / "sentry.sqlite3")
    stores = Stores(
        audit=AuditLogStore(path),
        actions=SecurityActionStore(path),
        incidents=SecurityIncidentStore(path),
        configs=GroupConfigStore(path),
    )
    await initialize_database(path, [stores.audit, stores.actions, stores.incidents, stores.configs])
    return stores


@dataclass
class MonitorRig:
    stores: Stores
    api: FakeGroupApi
    sender: FakeWebhookSender
    clock: FakeClock
    resolver: ConfigResolver
    dispatcher: NotificationDispatcher
    monitor: SecurityMonitor


async def make_monitor(tmp_path: Path, policy: GlobalPolicy) -> MonitorRig:
    stores = await make_stores(tmp_path)
    api = FakeGroupApi()
    sender = FakeWebhookSender()
    clock = FakeClock()
    resolver = ConfigResolver(policy)
    dispatcher = NotificationDispatcher(sender, resolver, stores.incidents, clock=clock)
    monitor = SecurityMonitor(
        stores.actions,
        stores.incidents,
        resolver,
        RemediationExecutor(api, stores.incidents),
        dispatcher,
        stores.configs,
        clock=clock,
    )
    return MonitorRig(stores, api, sender, clock, resolver, dispatcher, monitor)
