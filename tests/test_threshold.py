# ruff: noqa: S101
"""Tests for sliding-window threshold detection."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from groupsentry.monitor.models import AuditLogEntry
from groupsentry.monitor.policy import CategoryPolicy, GlobalPolicy, GroupPolicy

from .helpers import GROUP, T0, audit_item, make_monitor

ALERT_URL = "https://discord.com/api/webhooks/7/alerts"


def _policy(**overrides) -> GlobalPolicy:
    values = dict(
        webhook_url=ALERT_URL,
        monitoring_enabled=True,
        auto_remove_roles=False,
        owner_user_id="usr_owner",
        categories={
            "group_kick": CategoryPolicy(threshold=5, timeframe_minutes=10),
            "group_ban": CategoryPolicy(threshold=2, timeframe_minutes=10),
        },
    )
    values.update(overrides)
    return GlobalPolicy(**values)


async def _kick(rig, n: int = 0, actor: str = "usr_mod") -> bool:
    return await rig.monitor.track_action(GROUP, actor, "Mod", "group_kick", f"usr_t{n}", f"Target {n}")


@pytest.mark.asyncio
async def test_disabled_monitoring_tracks_nothing(tmp_path: Path) -> None:
    """With monitoring off no action is recorded."""
    rig = await make_monitor(tmp_path, _policy(monitoring_enabled=False))
    assert not await rig.monitor.is_enabled(GROUP)
    assert not await _kick(rig)
    assert await rig.monitor.get_all_security_actions(GROUP) == []


@pytest.mark.asyncio
async def test_group_override_enables_monitoring(tmp_path: Path) -> None:
    """A group setting turns monitoring on for that group only."""
    rig = await make_monitor(tmp_path, _policy(monitoring_enabled=False))
    await rig.stores.configs.upsert(GroupPolicy(group_id=GROUP, monitoring_enabled=True))
    assert await rig.monitor.is_enabled(GROUP)
    assert not await rig.monitor.is_enabled("grp_other")


@pytest.mark.asyncio
async def test_incident_opens_at_threshold(tmp_path: Path) -> None:
    """Four kicks stay quiet; the fifth opens one incident."""
    rig = await make_monitor(tmp_path, _policy())

    for n in range(4):
        assert await _kick(rig, n)
        rig.clock.advance(seconds=30)
    assert await rig.monitor.get_recent_incidents(GROUP) == []

    assert await _kick(rig, 4)
    incidents = await rig.monitor.get_recent_incidents(GROUP)
    assert len(incidents) == 1
    incident = incidents[0]
    assert incident.incident_type == "excessive_group_kicks"
    assert incident.action_count == 5
    assert incident.threshold == 5
    assert incident.timeframe_minutes == 10
    assert incident.details.startswith("User performed 5 group_kick actions within 10 minutes")
    assert incident.discord_notified
    assert len(rig.sender.sent) == 1


@pytest.mark.asyncio
async def test_open_incident_blocks_duplicates(tmp_path: Path) -> None:
    """Further actions in the window do not open another incident."""
    rig = await make_monitor(tmp_path, _policy())
    for n in range(7):
        await _kick(rig, n)
        rig.clock.advance(seconds=10)
    assert len(await rig.monitor.get_recent_incidents(GROUP)) == 1
    assert len(rig.sender.sent) == 1


@pytest.mark.asyncio
async def test_resolved_incident_allows_new_one(tmp_path: Path) -> None:
    """After resolution the next breach opens a fresh incident."""
    rig = await make_monitor(tmp_path, _policy())
    for n in range(2):
        await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_ban", f"usr_t{n}")
    [first] = await rig.monitor.get_recent_incidents(GROUP)
    assert await rig.monitor.resolve_incident(first.incident_id)
    assert not await rig.monitor.resolve_incident(first.incident_id)

    rig.clock.advance(seconds=5)
    await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_ban", "usr_t9")
    incidents = await rig.monitor.get_recent_incidents(GROUP)
    assert len(incidents) == 2
    assert incidents[0].action_count == 3
    assert not incidents[0].is_resolved
    assert incidents[1].is_resolved


@pytest.mark.asyncio
async def test_action_on_window_edge_not_counted(tmp_path: Path) -> None:
    """An action exactly one window old has left the window."""
    rig = await make_monitor(tmp_path, _policy())
    await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_ban")
    rig.clock.advance(minutes=10)
    await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_ban")
    assert await rig.monitor.get_recent_incidents(GROUP) == []

    rig.clock.advance(seconds=1)
    await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_ban")
    [incident] = await rig.monitor.get_recent_incidents(GROUP)
    assert incident.action_count == 2


@pytest.mark.asyncio
async def test_actors_counted_separately(tmp_path: Path) -> None:
    """Windows are per actor."""
    rig = await make_monitor(tmp_path, _policy())
    await rig.monitor.track_action(GROUP, "usr_a", "A", "group_ban")
    await rig.monitor.track_action(GROUP, "usr_b", "B", "group_ban")
    assert await rig.monitor.get_recent_incidents(GROUP) == []


@pytest.mark.asyncio
async def test_concurrent_actions_open_one_incident(tmp_path: Path) -> None:
    """Simultaneous evaluations for one actor never duplicate an incident."""
    rig = await make_monitor(tmp_path, _policy())
    results = await asyncio.gather(*(_kick(rig, n) for n in range(8)))
    assert all(results)
    assert len(await rig.monitor.get_recent_incidents(GROUP)) == 1


@pytest.mark.asyncio
async def test_untracked_and_disabled_categories(tmp_path: Path) -> None:
    """Unknown types and disabled categories are not recorded."""
    rig = await make_monitor(
        tmp_path,
        _policy(categories={"group_kick": CategoryPolicy(enabled=False, threshold=1, timeframe_minutes=10)}),
    )
    assert not await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_warn")
    assert not await _kick(rig)
    assert await rig.monitor.get_all_security_actions(GROUP) == []


@pytest.mark.asyncio
async def test_zero_threshold_records_without_incident(tmp_path: Path) -> None:
    """A zero threshold keeps the history but never alerts."""
    rig = await make_monitor(
        tmp_path, _policy(categories={"group_kick": CategoryPolicy(threshold=0, timeframe_minutes=10)})
    )
    for n in range(3):
        assert await _kick(rig, n)
    assert len(await rig.monitor.get_user_actions(GROUP, "usr_mod")) == 3
    assert await rig.monitor.get_recent_incidents(GROUP) == []


@pytest.mark.asyncio
async def test_alias_stored_under_category_key(tmp_path: Path) -> None:
    """Legacy spellings are recorded under the canonical action type."""
    rig = await make_monitor(tmp_path, _policy())
    await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group.role.remove", "usr_x")
    [action] = await rig.monitor.get_user_actions(GROUP, "usr_mod")
    assert action.action_type == "role_remove"


@pytest.mark.asyncio
async def test_audit_entry_in_instance_counts_as_instance_kick(tmp_path: Path) -> None:
    """Kick entries naming an instance are tracked as instance kicks."""
    rig = await make_monitor(tmp_path, _policy())
    entry = AuditLogEntry.from_api(
        GROUP,
        audit_item(1, event_type="group.user.kick", actor_id="usr_mod", data={"instanceId": "wrld_1:42"}),
        inserted_at=T0,
    )
    assert await rig.monitor.track_audit_entry(entry)
    [action] = await rig.monitor.get_user_actions(GROUP, "usr_mod")
    assert action.action_type == "instance_kick"

    join = AuditLogEntry.from_api(GROUP, audit_item(2), inserted_at=T0)
    assert not await rig.monitor.track_audit_entry(join)


@pytest.mark.asyncio
async def test_kick_burst_end_to_end(tmp_path: Path) -> None:
    """Three kicks in four minutes against a 3/10 threshold strip roles and alert once."""
    rig = await make_monitor(
        tmp_path,
        _policy(
            auto_remove_roles=True,
            require_owner_role=True,
            categories={"group_kick": CategoryPolicy(threshold=3, timeframe_minutes=10)},
        ),
    )
    rig.api.current_user_id = "usr_owner"
    rig.api.roles["usr_mod"] = ["grol_a", "grol_b"]

    for n in range(3):
        await _kick(rig, n)
        rig.clock.advance(minutes=2)

    [incident] = await rig.monitor.get_recent_incidents(GROUP)
    assert incident.action_count == 3
    assert incident.roles_removed
    assert incident.removed_roles == ["grol_a", "grol_b"]
    assert "✓ Automatically removed 2 role(s) from user" in incident.details
    assert incident.discord_notified

    assert len(rig.sender.sent) == 1
    message = rig.sender.sent[0]
    assert message["url"] == ALERT_URL
    assert "SECURITY INCIDENT DETECTED" in message["content"]
    embed = message["embeds"][0]
    fields = {f.name: f.value for f in embed.fields}
    assert fields["Action Count"] == "3/3"
    assert fields["Roles Removed"] == "✓ Yes"
    assert fields["Timeframe"] == "10 minutes"
    assert "Recent Actions (3 total)" in fields


@pytest.mark.asyncio
async def test_alert_reports_full_window_count(tmp_path: Path) -> None:
    """The alert totals every action in the window but lists only ten."""
    rig = await make_monitor(
        tmp_path, _policy(categories={"group_kick": CategoryPolicy(threshold=12, timeframe_minutes=10)})
    )
    for n in range(12):
        await _kick(rig, n)
        rig.clock.advance(seconds=10)

    [incident] = await rig.monitor.get_recent_incidents(GROUP)
    assert incident.action_count == 12
    [message] = rig.sender.sent
    fields = {f.name: f.value for f in message["embeds"][0].fields}
    assert fields["Action Count"] == "12/12"
    assert fields["Recent Actions (12 total)"].count("\n") == 9


@pytest.mark.asyncio
async def test_alert_skipped_when_notify_disabled(tmp_path: Path) -> None:
    """Incidents are still recorded with Discord notification off."""
    rig = await make_monitor(tmp_path, _policy(notify_discord=False))
    for n in range(2):
        await rig.monitor.track_action(GROUP, "usr_mod", "Mod", "group_ban", f"usr_t{n}")
    [incident] = await rig.monitor.get_recent_incidents(GROUP)
    assert not incident.discord_notified
    assert rig.sender.sent == []


@pytest.mark.asyncio
async def test_clear_old_actions(tmp_path: Path) -> None:
    """Purging removes only actions older than the cut-off."""
    rig = await make_monitor(tmp_path, _policy())
    await _kick(rig, 1)
    rig.clock.advance(days=8)
    await _kick(rig, 2)

    assert await rig.monitor.clear_old_security_actions(GROUP, days_old=7) == 1
    remaining = await rig.monitor.get_all_security_actions(GROUP, days_back=30)
    assert [a.target_user_id for a in remaining] == ["usr_t2"]
