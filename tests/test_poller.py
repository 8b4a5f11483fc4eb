# ruff: noqa: S101
"""Tests for audit log polling, notification batching and back-fill."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pytest

from groupsentry.errors import ServerUnavailableError
from groupsentry.monitor.dispatcher import NotificationDispatcher
from groupsentry.monitor.models import AuditLogEntry
from groupsentry.monitor.poller import AuditLogPoller, FetchProgress
from groupsentry.monitor.policy import ConfigResolver, GlobalPolicy, GroupPolicy
from groupsentry.services.scheduler import RepeatingTaskScheduler

from .helpers import (
    GROUP,
    T0,
    FakeClock,
    FakeGroupApi,
    FakeWebhookSender,
    SleepRecorder,
    Stores,
    audit_item,
    make_stores,
    newest_first,
)

WEBHOOK = "https://discord.com/api/webhooks/1/token"


class RecordingSecurity:
    """Captures entries the poller hands to detection."""

    def __init__(self) -> None:
        self.entries: list[AuditLogEntry] = []

    async def track_audit_entry(self, entry: AuditLogEntry) -> bool:
        self.entries.append(entry)
        return True


class Rig:
    def __init__(self, stores: Stores, api: FakeGroupApi, policy: GlobalPolicy, **kwargs) -> None:
        self.stores = stores
        self.api = api
        self.sender = FakeWebhookSender()
        self.clock = FakeClock()
        self.sleep = SleepRecorder()
        self.scheduler = RepeatingTaskScheduler()
        self.resolver = ConfigResolver(policy)
        self.dispatcher = NotificationDispatcher(self.sender, self.resolver, stores.incidents, clock=self.clock)
        self.emitted: list[list[AuditLogEntry]] = []

        async def _on_entries(entries) -> None:
            self.emitted.append(list(entries))

        kwargs.setdefault("group_configs", stores.configs)
        self.poller = AuditLogPoller(
            api,
            stores.audit,
            self.dispatcher,
            self.resolver,
            self.scheduler,
            on_entries=_on_entries,
            clock=self.clock,
            sleep=self.sleep,
            **kwargs,
        )


async def _rig(tmp_path: Path, items: Optional[list[dict]] = None, *, webhook: Optional[str] = WEBHOOK, **kwargs) -> Rig:
    stores = await make_stores(tmp_path)
    return Rig(stores, FakeGroupApi(newest_first(items or [])), GlobalPolicy(webhook_url=webhook), **kwargs)


def _seed(n: int, *, sent: bool) -> AuditLogEntry:
    entry = AuditLogEntry.from_api(GROUP, audit_item(n), inserted_at=T0)
    return replace(entry, discord_sent_at=T0) if sent else entry


@pytest.mark.asyncio
async def test_repeated_polls_do_not_duplicate(tmp_path: Path) -> None:
    """The same page fetched three times stores each entry once."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(20)])

    first = await rig.poller.poll_once(GROUP)
    second = await rig.poller.poll_once(GROUP)
    third = await rig.poller.poll_once(GROUP)

    assert first.new_count == 20
    assert second.new_count == 0
    assert third.new_count == 0
    assert await rig.stores.audit.count_for_group(GROUP) == 20
    assert rig.poller.total_log_count == 20


@pytest.mark.asyncio
async def test_notifications_capped_to_most_recent(tmp_path: Path) -> None:
    """Fifteen new entries produce ten sends of the newest, oldest first."""
    items = [audit_item(n) for n in range(100)]
    rig = await _rig(tmp_path, items)
    await rig.stores.audit.insert_many([_seed(n, sent=True) for n in range(85)])

    result = await rig.poller.poll_once(GROUP)

    assert result.fetched == 100
    assert result.new_count == 15
    assert result.notified == 10
    assert len(rig.sender.sent) == 10
    descriptions = [s["embeds"][0].description for s in rig.sender.sent]
    assert "event 90" in descriptions[0]
    assert "event 99" in descriptions[-1]
    # Spacing between sends, none before the first.
    assert rig.sleep.calls == [0.5] * 9

    unsent = await rig.stores.audit.unsent_for_group(GROUP)
    assert sorted(e.id for e in unsent) == [f"gaud_{n:05d}" for n in range(85, 90)]


@pytest.mark.asyncio
async def test_failed_sends_stay_unsent(tmp_path: Path) -> None:
    """Only delivered notifications are marked sent."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(3)])
    rig.sender.error = ValueError("bad webhook")

    result = await rig.poller.poll_once(GROUP)

    assert result.new_count == 3
    assert result.notified == 0
    assert len(await rig.stores.audit.unsent_for_group(GROUP)) == 3


@pytest.mark.asyncio
async def test_no_webhook_means_no_sends(tmp_path: Path) -> None:
    """Entries are still stored without a webhook."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(3)], webhook=None)
    result = await rig.poller.poll_once(GROUP)
    assert result.new_count == 3
    assert result.notified == 0
    assert rig.sender.sent == []


@pytest.mark.asyncio
async def test_group_webhook_used_for_group(tmp_path: Path) -> None:
    """A group's own webhook takes precedence for its notifications."""
    rig = await _rig(tmp_path, [audit_item(1)])
    await rig.stores.configs.upsert(GroupPolicy(group_id=GROUP, webhook_url="https://discord.com/api/webhooks/9/group"))

    await rig.poller.poll_once(GROUP)

    assert [s["url"] for s in rig.sender.sent] == ["https://discord.com/api/webhooks/9/group"]


@pytest.mark.asyncio
async def test_malformed_items_are_skipped(tmp_path: Path) -> None:
    """Bad items are dropped and the rest of the page is stored."""
    broken = audit_item(2)
    del broken["eventType"]
    rig = await _rig(tmp_path, [audit_item(1), broken, audit_item(3)])

    result = await rig.poller.poll_once(GROUP)

    assert result.fetched == 3
    assert {e.id for e in result.new_entries} == {"gaud_00001", "gaud_00003"}


@pytest.mark.asyncio
async def test_api_failure_returns_empty_result(tmp_path: Path) -> None:
    """A failing fetch is logged and reported as nothing new."""
    rig = await _rig(tmp_path, [audit_item(1)])
    rig.api.fetch_errors[0] = ServerUnavailableError(503, "down")

    result = await rig.poller.poll_once(GROUP)

    assert result.new_count == 0
    assert await rig.stores.audit.count_for_group(GROUP) == 0


@pytest.mark.asyncio
async def test_overlapping_poll_is_skipped(tmp_path: Path) -> None:
    """A second poll for the same group while one runs does nothing."""
    rig = await _rig(tmp_path, [audit_item(1)])
    rig.api.gate = asyncio.Event()

    running = asyncio.create_task(rig.poller.poll_once(GROUP))
    await asyncio.sleep(0)
    while not rig.api.fetch_calls:
        await asyncio.sleep(0)

    skipped = await rig.poller.poll_once(GROUP)
    assert skipped.skipped

    rig.api.gate.set()
    finished = await running
    assert finished.new_count == 1
    assert len(rig.api.fetch_calls) == 1


@pytest.mark.asyncio
async def test_new_entries_fed_to_security_once_history_exists(tmp_path: Path) -> None:
    """The first seeding poll is not replayed into detection; later polls are."""
    security = RecordingSecurity()
    rig = await _rig(tmp_path, [audit_item(n) for n in range(5)], security=security)

    await rig.poller.poll_once(GROUP)
    assert security.entries == []

    rig.api.items = newest_first([audit_item(n) for n in range(8)])
    await rig.poller.poll_once(GROUP)
    assert [e.id for e in security.entries] == ["gaud_00005", "gaud_00006", "gaud_00007"]


@pytest.mark.asyncio
async def test_new_entries_emitted(tmp_path: Path) -> None:
    """Subscribers receive only the entries new in this poll."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(2)])
    await rig.poller.poll_once(GROUP)
    await rig.poller.poll_once(GROUP)
    assert [len(batch) for batch in rig.emitted] == [2]


@pytest.mark.asyncio
async def test_fetch_historical_pages_until_short_page(tmp_path: Path) -> None:
    """Pages are fetched at increasing offsets and progress is reported."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(250)], page_size=100)
    progress: list[FetchProgress] = []

    fetched = await rig.poller.fetch_historical(10, GROUP, progress.append)

    assert len(fetched) == 250
    assert [offset for _, _, offset in rig.api.fetch_calls] == [0, 100, 200]
    assert [(p.pages_fetched, p.total_fetched) for p in progress] == [(1, 100), (2, 200), (3, 250)]
    assert rig.sleep.calls == [1.0, 1.0]
    assert await rig.stores.audit.count_for_group(GROUP) == 250


@pytest.mark.asyncio
async def test_fetch_historical_keeps_pages_before_failure(tmp_path: Path) -> None:
    """A failing page stops the back-fill without losing earlier pages."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(300)], page_size=100)
    rig.api.fetch_errors[100] = ServerUnavailableError(502, "bad gateway")

    fetched = await rig.poller.fetch_historical(10, GROUP)

    assert len(fetched) == 100
    assert await rig.stores.audit.count_for_group(GROUP) == 100


@pytest.mark.asyncio
async def test_fetch_historical_respects_max_pages(tmp_path: Path) -> None:
    """No more than ``max_pages`` requests are made."""
    rig = await _rig(tmp_path, [audit_item(n) for n in range(500)], page_size=100)
    await rig.poller.fetch_historical(2, GROUP)
    assert len(rig.api.fetch_calls) == 2


@pytest.mark.asyncio
async def test_backlog_collapses_copies(tmp_path: Path) -> None:
    """Copies of one event in the backlog are sent once and all marked sent."""
    rig = await _rig(tmp_path)
    same = {"userId": "usr_1", "action": "join"}
    await rig.stores.audit.insert_many(
        [
            AuditLogEntry.from_api(GROUP, audit_item(1, data=same), inserted_at=T0),
            AuditLogEntry.from_api(GROUP, audit_item(2, data=same), inserted_at=T0),
            AuditLogEntry.from_api(GROUP, audit_item(3), inserted_at=T0),
        ]
    )
    rig.poller._group_id = GROUP

    sent = await rig.poller.send_unsent()

    assert sent == 2
    assert len(rig.sender.sent) == 2
    assert "event 1" in rig.sender.sent[0]["embeds"][0].description
    assert await rig.stores.audit.unsent_for_group(GROUP) == []


@pytest.mark.asyncio
async def test_backlog_marks_disabled_types_sent(tmp_path: Path) -> None:
    """Disabled event types leave the backlog without a send."""
    rig = await _rig(tmp_path)
    await rig.stores.audit.insert_many(
        [AuditLogEntry.from_api(GROUP, audit_item(1, event_type="group.instance.open"), inserted_at=T0)]
    )
    rig.poller._group_id = GROUP

    assert await rig.poller.send_unsent() == 0
    assert rig.sender.sent == []
    assert await rig.stores.audit.unsent_for_group(GROUP) == []


@pytest.mark.asyncio
async def test_start_and_stop_polling(tmp_path: Path) -> None:
    """Starting replays the backlog, polls once and schedules the repeat."""
    rig = await _rig(tmp_path, [audit_item(5)], poll_interval_seconds=3600)
    await rig.stores.audit.insert_many([_seed(1, sent=False)])

    await rig.poller.start_polling(GROUP)
    try:
        assert rig.poller.current_group_id == GROUP
        assert rig.poller.is_polling
        # Stored snapshot first, then the new entry from the first poll.
        assert [[e.id for e in batch] for batch in rig.emitted] == [["gaud_00001"], ["gaud_00005"]]
        assert len(rig.sender.sent) == 2
        assert rig.poller.total_log_count == 2
        assert [e.id for e in await rig.poller.get_all_logs()] == ["gaud_00005", "gaud_00001"]
    finally:
        await rig.poller.stop_polling()
    assert not rig.poller.is_polling


@pytest.mark.asyncio
async def test_stop_lets_running_poll_finish(tmp_path: Path) -> None:
    """Stopping mid-poll still records the notification as sent."""
    rig = await _rig(tmp_path, poll_interval_seconds=0.01)
    await rig.poller.start_polling(GROUP)

    gate = asyncio.Event()
    rig.api.gate = gate
    rig.api.items = newest_first([audit_item(1)])
    calls = len(rig.api.fetch_calls)

    async def _blocked() -> None:
        while len(rig.api.fetch_calls) == calls:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_blocked(), 2.0)
    stopping = asyncio.create_task(rig.poller.stop_polling())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    gate.set()
    await asyncio.wait_for(stopping, 2.0)
    assert not rig.poller.is_polling
    assert len(rig.sender.sent) == 1
    assert await rig.stores.audit.unsent_for_group(GROUP) == []


@pytest.mark.asyncio
async def test_search_logs_scoped_to_current_group(tmp_path: Path) -> None:
    """Search needs a selected group."""
    rig = await _rig(tmp_path, [audit_item(1, actor_name="Alice"), audit_item(2, actor_name="Bob")])
    assert await rig.poller.search_logs("alice") == []

    rig.poller._group_id = GROUP
    await rig.poller.refresh()
    found = await rig.poller.search_logs("alice")
    assert [e.id for e in found] == ["gaud_00001"]
