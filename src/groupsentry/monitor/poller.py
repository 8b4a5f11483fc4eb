from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import aiohttp

from ..constants import AUDIT_PAGE_SIZE, MAX_NOTIFICATIONS_PER_POLL, POLL_INTERVAL_SECONDS
from ..errors import ApiError, MalformedEntryError
from ..interfaces import GroupApi
from ..services.audit_log_store import AuditLogStore
from ..services.group_config_store import GroupConfigStore
from ..services.scheduler import RepeatingTaskScheduler
from ..utils import KeyedLocks, utcnow
from .dispatcher import NotificationDispatcher
from .models import AuditLogEntry
from .policy import ConfigResolver, GroupPolicy
from .threshold import SecurityMonitor

log = logging.getLogger("groupsentry.poller")

EntriesCallback = Callable[[Sequence[AuditLogEntry]], Awaitable[None]]


@dataclass(frozen=True)
class PollResult:
    fetched: int = 0
    new_entries: tuple[AuditLogEntry, ...] = ()
    notified: int = 0
    skipped: bool = False

    @property
    def new_count(self) -> int:
        return len(self.new_entries)


@dataclass(frozen=True)
class FetchProgress:
    pages_fetched: int
    total_fetched: int


ProgressCallback = Callable[[FetchProgress], None]


class AuditLogPoller:
    """Keeps the local audit log in step with the group's remote audit log.

    One poller follows one group at a time. Ingestion is idempotent on the
    entry id, so overlapping pages and repeated polls never duplicate rows.
    Polls for the same group never overlap; a tick that finds one running is
    skipped.
    """

    TASK_KEY = "audit-log-poll"

    def __init__(
        self,
        api: GroupApi,
        store: AuditLogStore,
        dispatcher: NotificationDispatcher,
        resolver: ConfigResolver,
        scheduler: RepeatingTaskScheduler,
        *,
        security: Optional[SecurityMonitor] = None,
        group_configs: Optional[GroupConfigStore] = None,
        on_entries: Optional[EntriesCallback] = None,
        page_size: int = AUDIT_PAGE_SIZE,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        max_notifications: int = MAX_NOTIFICATIONS_PER_POLL,
        notification_spacing_seconds: float = 0.5,
        historical_page_delay_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._api = api
        self._store = store
        self._dispatcher = dispatcher
        self._resolver = resolver
        self._scheduler = scheduler
        self._security = security
        self._group_configs = group_configs
        self._on_entries = on_entries
        self._page_size = max(1, int(page_size))
        self._poll_interval = float(poll_interval_seconds)
        self._max_notifications = max(0, int(max_notifications))
        self._spacing = max(0.0, float(notification_spacing_seconds))
        self._page_delay = max(0.0, float(historical_page_delay_seconds))
        self._clock = clock
        self._sleep = sleep

        self._group_id: Optional[str] = None
        self._total_log_count = 0
        self._poll_locks = KeyedLocks()
        self._backlog_lock = asyncio.Lock()

    @property
    def current_group_id(self) -> Optional[str]:
        return self._group_id

    @property
    def is_polling(self) -> bool:
        return self._scheduler.is_active(self.TASK_KEY)

    @property
    def total_log_count(self) -> int:
        return self._total_log_count

    async def _group_policy(self, group_id: str) -> Optional[GroupPolicy]:
        if self._group_configs is None:
            return None
        return await self._group_configs.get(group_id)

    async def _emit(self, entries: Sequence[AuditLogEntry]) -> None:
        if self._on_entries is None or not entries:
            return
        try:
            await self._on_entries(entries)
        except Exception:
            log.exception("on_entries callback failed")

    def _parse(self, group_id: str, items: Iterable[Any]) -> list[AuditLogEntry]:
        inserted_at = self._clock()
        parsed: "OrderedDict[str, AuditLogEntry]" = OrderedDict()
        for item in items:
            try:
                entry = AuditLogEntry.from_api(group_id, item, inserted_at=inserted_at)
            except MalformedEntryError as e:
                log.warning("Skipping malformed audit entry: %s", e)
                continue
            parsed.setdefault(entry.id, entry)
        return list(parsed.values())

    async def start_polling(self, group_id: str) -> None:
        await self.stop_polling()
        self._group_id = group_id

        self._total_log_count = await self._store.count_for_group(group_id)
        snapshot = await self._store.list_for_group(group_id)
        log.info("Loaded %d stored audit entries for %s", len(snapshot), group_id)
        await self._emit(snapshot)

        policy = self._resolver.resolve(await self._group_policy(group_id))
        if policy.webhook_url:
            await self.send_unsent()

        self._scheduler.schedule(self.TASK_KEY, self._poll_interval, self._tick)
        await self.poll_once(group_id)
        log.info("Polling %s every %.0fs", group_id, self._poll_interval)

    async def stop_polling(self) -> None:
        """Stop the repeating poll; a poll already in flight finishes first."""
        if await self._scheduler.cancel(self.TASK_KEY):
            log.info("Polling stopped for %s", self._group_id)

    async def _tick(self) -> None:
        await self.poll_once()

    async def refresh(self) -> PollResult:
        return await self.poll_once()

    async def poll_once(self, group_id: Optional[str] = None) -> PollResult:
        """Fetch the newest page, store it and notify about entries not seen before.

        Never raises; failures are logged and reported as an empty result.
        """
        gid = group_id or self._group_id
        if not gid:
            log.debug("No group selected; skipping poll")
            return PollResult()

        lock = self._poll_locks.get(gid)
        if lock.locked():
            log.debug("Poll already running for %s; skipping this tick", gid)
            return PollResult(skipped=True)

        async with lock:
            try:
                return await self._poll(gid)
            except (ApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("Polling audit logs for %s abandoned: %s", gid, e)
                return PollResult()
            except Exception:
                log.exception("Polling audit logs for %s failed", gid)
                return PollResult()

    async def _poll(self, group_id: str) -> PollResult:
        items = await self._api.fetch_audit_logs(group_id, self._page_size, 0)
        entries = self._parse(group_id, items)
        if not entries:
            log.debug("No audit entries returned for %s", group_id)
            return PollResult(fetched=len(items))

        had_history = await self._store.count_for_group(group_id) > 0
        new_ids = await self._store.filter_new_ids([e.id for e in entries])
        new_entries = [e for e in entries if e.id in new_ids]
        inserted = await self._store.insert_many(entries)
        self._total_log_count = await self._store.count_for_group(group_id)
        log.info("Fetched %d audit entries for %s, %d new (total %d)", len(entries), group_id, inserted, self._total_log_count)

        notified = await self._notify_new(group_id, new_entries)

        if self._security is not None and had_history:
            for entry in sorted(new_entries, key=lambda e: e.created_at):
                await self._security.track_audit_entry(entry)

        await self._emit(new_entries)
        return PollResult(fetched=len(items), new_entries=tuple(new_entries), notified=notified)

    async def _notify_new(self, group_id: str, new_entries: Sequence[AuditLogEntry]) -> int:
        if not new_entries or self._max_notifications == 0:
            return 0
        group = await self._group_policy(group_id)
        if not self._resolver.resolve(group).webhook_url:
            log.info("No webhook configured for %s; not sending %d notifications", group_id, len(new_entries))
            return 0

        newest_first = sorted(new_entries, key=lambda e: e.created_at, reverse=True)
        batch = list(reversed(newest_first[: self._max_notifications]))
        if len(new_entries) > len(batch):
            log.info("Sending %d of %d new entries; the rest stay in the backlog", len(batch), len(new_entries))

        sent_ids: list[str] = []
        for i, entry in enumerate(batch):
            if i and self._spacing:
                await self._sleep(self._spacing)
            ok = await self._dispatcher.dispatch_audit_event(
                entry.event_type,
                entry.actor_name or "Unknown",
                entry.target_name,
                entry.description,
                group_policy=group,
                timestamp=entry.created_at,
            )
            if ok:
                sent_ids.append(entry.id)

        if sent_ids:
            await self._store.mark_sent(sent_ids, self._clock())
        return len(sent_ids)

    async def fetch_historical(
        self,
        max_pages: int = 100,
        group_id: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> list[AuditLogEntry]:
        """Back-fill older entries page by page until a short page or ``max_pages``.

        Pages already persisted stay persisted when a later page fails.
        """
        gid = group_id or self._group_id
        if not gid:
            log.warning("fetch_historical called with no group selected")
            return []

        fetched: list[AuditLogEntry] = []
        total_items = 0
        offset = 0
        for page in range(1, max(0, int(max_pages)) + 1):
            try:
                items = await self._api.fetch_audit_logs(gid, self._page_size, offset)
            except Exception as e:
                log.warning("Historical fetch for %s stopped at page %d: %s", gid, page, e)
                break

            entries = self._parse(gid, items)
            if entries:
                await self._store.insert_many(entries)
                fetched.extend(entries)
            total_items += len(items)
            if progress is not None:
                try:
                    progress(FetchProgress(pages_fetched=page, total_fetched=total_items))
                except Exception:
                    log.exception("Progress callback failed")

            if len(items) < self._page_size:
                break
            offset += self._page_size
            if page < max_pages and self._page_delay:
                await self._sleep(self._page_delay)

        self._total_log_count = await self._store.count_for_group(gid)
        log.info("Historical fetch for %s stored %d entries (total %d)", gid, len(fetched), self._total_log_count)
        await self._emit(fetched)
        return fetched

    async def get_all_logs(self) -> list[AuditLogEntry]:
        if not self._group_id:
            return []
        return await self._store.list_for_group(self._group_id)

    async def search_logs(
        self,
        query: Optional[str] = None,
        event_type: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> list[AuditLogEntry]:
        if not self._group_id:
            return []
        return await self._store.search(self._group_id, query, event_type, from_date, to_date)

    async def send_unsent(self, limit: int = 100) -> int:
        """Re-send stored entries that never reached the webhook.

        Copies of the same event collapse into one notification; entries of
        disabled event types are marked sent without dispatching. Returns the
        number of notifications delivered.
        """
        gid = self._group_id
        if not gid:
            return 0
        if self._backlog_lock.locked():
            log.debug("Backlog re-send already running; skipping")
            return 0

        async with self._backlog_lock:
            try:
                return await self._send_unsent(gid, limit)
            except Exception:
                log.exception("Re-sending unsent notifications for %s failed", gid)
                return 0

    async def _send_unsent(self, group_id: str, limit: int) -> int:
        unsent = await self._store.unsent_for_group(group_id, limit)
        if not unsent:
            return 0

        group = await self._group_policy(group_id)
        policy = self._resolver.resolve(group)
        if not policy.webhook_url:
            return 0

        buckets: dict[str, list[AuditLogEntry]] = {}
        for entry in unsent:
            buckets.setdefault(entry.dedup_key(), []).append(entry)
        ordered = sorted(buckets.values(), key=lambda b: min(e.created_at for e in b))
        log.info("Found %d unsent entries (%d unique) for %s", len(unsent), len(ordered), group_id)

        done_ids: list[str] = []
        sent = skipped = attempts = 0
        for bucket in ordered:
            first = min(bucket, key=lambda e: e.created_at)
            ids = [e.id for e in bucket]
            if not policy.event_enabled(first.event_type):
                done_ids.extend(ids)
                skipped += 1
                continue

            if attempts and self._spacing:
                await self._sleep(self._spacing)
            attempts += 1
            ok = await self._dispatcher.dispatch_audit_event(
                first.event_type,
                first.actor_name or "Unknown",
                first.target_name,
                first.description,
                group_policy=group,
                timestamp=first.created_at,
            )
            if ok:
                done_ids.extend(ids)
                sent += 1

        if done_ids:
            await self._store.mark_sent(done_ids, self._clock())
        log.info("Backlog: sent %d, skipped %d disabled, %d unsent remain", sent, skipped, len(ordered) - sent - skipped)
        return sent
