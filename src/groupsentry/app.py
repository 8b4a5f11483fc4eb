from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from .config import Settings, load_global_policy
from .database import initialize_database
from .interfaces import validate_group_api, validate_webhook_sender
from .monitor.dispatcher import NotificationDispatcher
from .monitor.policy import ConfigResolver, GlobalPolicy
from .monitor.poller import AuditLogPoller, FetchProgress
from .monitor.remediation import RemediationExecutor
from .monitor.threshold import SecurityMonitor
from .services.audit_log_store import AuditLogStore
from .services.group_config_store import GroupConfigStore
from .services.rate_limiter import MinIntervalRateLimiter
from .services.scheduler import RepeatingTaskScheduler
from .services.security_action_store import SecurityActionStore
from .services.security_incident_store import SecurityIncidentStore
from .services.vrchat_api import VRChatApiClient
from .services.webhook_client import DiscordWebhookClient

log = logging.getLogger("groupsentry.app")


class GroupSentry:
    """Builds the stores and services and runs the poller for the configured group."""

    def __init__(self, settings: Settings, global_policy: Optional[GlobalPolicy] = None) -> None:
        self.settings = settings
        cache_ttl = settings.cache_default_ttl_seconds

        self.audit_logs = AuditLogStore(settings.sqlite_path, cache_ttl)
        self.security_actions = SecurityActionStore(settings.sqlite_path, cache_ttl)
        self.security_incidents = SecurityIncidentStore(settings.sqlite_path, cache_ttl)
        self.group_configs = GroupConfigStore(settings.sqlite_path, cache_ttl)

        self.resolver = ConfigResolver(global_policy or load_global_policy())
        self.scheduler = RepeatingTaskScheduler()

        self._session: Optional[aiohttp.ClientSession] = None
        self.api: Optional[VRChatApiClient] = None
        self.webhooks: Optional[DiscordWebhookClient] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.security: Optional[SecurityMonitor] = None
        self.poller: Optional[AuditLogPoller] = None

    @property
    def stores(self) -> list:
        return [self.audit_logs, self.security_actions, self.security_incidents, self.group_configs]

    async def setup(self) -> None:
        """Initialize the database (fatal on failure) and wire the services."""
        await initialize_database(self.settings.sqlite_path, self.stores)

        s = self.settings
        self._session = aiohttp.ClientSession()
        self.api = VRChatApiClient(
            s.auth_cookie,
            base_url=s.api_base_url,
            current_user_id=s.user_id,
            limiter=MinIntervalRateLimiter(s.api_min_interval_ms / 1000.0),
        )
        self.webhooks = DiscordWebhookClient(self._session)
        api = validate_group_api(self.api)
        sender = validate_webhook_sender(self.webhooks)

        self.dispatcher = NotificationDispatcher(sender, self.resolver, self.security_incidents)
        remediation = RemediationExecutor(api, self.security_incidents)
        self.security = SecurityMonitor(
            self.security_actions,
            self.security_incidents,
            self.resolver,
            remediation,
            self.dispatcher,
            self.group_configs,
        )
        self.poller = AuditLogPoller(
            api,
            self.audit_logs,
            self.dispatcher,
            self.resolver,
            self.scheduler,
            security=self.security,
            group_configs=self.group_configs,
            page_size=s.audit_page_size,
            poll_interval_seconds=s.poll_interval_seconds,
            max_notifications=s.max_notifications_per_poll,
            notification_spacing_seconds=s.notification_spacing_ms / 1000.0,
            historical_page_delay_seconds=s.historical_page_delay_ms / 1000.0,
        )

        if not self.api.current_user_id:
            try:
                await self.api.fetch_current_user_id()
            except Exception as e:
                # Remediation's owner gate refuses to act until this is known.
                log.warning("Could not resolve the authenticated user id: %s", e)

    async def start(self) -> None:
        if self.poller is None:
            await self.setup()
        assert self.poller is not None and self.security is not None

        group_id = self.settings.group_id
        if self.settings.historical_pages_on_start > 0:
            def _progress(p: FetchProgress) -> None:
                log.info("Back-fill: %d pages, %d entries", p.pages_fetched, p.total_fetched)

            await self.poller.fetch_historical(self.settings.historical_pages_on_start, group_id, _progress)

        await self.poller.start_polling(group_id)
        if await self.security.is_enabled(group_id):
            log.info("Security monitoring is enabled for %s", group_id)
        else:
            log.info("Security monitoring is disabled for %s", group_id)

    def status(self) -> dict:
        poller = self.poller
        return {
            "group_id": self.settings.group_id,
            "polling": bool(poller and poller.is_polling),
            "total_logs": poller.total_log_count if poller else 0,
        }

    async def close(self) -> None:
        try:
            if self.poller is not None:
                await self.poller.stop_polling()
            await self.scheduler.cancel_all()
        finally:
            if self.api is not None:
                await self.api.close()
            if self.webhooks is not None:
                await self.webhooks.close()
            if self._session is not None and not self._session.closed:
                await self._session.close()
        log.info("GroupSentry closed")
