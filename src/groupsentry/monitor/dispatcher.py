from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

import aiohttp
import discord

from ..constants import SECURITY_ALERT_BANNER
from ..interfaces import WebhookSender
from ..services.security_incident_store import SecurityIncidentStore
from ..utils import utcnow
from .embeds import audit_event_embed, moderation_action_embed, security_alert_embed, webhook_test_embed
from .models import SecurityAction, SecurityIncident
from .policy import ConfigResolver, GroupPolicy

log = logging.getLogger("groupsentry.dispatcher")


@dataclass(frozen=True)
class WebhookTestResult:
    success: bool
    status_code: Optional[int] = None
    error_message: Optional[str] = None


class NotificationDispatcher:
    """Turns audit events, incidents and moderation actions into webhook messages.

    Every dispatch makes one send attempt and reports the outcome as a bool;
    delivery failures are logged and never raised to the caller.
    """

    def __init__(
        self,
        sender: WebhookSender,
        resolver: ConfigResolver,
        incidents: Optional[SecurityIncidentStore] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sender = sender
        self._resolver = resolver
        self._incidents = incidents
        self._clock = clock

    async def _deliver(self, url: str, embeds: Sequence[discord.Embed], *, content: Optional[str] = None, what: str) -> bool:
        try:
            await self._sender.send(url, embeds=embeds, content=content)
            return True
        except discord.HTTPException as e:
            log.warning("Webhook rejected %s: %s %s", what, e.status, e.text)
        except (aiohttp.ClientError, ValueError) as e:
            log.warning("Webhook delivery of %s failed: %s", what, e)
        except Exception:
            log.exception("Unexpected error delivering %s", what)
        return False

    async def dispatch_audit_event(
        self,
        event_type: str,
        actor: Optional[str],
        target: Optional[str],
        description: Optional[str],
        explicit_webhook: Optional[str] = None,
        group_policy: Optional[GroupPolicy] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        policy = self._resolver.resolve(group_policy)
        target_info = policy.notification_for(event_type, explicit_webhook)
        if not target_info.webhook_url:
            log.info("No webhook configured; skipping %s", event_type)
            return False
        if not target_info.enabled:
            log.debug("Notifications for %s are disabled", event_type)
            return False

        embed = audit_event_embed(event_type, actor, target, description, timestamp=timestamp)
        return await self._deliver(target_info.webhook_url, [embed], what=event_type)

    async def dispatch_security_alert(
        self,
        incident: SecurityIncident,
        recent_actions: Sequence[SecurityAction],
        group_policy: Optional[GroupPolicy] = None,
    ) -> bool:
        policy = self._resolver.resolve(group_policy)
        url = policy.security_alert_webhook_url
        if not url:
            log.warning("No webhook configured for security alerts (incident %s)", incident.incident_id)
            return False

        embed = security_alert_embed(incident, recent_actions)
        ok = await self._deliver(url, [embed], content=SECURITY_ALERT_BANNER, what=f"security alert {incident.incident_id}")
        if not ok:
            return False

        if self._incidents is not None:
            try:
                await self._incidents.mark_notified(incident.incident_id, self._clock())
            except Exception:
                log.exception("Alert sent but could not mark incident %s notified", incident.incident_id)
        log.info("Security alert sent for incident %s", incident.incident_id)
        return True

    async def dispatch_moderation_action(
        self,
        action_type: str,
        target_user_id: str,
        target_name: str,
        actor_name: str,
        reason: str,
        *,
        description: Optional[str] = None,
        action_time: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        infraction_count: Optional[int] = None,
        group_policy: Optional[GroupPolicy] = None,
    ) -> bool:
        policy = self._resolver.resolve(group_policy)
        if not policy.webhook_url:
            log.info("No webhook configured; skipping %s notice for %s", action_type, target_user_id)
            return False
        embed = moderation_action_embed(
            action_type,
            target_user_id,
            target_name,
            actor_name,
            reason,
            description=description,
            action_time=action_time or self._clock(),
            expires_at=expires_at,
            infraction_count=infraction_count,
        )
        return await self._deliver(policy.webhook_url, [embed], what=f"{action_type} notice")

    async def test_webhook(self, url: Optional[str]) -> WebhookTestResult:
        if not url or not url.strip():
            return WebhookTestResult(success=False, error_message="Webhook URL is empty")
        try:
            await self._sender.send(url.strip(), embeds=[webhook_test_embed()])
        except discord.HTTPException as e:
            return WebhookTestResult(success=False, status_code=e.status, error_message=e.text or str(e))
        except (aiohttp.ClientError, ValueError) as e:
            return WebhookTestResult(success=False, error_message=str(e))
        return WebhookTestResult(success=True)
