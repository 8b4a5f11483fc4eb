from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..constants import MAX_RECENT_ACTIONS_IN_ALERT
from ..services.group_config_store import GroupConfigStore
from ..services.security_action_store import SecurityActionStore
from ..services.security_incident_store import SecurityIncidentStore
from ..utils import KeyedLocks, utcnow
from .categories import security_action_for
from .dispatcher import NotificationDispatcher
from .models import AuditLogEntry, SecurityAction, SecurityIncident
from .policy import ConfigResolver, EffectivePolicy, GroupPolicy, ThresholdPolicy
from .remediation import RemediationExecutor

log = logging.getLogger("groupsentry.security")


class SecurityMonitor:
    """Sliding-window detection of moderation bursts.

    Each tracked action is appended to the action log; when an actor's count
    of one action type inside the category's window reaches the threshold an
    incident is opened (at most one unresolved incident per actor, type and
    window), roles are stripped and an alert is sent. Evaluation for one
    ``(group, actor, action_type)`` is serialised so concurrent calls cannot
    open duplicate incidents.
    """

    def __init__(
        self,
        actions: SecurityActionStore,
        incidents: SecurityIncidentStore,
        resolver: ConfigResolver,
        remediation: RemediationExecutor,
        dispatcher: NotificationDispatcher,
        group_configs: Optional[GroupConfigStore] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._actions = actions
        self._incidents = incidents
        self._resolver = resolver
        self._remediation = remediation
        self._dispatcher = dispatcher
        self._group_configs = group_configs
        self._clock = clock
        self._locks = KeyedLocks()

    async def _group_policy(self, group_id: str) -> Optional[GroupPolicy]:
        if self._group_configs is None:
            return None
        return await self._group_configs.get(group_id)

    async def _effective(self, group_id: str) -> tuple[Optional[GroupPolicy], EffectivePolicy]:
        group = await self._group_policy(group_id)
        return group, self._resolver.resolve(group)

    async def is_enabled(self, group_id: str) -> bool:
        try:
            _, policy = await self._effective(group_id)
        except Exception:
            log.exception("Could not resolve policy for %s", group_id)
            return False
        return policy.monitoring_enabled

    async def track_action(
        self,
        group_id: str,
        actor_id: str,
        actor_name: str,
        action_type: str,
        target_id: Optional[str] = None,
        target_name: Optional[str] = None,
        extra: Optional[str] = None,
    ) -> bool:
        """Record one moderation action and evaluate its threshold.

        Returns ``False`` when the action was not tracked (monitoring off,
        unknown or disabled category, or an internal error).
        """
        try:
            group, policy = await self._effective(group_id)
            if not policy.monitoring_enabled:
                return False
            threshold = policy.threshold_for(action_type)
            if threshold is None:
                log.debug("Ignoring untracked action type %r", action_type)
                return False
            if not threshold.enabled:
                return False

            key = (group_id, actor_id, threshold.category.key)
            async with self._locks.get(key):
                await self._record_and_evaluate(
                    group, policy, threshold, group_id, actor_id, actor_name, target_id, target_name, extra
                )
            return True
        except Exception:
            log.exception("Failed to track %s by %s in %s", action_type, actor_id, group_id)
            return False

    async def _record_and_evaluate(
        self,
        group: Optional[GroupPolicy],
        policy: EffectivePolicy,
        threshold: ThresholdPolicy,
        group_id: str,
        actor_id: str,
        actor_name: str,
        target_id: Optional[str],
        target_name: Optional[str],
        extra: Optional[str],
    ) -> None:
        action_type = threshold.category.key
        now = self._clock()
        await self._actions.add(
            SecurityAction(
                group_id=group_id,
                actor_user_id=actor_id,
                actor_display_name=actor_name or "",
                action_type=action_type,
                action_time=now,
                target_user_id=target_id,
                target_display_name=target_name,
                additional_data=extra,
            )
        )
        if policy.log_all_actions:
            log.info("Tracked %s by %s (%s) -> %s", action_type, actor_name, actor_id, target_name or target_id or "N/A")

        if not threshold.evaluates:
            return

        cutoff = now - timedelta(minutes=threshold.timeframe_minutes)
        count = await self._actions.count_recent(group_id, actor_id, action_type, cutoff)
        log.debug(
            "%s has %d/%d %s actions in the last %d minutes",
            actor_name, count, threshold.threshold, action_type, threshold.timeframe_minutes,
        )
        if count < threshold.threshold:
            return

        existing = await self._incidents.find_open(group_id, actor_id, threshold.incident_type, cutoff)
        if existing is not None:
            log.debug("Incident %s already open for %s; not opening another", existing.incident_id, actor_id)
            return

        log.warning(
            "Threshold exceeded: %s performed %d %s actions in %d minutes (threshold %d)",
            actor_name, count, action_type, threshold.timeframe_minutes, threshold.threshold,
        )
        incident = SecurityIncident(
            incident_id=str(uuid.uuid4()),
            group_id=group_id,
            actor_user_id=actor_id,
            actor_display_name=actor_name or "",
            incident_type=threshold.incident_type,
            action_count=count,
            timeframe_minutes=threshold.timeframe_minutes,
            threshold=threshold.threshold,
            detected_at=now,
            details=(
                f"User performed {count} {action_type} actions within {threshold.timeframe_minutes} minutes, "
                f"exceeding threshold of {threshold.threshold}"
            ),
        )
        await self._incidents.create(incident)

        if policy.auto_remove_roles:
            incident = await self._remediation.remediate(incident, policy)

        if policy.notify_discord:
            recent = await self._actions.recent(group_id, actor_id, action_type, cutoff, limit=MAX_RECENT_ACTIONS_IN_ALERT)
            await self._dispatcher.dispatch_security_alert(incident, recent, group)

    async def track_audit_entry(self, entry: AuditLogEntry) -> bool:
        """Feed an ingested audit entry into detection when it maps to a monitored action."""
        action_type = security_action_for(entry.event_type, entry.raw_data)
        if action_type is None or not entry.actor_id:
            return False
        return await self.track_action(
            entry.group_id,
            entry.actor_id,
            entry.actor_name or "",
            action_type,
            entry.target_id,
            entry.target_name,
            entry.raw_data,
        )

    async def get_recent_incidents(self, group_id: str, days_back: int = 7) -> list[SecurityIncident]:
        try:
            return await self._incidents.recent_for_group(group_id, self._clock() - timedelta(days=days_back))
        except Exception:
            log.exception("Failed to load incidents for %s", group_id)
            return []

    async def get_user_actions(self, group_id: str, user_id: str, hours_back: int = 24) -> list[SecurityAction]:
        try:
            return await self._actions.for_user(group_id, user_id, self._clock() - timedelta(hours=hours_back))
        except Exception:
            log.exception("Failed to load actions of %s in %s", user_id, group_id)
            return []

    async def get_all_security_actions(self, group_id: str, days_back: int = 7) -> list[SecurityAction]:
        try:
            return await self._actions.for_group(group_id, self._clock() - timedelta(days=days_back))
        except Exception:
            log.exception("Failed to load actions for %s", group_id)
            return []

    async def clear_old_security_actions(self, group_id: str, days_old: int = 7) -> int:
        try:
            removed = await self._actions.purge_older_than(group_id, self._clock() - timedelta(days=days_old))
        except Exception:
            log.exception("Failed to purge old actions for %s", group_id)
            return 0
        log.info("Purged %d security actions older than %d days in %s", removed, days_old, group_id)
        return removed

    async def resolve_incident(self, incident_id: str) -> bool:
        try:
            return await self._incidents.resolve(incident_id, self._clock())
        except Exception:
            log.exception("Failed to resolve incident %s", incident_id)
            return False

