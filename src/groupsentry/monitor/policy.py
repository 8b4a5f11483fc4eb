"""Group-over-global policy resolution.

Global values come from the environment (see ``config.load_global_policy``);
a ``GroupPolicy`` carries optional per-group overrides where ``None`` means
"inherit". ``ConfigResolver.resolve`` merges the two once into an
``EffectivePolicy`` which every decision point then reads from.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Optional

from .categories import CATEGORY_KEYS, SECURITY_CATEGORIES, SecurityCategory, category_for
from .events import default_toggles, kind_for


@dataclass(frozen=True)
class CategoryPolicy:
    enabled: bool = True
    threshold: int = 5
    timeframe_minutes: int = 10


@dataclass(frozen=True)
class CategoryOverride:
    enabled: Optional[bool] = None
    threshold: Optional[int] = None
    timeframe_minutes: Optional[int] = None

    def apply(self, base: CategoryPolicy) -> CategoryPolicy:
        return CategoryPolicy(
            enabled=base.enabled if self.enabled is None else self.enabled,
            threshold=base.threshold if self.threshold is None else self.threshold,
            timeframe_minutes=base.timeframe_minutes if self.timeframe_minutes is None else self.timeframe_minutes,
        )


def default_categories() -> dict[str, CategoryPolicy]:
    return {
        c.key: CategoryPolicy(enabled=True, threshold=c.default_threshold, timeframe_minutes=c.default_timeframe_minutes)
        for c in SECURITY_CATEGORIES
    }


@dataclass(frozen=True)
class GlobalPolicy:
    webhook_url: Optional[str] = None
    security_alert_webhook_url: Optional[str] = None
    event_toggles: Mapping[str, bool] = field(default_factory=default_toggles)
    monitoring_enabled: bool = False
    auto_remove_roles: bool = True
    require_owner_role: bool = True
    owner_user_id: str = ""
    notify_discord: bool = True
    log_all_actions: bool = True
    categories: Mapping[str, CategoryPolicy] = field(default_factory=default_categories)


def _opt_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


def _opt_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class GroupPolicy:
    group_id: str
    group_name: str = ""
    webhook_url: Optional[str] = None
    security_alert_webhook_url: Optional[str] = None
    event_toggles: Mapping[str, bool] = field(default_factory=dict)
    monitoring_enabled: Optional[bool] = None
    auto_remove_roles: Optional[bool] = None
    require_owner_role: Optional[bool] = None
    owner_user_id: Optional[str] = None
    notify_discord: Optional[bool] = None
    log_all_actions: Optional[bool] = None
    categories: Mapping[str, CategoryOverride] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "webhook_url": self.webhook_url,
            "security_alert_webhook_url": self.security_alert_webhook_url,
            "event_toggles": dict(self.event_toggles),
            "monitoring_enabled": self.monitoring_enabled,
            "auto_remove_roles": self.auto_remove_roles,
            "require_owner_role": self.require_owner_role,
            "owner_user_id": self.owner_user_id,
            "notify_discord": self.notify_discord,
            "log_all_actions": self.log_all_actions,
            "categories": {
                key: {"enabled": o.enabled, "threshold": o.threshold, "timeframe_minutes": o.timeframe_minutes}
                for key, o in self.categories.items()
            },
        }

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "GroupPolicy":
        categories: dict[str, CategoryOverride] = {}
        for key, raw in (doc.get("categories") or {}).items():
            if key not in CATEGORY_KEYS or not isinstance(raw, Mapping):
                continue
            categories[key] = CategoryOverride(
                enabled=_opt_bool(raw.get("enabled")),
                threshold=_opt_int(raw.get("threshold")),
                timeframe_minutes=_opt_int(raw.get("timeframe_minutes")),
            )
        return cls(
            group_id=str(doc["group_id"]),
            group_name=str(doc.get("group_name") or ""),
            webhook_url=_opt_str(doc.get("webhook_url")),
            security_alert_webhook_url=_opt_str(doc.get("security_alert_webhook_url")),
            event_toggles={str(k): bool(v) for k, v in (doc.get("event_toggles") or {}).items() if v is not None},
            monitoring_enabled=_opt_bool(doc.get("monitoring_enabled")),
            auto_remove_roles=_opt_bool(doc.get("auto_remove_roles")),
            require_owner_role=_opt_bool(doc.get("require_owner_role")),
            owner_user_id=_opt_str(doc.get("owner_user_id")),
            notify_discord=_opt_bool(doc.get("notify_discord")),
            log_all_actions=_opt_bool(doc.get("log_all_actions")),
            categories=categories,
        )


@dataclass(frozen=True)
class ThresholdPolicy:
    category: SecurityCategory
    enabled: bool
    threshold: int
    timeframe_minutes: int

    @property
    def incident_type(self) -> str:
        return self.category.incident_type

    @property
    def evaluates(self) -> bool:
        return self.threshold > 0 and self.timeframe_minutes > 0


WebhookSource = Literal["explicit", "group", "global", "none"]


@dataclass(frozen=True)
class NotificationTarget:
    webhook_url: Optional[str]
    source: WebhookSource
    enabled: bool


@dataclass(frozen=True)
class EffectivePolicy:
    group_id: Optional[str]
    webhook_url: Optional[str]
    webhook_source: WebhookSource
    security_alert_webhook_url: Optional[str]
    event_toggles: Mapping[str, bool]
    monitoring_enabled: bool
    auto_remove_roles: bool
    require_owner_role: bool
    owner_user_id: str
    notify_discord: bool
    log_all_actions: bool
    categories: Mapping[str, CategoryPolicy]

    def event_enabled(self, event_type: str) -> bool:
        kind = kind_for(event_type)
        if kind is None:
            return False
        return bool(self.event_toggles.get(kind.toggle, False))

    def notification_for(self, event_type: str, explicit_webhook: Optional[str] = None) -> NotificationTarget:
        explicit = _opt_str(explicit_webhook)
        if explicit:
            url, source = explicit, "explicit"
        else:
            url, source = self.webhook_url, self.webhook_source
        return NotificationTarget(webhook_url=url, source=source, enabled=self.event_enabled(event_type))

    def threshold_for(self, action_type: str) -> Optional[ThresholdPolicy]:
        category = category_for(action_type)
        if category is None:
            return None
        cp = self.categories.get(category.key) or CategoryPolicy(
            threshold=category.default_threshold, timeframe_minutes=category.default_timeframe_minutes
        )
        return ThresholdPolicy(category=category, enabled=cp.enabled, threshold=cp.threshold, timeframe_minutes=cp.timeframe_minutes)


class ConfigResolver:
    def __init__(self, global_policy: GlobalPolicy) -> None:
        self.global_policy = global_policy

    def update_global(self, **changes: Any) -> None:
        self.global_policy = replace(self.global_policy, **changes)

    def resolve(self, group: Optional[GroupPolicy] = None) -> EffectivePolicy:
        g = self.global_policy

        def pick(group_value: Any, global_value: Any) -> Any:
            return global_value if group_value is None else group_value

        group_webhook = _opt_str(group.webhook_url) if group else None
        global_webhook = _opt_str(g.webhook_url)
        if group_webhook:
            webhook_url, webhook_source = group_webhook, "group"
        elif global_webhook:
            webhook_url, webhook_source = global_webhook, "global"
        else:
            webhook_url, webhook_source = None, "none"

        # Dedicated security URL (group over global), then the plain global webhook.
        security_url = (
            (_opt_str(group.security_alert_webhook_url) if group else None)
            or _opt_str(g.security_alert_webhook_url)
            or global_webhook
        )

        toggles = dict(default_toggles())
        toggles.update(g.event_toggles)
        categories = dict(default_categories())
        categories.update(g.categories)
        if group is not None:
            toggles.update(group.event_toggles)
            for key, override in group.categories.items():
                if key in categories:
                    categories[key] = override.apply(categories[key])

        return EffectivePolicy(
            group_id=group.group_id if group else None,
            webhook_url=webhook_url,
            webhook_source=webhook_source,
            security_alert_webhook_url=security_url,
            event_toggles=toggles,
            monitoring_enabled=pick(group.monitoring_enabled if group else None, g.monitoring_enabled),
            auto_remove_roles=pick(group.auto_remove_roles if group else None, g.auto_remove_roles),
            require_owner_role=pick(group.require_owner_role if group else None, g.require_owner_role),
            owner_user_id=pick(group.owner_user_id if group else None, g.owner_user_id) or "",
            notify_discord=pick(group.notify_discord if group else None, g.notify_discord),
            log_all_actions=pick(group.log_all_actions if group else None, g.log_all_actions),
            categories=categories,
        )
