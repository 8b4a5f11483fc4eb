from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .constants import (
    AUDIT_PAGE_SIZE,
    CACHE_TTL_SECONDS,
    MAX_NOTIFICATIONS_PER_POLL,
    POLL_INTERVAL_SECONDS,
    VRCHAT_API_BASE_URL,
)
from .monitor.categories import SECURITY_CATEGORIES
from .monitor.events import EVENT_TOGGLES, default_toggles
from .monitor.policy import CategoryPolicy, GlobalPolicy


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or default


@dataclass(frozen=True)
class Settings:
    auth_cookie: str
    group_id: str
    user_id: Optional[str]
    api_base_url: str
    sqlite_path: str
    log_level: str
    cache_default_ttl_seconds: int
    api_min_interval_ms: int
    poll_interval_seconds: int
    audit_page_size: int
    max_notifications_per_poll: int
    notification_spacing_ms: int
    historical_page_delay_ms: int
    # Pages to back-fill at startup; 0 skips the historical fetch.
    historical_pages_on_start: int = 0
    # Health endpoint port; 0 disables the web server.
    health_port: int = 0


def load_settings() -> Settings:
    auth_cookie = _get_str("VRCHAT_AUTH_COOKIE")
    if not auth_cookie:
        raise RuntimeError("VRCHAT_AUTH_COOKIE is required")
    group_id = _get_str("VRCHAT_GROUP_ID")
    if not group_id:
        raise RuntimeError("VRCHAT_GROUP_ID is required")
    return Settings(
        auth_cookie=auth_cookie,
        group_id=group_id,
        user_id=_get_str("VRCHAT_USER_ID"),
        api_base_url=_get_str("VRCHAT_API_BASE_URL", VRCHAT_API_BASE_URL),
        sqlite_path=_get_str("SQLITE_PATH", "groupsentry.sqlite3"),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        cache_default_ttl_seconds=_get_int("CACHE_DEFAULT_TTL_SECONDS", CACHE_TTL_SECONDS),
        api_min_interval_ms=_get_int("API_MIN_INTERVAL_MS", 100),
        poll_interval_seconds=_get_int("POLL_INTERVAL_SECONDS", POLL_INTERVAL_SECONDS),
        audit_page_size=_get_int("AUDIT_PAGE_SIZE", AUDIT_PAGE_SIZE),
        max_notifications_per_poll=_get_int("MAX_NOTIFICATIONS_PER_POLL", MAX_NOTIFICATIONS_PER_POLL),
        notification_spacing_ms=_get_int("NOTIFICATION_SPACING_MS", 500),
        historical_page_delay_ms=_get_int("HISTORICAL_PAGE_DELAY_MS", 1000),
        historical_pages_on_start=_get_int("HISTORICAL_PAGES_ON_START", 0),
        health_port=_get_int("HEALTH_PORT", 0),
    )


def load_global_policy() -> GlobalPolicy:
    """Global notification and security policy from the environment.

    Event toggles read ``DISCORD_NOTIFY_<TOGGLE>``; categories read
    ``SECURITY_<CATEGORY>_ENABLED``, ``_THRESHOLD`` and ``_TIMEFRAME_MINUTES``.
    """
    toggles = default_toggles()
    for toggle in EVENT_TOGGLES:
        toggles[toggle] = _get_bool(f"DISCORD_NOTIFY_{toggle.upper()}", toggles[toggle])

    categories: dict[str, CategoryPolicy] = {}
    for category in SECURITY_CATEGORIES:
        prefix = f"SECURITY_{category.key.upper()}"
        categories[category.key] = CategoryPolicy(
            enabled=_get_bool(f"{prefix}_ENABLED", True),
            threshold=max(0, _get_int(f"{prefix}_THRESHOLD", category.default_threshold)),
            timeframe_minutes=max(0, _get_int(f"{prefix}_TIMEFRAME_MINUTES", category.default_timeframe_minutes)),
        )

    return GlobalPolicy(
        webhook_url=_get_str("DISCORD_WEBHOOK_URL"),
        security_alert_webhook_url=_get_str("SECURITY_ALERT_WEBHOOK_URL"),
        event_toggles=toggles,
        monitoring_enabled=_get_bool("SECURITY_MONITORING_ENABLED", False),
        auto_remove_roles=_get_bool("SECURITY_AUTO_REMOVE_ROLES", True),
        require_owner_role=_get_bool("SECURITY_REQUIRE_OWNER_ROLE", True),
        owner_user_id=_get_str("SECURITY_OWNER_USER_ID", "") or "",
        notify_discord=_get_bool("SECURITY_NOTIFY_DISCORD", True),
        log_all_actions=_get_bool("SECURITY_LOG_ALL_ACTIONS", True),
        categories=categories,
    )
