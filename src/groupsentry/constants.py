from __future__ import annotations

from typing import Final

# Discord embed limits
MAX_MESSAGE_LENGTH: Final[int] = 2000
MAX_EMBED_DESCRIPTION: Final[int] = 4096
MAX_EMBED_TITLE: Final[int] = 256
MAX_FIELD_NAME: Final[int] = 256
MAX_FIELD_VALUE: Final[int] = 1024

# Storage
CACHE_TTL_SECONDS: Final[int] = 120
SCHEMA_VERSION: Final[int] = 1

# Polling
POLL_INTERVAL_SECONDS: Final[int] = 60
AUDIT_PAGE_SIZE: Final[int] = 100
MAX_NOTIFICATIONS_PER_POLL: Final[int] = 10
MAX_RECENT_ACTIONS_IN_ALERT: Final[int] = 10

VRCHAT_API_BASE_URL: Final[str] = "https://api.vrchat.cloud/api/1"
USER_AGENT: Final[str] = "groupsentry/0.3 (audit-monitor)"

FOOTER_TEXT: Final[str] = "VRC Group Sentry"
SECURITY_FOOTER_TEXT: Final[str] = "VRC Group Sentry - Security Monitor"
SECURITY_ALERT_BANNER: Final[str] = "⚠️ **SECURITY INCIDENT DETECTED** ⚠️"

# Colors (hex values)
COLORS = {
    "default": 0x757575,
    "success": 0x4CAF50,
    "warning": 0xFFC107,
    "error": 0xF44336,
    "alert": 0xFF0000,
    "info": 0x2196F3,
}
