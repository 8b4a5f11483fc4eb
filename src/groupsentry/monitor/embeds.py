from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

import discord

from ..constants import (
    COLORS,
    FOOTER_TEXT,
    MAX_FIELD_NAME,
    MAX_FIELD_VALUE,
    MAX_RECENT_ACTIONS_IN_ALERT,
    SECURITY_FOOTER_TEXT,
)
from ..utils import safe_embed, truncate_text, utcnow
from .events import style_for
from .models import SecurityAction, SecurityIncident

MODERATION_STYLES = {
    "warning": ("User Warned", COLORS["warning"], "⚠️"),
    "kick": ("User Kicked", 0xFF9800, "👢"),
    "ban": ("User Banned", COLORS["error"], "🔨"),
}


def _field(embed: discord.Embed, name: str, value: str, *, inline: bool) -> None:
    embed.add_field(
        name=truncate_text(name, MAX_FIELD_NAME),
        value=truncate_text(value or "N/A", MAX_FIELD_VALUE),
        inline=inline,
    )


def audit_event_embed(
    event_type: str,
    actor: Optional[str],
    target: Optional[str],
    description: Optional[str],
    *,
    timestamp: Optional[datetime] = None,
) -> discord.Embed:
    style = style_for(event_type)
    lines = [f"**Actor:** {actor or 'Unknown'}"]
    if target:
        lines.append(f"**Target:** {target}")
    if description:
        lines.append(f"**Details:** {description}")
    embed = safe_embed(style.heading, "\n".join(lines), style.color)
    embed.set_footer(text=FOOTER_TEXT)
    embed.timestamp = timestamp or utcnow()
    return embed


def incident_title(incident_type: str) -> str:
    return f"🚨 Security Alert: {incident_type.replace('_', ' ').upper()}"


def format_recent_actions(actions: Sequence[SecurityAction]) -> str:
    return "\n".join(
        f"• {a.action_time:%H:%M:%S} - {a.action_type} → {a.target_display_name or 'N/A'}"
        for a in actions[:MAX_RECENT_ACTIONS_IN_ALERT]
    )


def security_alert_embed(incident: SecurityIncident, recent_actions: Sequence[SecurityAction]) -> discord.Embed:
    embed = safe_embed(incident_title(incident.incident_type), incident.details, COLORS["alert"])
    _field(embed, "User", f"{incident.actor_display_name}\n`{incident.actor_user_id}`", inline=True)
    _field(embed, "Action Count", f"{incident.action_count}/{incident.threshold}", inline=True)
    _field(embed, "Timeframe", f"{incident.timeframe_minutes} minutes", inline=True)
    _field(embed, "Roles Removed", "✓ Yes" if incident.roles_removed else "✗ No", inline=True)
    _field(embed, "Detected At", incident.detected_at.strftime("%Y-%m-%d %H:%M:%S UTC"), inline=False)
    if recent_actions:
        _field(
            embed,
            f"Recent Actions ({incident.action_count} total)",
            format_recent_actions(recent_actions),
            inline=False,
        )
    embed.set_footer(text=SECURITY_FOOTER_TEXT)
    embed.timestamp = incident.detected_at
    return embed


def webhook_test_embed() -> discord.Embed:
    embed = safe_embed(
        "✅ Webhook Connected!",
        "VRC Group Sentry is now connected to this channel.\n\nYou will receive notifications based on your settings.",
        COLORS["success"],
    )
    embed.set_footer(text=FOOTER_TEXT)
    embed.timestamp = utcnow()
    return embed


def moderation_action_embed(
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
) -> discord.Embed:
    kind = action_type.lower()
    title, color, emoji = MODERATION_STYLES.get(kind, ("Moderation Action", COLORS["default"], "📋"))
    when = action_time or utcnow()

    lines = [
        f"**Target:** [{target_name}](https://vrchat.com/home/user/{target_user_id})",
        f"**User ID:** `{target_user_id}`",
        f"**Moderator:** {actor_name}",
        f"**Reason:** {reason}",
    ]
    if description:
        lines.append(f"**Details:** {description}")
    lines.append(f"**Time:** {discord.utils.format_dt(when, 'F')}")
    if expires_at is not None:
        lines.append(f"**Expires:** {discord.utils.format_dt(expires_at, 'R')}")
    elif kind == "ban":
        lines.append("**Duration:** Permanent")
    if infraction_count:
        lines.append(f"**Previous Infractions:** {infraction_count}")

    embed = safe_embed(f"{emoji} {title}", "\n".join(lines), color)
    embed.set_footer(text=FOOTER_TEXT)
    embed.timestamp = when
    return embed
