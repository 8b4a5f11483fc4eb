from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SecurityCategory:
    """A monitored kind of moderation action and its default threshold."""

    key: str
    incident_type: str
    label: str
    default_threshold: int
    default_timeframe_minutes: int = 10
    aliases: tuple[str, ...] = ()


SECURITY_CATEGORIES: tuple[SecurityCategory, ...] = (
    SecurityCategory("instance_kick", "excessive_instance_kicks", "instance kicks", 10),
    SecurityCategory("group_kick", "excessive_group_kicks", "group kicks", 5),
    SecurityCategory("instance_ban", "excessive_instance_bans", "instance bans", 10),
    SecurityCategory("group_ban", "excessive_group_bans", "group bans", 3),
    SecurityCategory("role_remove", "excessive_role_removals", "role removals", 5, aliases=("group.role.remove",)),
    SecurityCategory("invite_reject", "excessive_invite_rejections", "invite rejections", 10, aliases=("group.invite.reject",)),
    SecurityCategory(
        "post_delete",
        "excessive_deletions",
        "post deletions",
        5,
        aliases=("group.post.delete", "group.announcement.delete", "group.gallery.delete"),
    ),
)

CATEGORY_KEYS: tuple[str, ...] = tuple(c.key for c in SECURITY_CATEGORIES)

_BY_ACTION: dict[str, SecurityCategory] = {}
for _cat in SECURITY_CATEGORIES:
    _BY_ACTION[_cat.key] = _cat
    for _alias in _cat.aliases:
        _BY_ACTION[_alias] = _cat


def category_for(action_type: str) -> Optional[SecurityCategory]:
    return _BY_ACTION.get(action_type.strip().lower())


@dataclass(frozen=True)
class AuditSecurityMapping:
    """Maps an audit event type to the tracked action; instance variant when the entry names an instance."""

    group_action: str
    instance_action: Optional[str] = None


AUDIT_SECURITY_ACTIONS: dict[str, AuditSecurityMapping] = {
    "group.user.kick": AuditSecurityMapping("group_kick", "instance_kick"),
    "group.member.kick": AuditSecurityMapping("group_kick", "instance_kick"),
    "group.user.ban": AuditSecurityMapping("group_ban", "instance_ban"),
    "group.member.ban": AuditSecurityMapping("group_ban", "instance_ban"),
    "group.user.role.remove": AuditSecurityMapping("role_remove"),
    "group.member.role.remove": AuditSecurityMapping("role_remove"),
    "group.role.remove": AuditSecurityMapping("role_remove"),
    "group.invite.reject": AuditSecurityMapping("invite_reject"),
    "group.post.delete": AuditSecurityMapping("post_delete"),
    "group.announcement.delete": AuditSecurityMapping("post_delete"),
    "group.gallery.delete": AuditSecurityMapping("post_delete"),
}


def is_instance_action(raw_data: Optional[str]) -> bool:
    if not raw_data:
        return False
    try:
        data = json.loads(raw_data)
    except ValueError:
        return False
    return isinstance(data, dict) and "instanceId" in data


def security_action_for(event_type: str, raw_data: Optional[str] = None) -> Optional[str]:
    mapping = AUDIT_SECURITY_ACTIONS.get(event_type.strip().lower())
    if mapping is None:
        return None
    if mapping.instance_action and is_instance_action(raw_data):
        return mapping.instance_action
    return mapping.group_action
