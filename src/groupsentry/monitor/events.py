"""Audit event kinds: notification toggle and embed style per event type.

Both the ``group.user.*`` and ``group.member.*`` spellings of member events
are accepted; VRChat has used both over time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AuditEventKind:
    event_types: tuple[str, ...]
    toggle: str
    title: str
    color: int
    emoji: str


@dataclass(frozen=True)
class EventStyle:
    title: str
    color: int
    emoji: str

    @property
    def heading(self) -> str:
        return f"{self.emoji} {self.title}"


DEFAULT_STYLE = EventStyle(title="Notification", color=0x757575, emoji="📋")

# Toggles that ship disabled; every other toggle defaults to on.
DEFAULT_OFF_TOGGLES = frozenset({"instance_opened", "instance_closed"})

AUDIT_EVENT_KINDS: tuple[AuditEventKind, ...] = (
    # Members
    AuditEventKind(("group.user.join", "group.member.join"), "user_joins", "Member Joined", 0x4CAF50, "👋"),
    AuditEventKind(("group.user.leave", "group.member.leave"), "user_leaves", "Member Left", 0x9E9E9E, "🚪"),
    AuditEventKind(("group.user.kick", "group.member.kick"), "user_kicked", "Member Kicked", 0xFF9800, "👢"),
    AuditEventKind(("group.user.ban", "group.member.ban"), "user_banned", "Member Banned", 0xF44336, "🔨"),
    AuditEventKind(("group.user.unban", "group.member.unban"), "user_unbanned", "Member Unbanned", 0x4CAF50, "✅"),
    AuditEventKind(("group.user.role.add", "group.member.role.add"), "user_role_add", "Role Added", 0x9C27B0, "➕"),
    AuditEventKind(("group.user.role.remove", "group.member.role.remove"), "user_role_remove", "Role Removed", 0xFF5722, "➖"),
    # Join requests
    AuditEventKind(("group.request.create", "group.user.join_request", "group.joinRequest"), "join_requests", "Join Request", 0x7C4DFF, "📥"),
    AuditEventKind(("group.request.accept",), "join_requests", "Join Request Accepted", 0x4CAF50, "✔️"),
    AuditEventKind(("group.request.reject",), "join_requests", "Join Request Rejected", 0xFF5722, "❌"),
    AuditEventKind(("group.request.block",), "join_requests", "Join Requests Blocked", 0xF44336, "⛔"),
    AuditEventKind(("group.request.unblock",), "join_requests", "Join Requests Unblocked", 0x8BC34A, "🔓"),
    # Roles
    AuditEventKind(("group.role.create",), "role_create", "Role Created", 0x00BCD4, "🎭"),
    AuditEventKind(("group.role.update",), "role_update", "Role Updated", 0x9C27B0, "🏷️"),
    AuditEventKind(("group.role.delete",), "role_delete", "Role Deleted", 0xF44336, "🗑️"),
    # Instances
    AuditEventKind(("group.instance.create",), "instance_create", "Instance Created", 0x03A9F4, "🌍"),
    AuditEventKind(("group.instance.delete",), "instance_delete", "Instance Deleted", 0x9E9E9E, "🚫"),
    AuditEventKind(("group.instance.open",), "instance_opened", "Instance Opened", 0x2196F3, "🌐"),
    AuditEventKind(("group.instance.close",), "instance_closed", "Instance Closed", 0x9E9E9E, "🔒"),
    AuditEventKind(("group.instance.warn",), "instance_warn", "Instance Warning Issued", 0xFFC107, "⚠️"),
    # Group
    AuditEventKind(("group.update",), "group_update", "Group Updated", 0xFFC107, "⚙️"),
    # Invites
    AuditEventKind(("group.invite.create", "group.user.invite"), "invite_create", "Invite Sent", 0x8BC34A, "💌"),
    AuditEventKind(("group.invite.accept",), "invite_accept", "Invite Accepted", 0x4CAF50, "✔️"),
    AuditEventKind(("group.invite.reject",), "invite_reject", "Invite Rejected", 0xFF5722, "❌"),
    # Announcements, gallery, posts
    AuditEventKind(("group.announcement.create",), "announcement_create", "Announcement Posted", 0xFF9800, "📢"),
    AuditEventKind(("group.announcement.delete",), "announcement_delete", "Announcement Deleted", 0x757575, "🗑️"),
    AuditEventKind(("group.gallery.create",), "gallery_create", "Gallery Item Added", 0xE91E63, "🖼️"),
    AuditEventKind(("group.gallery.delete",), "gallery_delete", "Gallery Item Removed", 0x9E9E9E, "🗑️"),
    AuditEventKind(("group.post.create",), "post_create", "Post Created", 0x2196F3, "📝"),
    AuditEventKind(("group.post.delete",), "post_delete", "Post Deleted", 0x757575, "🗑️"),
)

_BY_EVENT_TYPE: dict[str, AuditEventKind] = {
    event_type: kind for kind in AUDIT_EVENT_KINDS for event_type in kind.event_types
}

# Stable, de-duplicated toggle names in table order.
EVENT_TOGGLES: tuple[str, ...] = tuple(dict.fromkeys(kind.toggle for kind in AUDIT_EVENT_KINDS))


def kind_for(event_type: str) -> Optional[AuditEventKind]:
    return _BY_EVENT_TYPE.get(event_type)


def style_for(event_type: str) -> EventStyle:
    kind = kind_for(event_type)
    if kind is None:
        return DEFAULT_STYLE
    return EventStyle(title=kind.title, color=kind.color, emoji=kind.emoji)


def default_toggles() -> dict[str, bool]:
    return {toggle: toggle not in DEFAULT_OFF_TOGGLES for toggle in EVENT_TOGGLES}
