"""
Interface contracts between the monitor core and its collaborators.

The poller, security monitor and remediation executor only talk to the
group API and the webhook sink through these protocols, so tests and
alternative transports can stand in for the concrete clients.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import discord


@runtime_checkable
class GroupApi(Protocol):
    """Remote group audit / moderation capability."""

    @property
    def current_user_id(self) -> Optional[str]:
        """Id of the authenticated user, when known."""
        ...

    async def fetch_audit_logs(self, group_id: str, count: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """One page of audit items, newest first."""
        ...

    async def get_member_role_ids(self, group_id: str, user_id: str) -> list[str]:
        ...

    async def remove_member_role(self, group_id: str, user_id: str, role_id: str) -> bool:
        ...

    async def add_member_role(self, group_id: str, user_id: str, role_id: str) -> bool:
        ...

    async def kick_member(self, group_id: str, user_id: str) -> bool:
        ...

    async def ban_member(self, group_id: str, user_id: str) -> bool:
        ...

    async def unban_member(self, group_id: str, user_id: str) -> bool:
        ...

    async def respond_to_join_request(self, group_id: str, user_id: str, action: str) -> bool:
        ...


@runtime_checkable
class WebhookSender(Protocol):
    """Delivers embeds to a Discord webhook URL; raises on failure."""

    async def send(
        self,
        url: str,
        *,
        embeds: Sequence[discord.Embed],
        content: Optional[str] = None,
    ) -> None:
        ...


def validate_group_api(api: object) -> GroupApi:
    """Validate and return the GroupApi interface."""
    if not isinstance(api, GroupApi):
        raise AttributeError(f"Object {api!r} does not implement GroupApi interface")
    return api


def validate_webhook_sender(sender: object) -> WebhookSender:
    """Validate and return the WebhookSender interface."""
    if not isinstance(sender, WebhookSender):
        raise AttributeError(f"Object {sender!r} does not implement WebhookSender interface")
    return sender
