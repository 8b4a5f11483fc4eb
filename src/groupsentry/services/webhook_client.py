from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import aiohttp
import discord

log = logging.getLogger("groupsentry.webhook")


class DiscordWebhookClient:
    """Sends embeds to Discord webhooks through one shared aiohttp session."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, *, username: Optional[str] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self._username = username

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def send(
        self,
        url: str,
        *,
        embeds: Sequence[discord.Embed],
        content: Optional[str] = None,
    ) -> None:
        """Post one message; raises ``ValueError`` for a bad URL and ``discord.HTTPException`` on rejection."""
        webhook = discord.Webhook.from_url(url, session=self._get_session())
        kwargs: dict[str, Any] = {"embeds": list(embeds), "wait": True}
        if content:
            kwargs["content"] = content
        if self._username:
            kwargs["username"] = self._username
        await webhook.send(**kwargs)
        log.debug("Webhook message delivered (%d embeds)", len(embeds))

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
