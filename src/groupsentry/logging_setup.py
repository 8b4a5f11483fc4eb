from __future__ import annotations

import logging

import discord


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once, using discord.py's stream handler and formatter."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    discord.utils.setup_logging(level=numeric, root=True)

    # Webhook request chatter from discord.py is only useful when debugging.
    logging.getLogger("discord.webhook").setLevel(max(numeric, logging.WARNING))
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
