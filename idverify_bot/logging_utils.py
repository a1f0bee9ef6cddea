from __future__ import annotations

import logging
from typing import Final

import discord

log: Final = logging.getLogger("idv-gateway")

LOG_FORMAT: Final = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    # discord.py and uvicorn are chatty at DEBUG
    logging.getLogger("discord").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


async def resolve_log_channel(
    bot: discord.Client,
    log_channel_id: int | None,
    guild_id: int | None = None,
) -> discord.TextChannel | None:
    """Return the admin log TextChannel or None if unavailable.

    Looks in the client cache first, then tries a REST fetch as fallback.
    """
    if not log_channel_id:
        return None

    channel = bot.get_channel(log_channel_id)
    if isinstance(channel, discord.TextChannel):
        return channel

    try:
        channel = await bot.fetch_channel(log_channel_id)
    except discord.NotFound:
        log.warning("Channel %s not found", log_channel_id)
        return None
    except discord.Forbidden:
        log.warning(
            "No access to channel %s – check bot permissions",
            log_channel_id,
        )
        return None
    except discord.HTTPException as exc:
        log.warning(
            "Cannot fetch channel %s – HTTP error: %s",
            log_channel_id,
            exc,
        )
        return None

    if not isinstance(channel, discord.TextChannel):
        log.warning("Channel ID %s is not a text channel", log_channel_id)
        return None
    if guild_id and channel.guild.id != guild_id:
        log.warning(
            "Channel %s belongs to different guild (%s) than expected (%s)",
            log_channel_id,
            channel.guild.id,
            guild_id,
        )
        return None
    return channel
