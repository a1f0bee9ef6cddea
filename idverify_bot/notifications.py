"""User and admin notifications.

Builders return plain :class:`Notification` values; a sink decides how to
deliver them. Delivery is best effort: sinks log failures and report them
through their return value, never by raising.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final, Literal, Protocol

import discord

from .logging_utils import resolve_log_channel
from .models import VerificationRecord

log: Final = logging.getLogger(__name__)

Level = Literal["success", "failure", "warning", "info", "error"]

LEVEL_COLORS: Final[dict[str, int]] = {
    "success": 0x00FF00,
    "failure": 0xFF0000,
    "warning": 0xFF6B00,
    "info": 0xFFFF00,
    "error": 0xFF6B6B,
}


@dataclass(slots=True, frozen=True)
class Notification:
    title: str
    description: str
    level: Level = "info"
    fields: tuple[tuple[str, str], ...] = ()

    def to_embed(self) -> discord.Embed:
        embed = discord.Embed(
            title=self.title,
            description=self.description,
            color=discord.Color(LEVEL_COLORS[self.level]),
            timestamp=discord.utils.utcnow(),
        )
        for name, value in self.fields:
            embed.add_field(name=name, value=value, inline=True)
        return embed


class NotificationSink(Protocol):
    async def notify(self, subject_id: str, notification: Notification) -> bool: ...

    async def announce(
        self, notification: Notification, *, content: str | None = None
    ) -> bool: ...


class DiscordNotifier:
    """Sends notifications as DMs and admin log-channel embeds."""

    def __init__(
        self,
        bot: discord.Client,
        *,
        log_channel_id: int | None = None,
        guild_id: int | None = None,
    ) -> None:
        self._bot = bot
        self._log_channel_id = log_channel_id
        self._guild_id = guild_id

    async def notify(self, subject_id: str, notification: Notification) -> bool:
        try:
            user = self._bot.get_user(int(subject_id)) or await self._bot.fetch_user(
                int(subject_id)
            )
            await user.send(embed=notification.to_embed())
        except ValueError:
            log.warning("Cannot DM non-numeric user id %s", subject_id)
            return False
        except discord.HTTPException as exc:
            log.warning("Failed to send DM to user %s: %s", subject_id, exc)
            return False
        return True

    async def announce(
        self, notification: Notification, *, content: str | None = None
    ) -> bool:
        channel = await resolve_log_channel(
            self._bot, self._log_channel_id, self._guild_id
        )
        if channel is None:
            log.info("[announce] %s: %s", notification.title, notification.description)
            return False
        try:
            await channel.send(content=content, embed=notification.to_embed())
        except discord.HTTPException as exc:
            log.warning("Failed to post to log channel %s: %s", channel.id, exc)
            return False
        return True


# ----- Builders -----
def session_started(record: VerificationRecord, redirect_url: str | None) -> Notification:
    return Notification(
        title="Verification Started",
        description=(
            "Please complete the identity verification process using iDenfy: "
            f"{redirect_url}"
        ),
        level="success",
        fields=(
            ("CKEY", record.external_key),
            ("Status", "Pending"),
            ("Scan Reference", record.session_key),
        ),
    )


def approval_required(record: VerificationRecord) -> Notification:
    user = f"<@{record.subject_id}>"
    if record.display_name:
        user += f" ({record.display_name})"
    return Notification(
        title="Verification Approval Required",
        description="Daily verification limit reached",
        level="error",
        fields=(
            ("Discord User", user),
            ("CKEY", record.external_key),
            ("Verification ID", record.session_key),
        ),
    )


def verification_succeeded(record: VerificationRecord) -> Notification:
    return Notification(
        title="Verification Successful!",
        description="Your identity has been verified successfully using iDenfy.",
        level="success",
        fields=(
            ("CKEY", record.external_key),
            ("Status", "Verified ✅"),
            ("Scan Reference", record.session_key),
        ),
    )


def verification_logged(record: VerificationRecord) -> Notification:
    method = "Debug" if record.is_debug else "iDenfy"
    if record.approval is not None:
        method += f" (approved by <@{record.approval.approved_by}>)"
    return Notification(
        title="New Verification",
        description=f"<@{record.subject_id}> completed identity verification.",
        level="success",
        fields=(
            ("CKEY", record.external_key),
            ("Method", method),
            ("Scan Reference", record.session_key),
        ),
    )


def submission_failed(record: VerificationRecord) -> Notification:
    return Notification(
        title="Verification Error",
        description=(
            "Your identity was verified, but there was an error saving it. "
            "Use /check-verification to retry or contact an administrator."
        ),
        level="error",
        fields=(
            ("Scan Reference", record.session_key),
            ("CKEY", record.external_key),
        ),
    )


def verification_failed(
    record: VerificationRecord, status: str, reason_codes: Iterable[str]
) -> Notification:
    reasons = ", ".join(reason_codes)
    description = "Your identity verification was not successful."
    if reasons:
        description += f" Reason(s): {reasons}"
    return Notification(
        title="Verification Failed",
        description=description,
        level="failure",
        fields=(
            ("Status", status),
            ("Scan Reference", record.session_key),
        ),
    )


def verification_under_review(record: VerificationRecord) -> Notification:
    return Notification(
        title="Verification Under Review",
        description=(
            "Your identity verification is being reviewed. "
            "You will be notified once the review is complete."
        ),
        level="info",
        fields=(
            ("Status", "REVIEWING"),
            ("Scan Reference", record.session_key),
        ),
    )


def verification_expired(record: VerificationRecord) -> Notification:
    return Notification(
        title="Verification Expired",
        description=(
            "Your verification request was not completed within 24 hours and "
            "has been closed. Run /verify again to start over."
        ),
        level="warning",
        fields=(
            ("CKEY", record.external_key),
            ("Reference", record.session_key),
        ),
    )


def verification_cancelled(record: VerificationRecord) -> Notification:
    return Notification(
        title="Verification Cancelled",
        description="An administrator cancelled your pending verification.",
        level="warning",
        fields=(
            ("CKEY", record.external_key),
            ("Reference", record.session_key),
        ),
    )


def data_deleted(session_key: str) -> Notification:
    return Notification(
        title="Data Cleanup Complete",
        description=(
            "Your verification data has been successfully removed from "
            "iDenfy's systems for privacy protection."
        ),
        level="success",
        fields=(("Scan Reference", session_key), ("Action", "Data Deleted")),
    )


def data_deletion_failed(session_key: str) -> Notification:
    return Notification(
        title="Data Cleanup Warning",
        description=(
            "We were unable to automatically delete your verification data "
            "from iDenfy's systems. Our team has been notified and will "
            "handle this manually if needed."
        ),
        level="warning",
        fields=(("Scan Reference", session_key), ("Issue", "Deletion Failed")),
    )
