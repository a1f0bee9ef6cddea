#!/usr/bin/env python3
"""Discord–iDenfy identity verification bot
-------------------------------------------
Links a Discord account to a BYOND ckey after an iDenfy identity check.

* ``/verify`` opens an iDenfy session, or queues the request for admin
  approval once the daily quota is spent.
* iDenfy reports results to the webhook served alongside the bot.
* Pending verifications survive restarts in a JSON ledger and expire after
  24 hours.

Required env‑vars: DISCORD_TOKEN, API_USERNAME, API_PASSWORD, IDENFY_API_KEY,
IDENFY_API_SECRET, ADMIN_ROLE_ID
Optional: API_BASE_URL, IDENFY_BASE_URL, DAILY_VERIFICATION_LIMIT,
VERIFICATION_CHANNEL_ID, GUILD_ID, WEBHOOK_HOST, WEBHOOK_PORT, LEDGER_PATH,
HTTP_TIMEOUT_SECONDS, REVIEW_NOTIFY_POLICY, DEBUG_MODE
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import signal
from typing import Final

import discord
import uvicorn
from discord import app_commands
from discord.ext import tasks

from bots.config import missing_vars, read_gateway_settings
from idverify_bot import (
    AlreadyPendingError,
    AlreadyVerifiedError,
    BackendClient,
    BackendError,
    CallbackProcessor,
    DailyLimitGate,
    DeletionReconciler,
    IdenfyClient,
    NotAwaitingApprovalError,
    PersistenceError,
    ProviderError,
    RecordNotFoundError,
    StatusView,
    VerificationCoordinator,
    VerificationLedger,
)
from idverify_bot import notifications
from idverify_bot.logging_utils import configure_logging
from idverify_bot.models import REVIEWING
from idverify_bot.notifications import DiscordNotifier
from idverify_bot.provider_api import DUMMY_STATUSES
from idverify_bot.webhook import build_webhook_server, create_webhook_app

# ---------- Constants ----------
EXPIRY_SWEEP_INTERVAL_HOURS: Final[int] = 1
SHUTDOWN_SIGNALS: Final = (signal.SIGINT, signal.SIGTERM)
LIST_PENDING_LIMIT: Final[int] = 10
SIMULATED_CALLBACK_DELAY_SECONDS: Final[float] = 5.0
SIMULATED_STATUSES: Final = (*DUMMY_STATUSES, REVIEWING)

# ---------- Environment ----------
SETTINGS: Final = read_gateway_settings()
ADMIN_ROLE_ID: Final[int | None] = SETTINGS.admin_role_id

# ---------- Discord client ----------
intents = discord.Intents.default()
intents.guilds = True
intents.members = True

bot = discord.Client(intents=intents)
tree = app_commands.CommandTree(bot)

# ---------- Logging ----------
log = logging.getLogger("idv-gateway")

# ---------- Verification services ----------
ledger = VerificationLedger(SETTINGS.ledger_path)
backend = BackendClient(
    SETTINGS.api_base_url,
    SETTINGS.api_username,
    SETTINGS.api_password,
    timeout=SETTINGS.http_timeout,
)
provider = IdenfyClient(
    SETTINGS.idenfy_base_url,
    SETTINGS.idenfy_api_key,
    SETTINGS.idenfy_api_secret,
    timeout=SETTINGS.http_timeout,
)
notifier = DiscordNotifier(
    bot,
    log_channel_id=SETTINGS.verification_channel_id,
    guild_id=SETTINGS.guild_id,
)
reconciler = DeletionReconciler(provider, notifier)
gate = DailyLimitGate(backend, SETTINGS.daily_verification_limit)
coordinator = VerificationCoordinator(
    ledger, backend, provider, gate, notifier, reconciler, admin_role_id=ADMIN_ROLE_ID
)
processor = CallbackProcessor(
    coordinator,
    backend,
    provider,
    notifier,
    reconciler,
    review_policy=SETTINGS.review_notify_policy,  # type: ignore[arg-type]
)
webhook_app = create_webhook_app(processor, ledger)


# ---------- Helpers ----------
_CKEY_STRIP = re.compile(r"[^a-z0-9]")


def normalize_ckey(value: str) -> str:
    """Reduce a BYOND key to its canonical ckey (lowercase alphanumerics)."""
    return _CKEY_STRIP.sub("", value.strip().lower())


def is_admin(member: discord.abc.User | None) -> bool:
    if ADMIN_ROLE_ID is None or member is None:
        return False
    roles = getattr(member, "roles", None) or []
    return any(role.id == ADMIN_ROLE_ID for role in roles)


async def deny_non_admin(interaction: discord.Interaction) -> bool:
    """Reply and return True when the caller lacks the admin role."""
    if is_admin(interaction.user):
        return False
    await interaction.response.send_message(
        "You do not have permission to use this command.", ephemeral=True
    )
    return True


STATE_LABELS: Final[dict[str, tuple[str, int]]] = {
    "awaiting_approval": ("Awaiting admin approval ⏳", 0xFF6B6B),
    "in_progress": ("In progress", 0xFFFF00),
    "verified": ("Completed ✅", 0x00FF00),
    "failed": ("Failed ❌", 0xFF0000),
}


def status_embed(view: StatusView) -> discord.Embed:
    label, color = STATE_LABELS[view.state]
    embed = discord.Embed(
        title="Verification Status",
        color=discord.Color(color),
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="CKEY", value=view.external_key, inline=True)
    embed.add_field(name="Status", value=label, inline=True)
    if view.session_key:
        embed.add_field(name="Reference", value=view.session_key, inline=True)
    if view.provider_status is not None:
        embed.add_field(
            name="iDenfy Status",
            value=view.provider_status.status or "Unknown",
            inline=True,
        )
        embed.add_field(
            name="Final",
            value="Yes" if view.provider_status.final else "No",
            inline=True,
        )
        if view.provider_status.reason_codes:
            embed.add_field(
                name="Reason Codes",
                value=", ".join(view.provider_status.reason_codes),
                inline=False,
            )
    if view.verification is not None and view.verification.verification_method:
        embed.add_field(
            name="Method", value=view.verification.verification_method, inline=True
        )
    if view.record is not None:
        embed.add_field(
            name="Created",
            value=discord.utils.format_dt(view.record.created_at, "R"),
            inline=True,
        )
    return embed


# ---------- /verify command ----------
@tree.command(name="verify", description="Verify your identity and link your BYOND ckey.")
@app_commands.describe(ckey="Your BYOND ckey")
async def verify(interaction: discord.Interaction, ckey: str) -> None:
    await interaction.response.defer(ephemeral=True)

    ckey = normalize_ckey(ckey)
    if not ckey:
        await interaction.followup.send("Please provide a valid ckey.", ephemeral=True)
        return

    try:
        disposition = await coordinator.initiate(
            str(interaction.user.id), ckey, display_name=interaction.user.name
        )
    except AlreadyPendingError:
        await interaction.followup.send(
            "You already have a pending verification. Please complete it first.",
            ephemeral=True,
        )
        return
    except AlreadyVerifiedError as exc:
        await interaction.followup.send(
            f"You are already verified with ckey: {exc.external_key}", ephemeral=True
        )
        return
    except ProviderError as exc:
        log.error("Failed to create verification session: %s", exc)
        await interaction.followup.send(
            "Failed to create verification session. Please try again later.",
            ephemeral=True,
        )
        return

    if disposition.outcome == "awaiting_approval":
        await interaction.followup.send(
            "Daily verification limit reached. Your request has been sent to "
            "administrators for approval.",
            ephemeral=True,
        )
        return

    embed = notifications.session_started(
        disposition.record, disposition.redirect_url
    ).to_embed()
    embed.set_footer(text="This link expires in 1 hour")
    await interaction.followup.send(
        f"Please complete your verification here: {disposition.redirect_url}",
        embed=embed,
        ephemeral=True,
    )


# ---------- /check-verification command ----------
@tree.command(name="check-verification", description="Check your verification status")
async def check_verification(interaction: discord.Interaction) -> None:
    await interaction.response.defer(ephemeral=True)
    try:
        view = await processor.recheck(str(interaction.user.id))
    except RecordNotFoundError:
        await interaction.followup.send(
            "No pending or completed verification found for you.", ephemeral=True
        )
        return
    except (ProviderError, BackendError) as exc:
        await interaction.followup.send(
            f"Failed to check verification status: {exc}", ephemeral=True
        )
        return
    await interaction.followup.send(embed=status_embed(view), ephemeral=True)


# ---------- Admin commands ----------
@tree.command(
    name="approve-verification",
    description="Approve a verification queued by the daily limit (admin only)",
)
@app_commands.describe(verification_id="Verification ID from the approval request")
async def approve_verification(
    interaction: discord.Interaction, verification_id: str
) -> None:
    if await deny_non_admin(interaction):
        return
    await interaction.response.defer(ephemeral=True)

    try:
        disposition = await coordinator.approve(
            verification_id.strip(), str(interaction.user.id)
        )
    except RecordNotFoundError:
        await interaction.followup.send(
            f"No pending verification found with ID: {verification_id}",
            ephemeral=True,
        )
        return
    except NotAwaitingApprovalError:
        await interaction.followup.send(
            "That verification is not awaiting manual approval.", ephemeral=True
        )
        return
    except ProviderError as exc:
        log.error("Failed to create session for approved %s: %s", verification_id, exc)
        await interaction.followup.send(
            "Failed to create verification session. The request is still pending.",
            ephemeral=True,
        )
        return

    record = disposition.record
    await interaction.followup.send(
        f"Approved verification for <@{record.subject_id}> (ckey `{record.external_key}`). "
        f"New scan reference: `{record.session_key}`.",
        ephemeral=True,
    )


@tree.command(
    name="cancel-verification",
    description="Cancel a member's pending verification (admin only)",
)
@app_commands.describe(member="Member whose verification should be cancelled")
async def cancel_verification(
    interaction: discord.Interaction, member: discord.Member
) -> None:
    if await deny_non_admin(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    try:
        record = await coordinator.cancel(str(member.id))
    except RecordNotFoundError:
        await interaction.followup.send(
            f"{member.display_name} has no pending verification.", ephemeral=True
        )
        return
    await interaction.followup.send(
        f"Cancelled verification `{record.session_key}` for {member.display_name}.",
        ephemeral=True,
    )


@tree.command(name="list-pending", description="List pending verifications (admin only)")
async def list_pending(interaction: discord.Interaction) -> None:
    if await deny_non_admin(interaction):
        return
    await interaction.response.defer(ephemeral=True)

    records = coordinator.list_live()
    if not records:
        await interaction.followup.send(
            "No pending verifications found.", ephemeral=True
        )
        return

    embed = discord.Embed(
        title="📋 Pending Verifications",
        description=f"Total: {len(records)} pending verification(s)",
        color=discord.Color(0x0099FF),
        timestamp=discord.utils.utcnow(),
    )
    for record in records[:LIST_PENDING_LIMIT]:
        minutes = int(record.age().total_seconds() // 60)
        embed.add_field(
            name=f"{record.external_key} ({record.kind})",
            value=f"<@{record.subject_id}>\nRef: `{record.session_key[:20]}`\nAge: {minutes}m",
            inline=True,
        )
    if len(records) > LIST_PENDING_LIMIT:
        embed.add_field(
            name="...",
            value=f"And {len(records) - LIST_PENDING_LIMIT} more...",
            inline=False,
        )
    await interaction.followup.send(embed=embed, ephemeral=True)


@tree.command(name="verify-debug", description="Debug verification (admin only)")
@app_commands.describe(ckey="BYOND ckey to verify")
async def verify_debug(interaction: discord.Interaction, ckey: str) -> None:
    if await deny_non_admin(interaction):
        return
    await interaction.response.defer(ephemeral=True)

    ckey = normalize_ckey(ckey)
    try:
        await coordinator.debug_verify(str(interaction.user.id), ckey)
    except BackendError as exc:
        await interaction.followup.send(
            f"Failed to create debug verification: {exc}", ephemeral=True
        )
        return

    embed = discord.Embed(
        title="Debug Verification Complete",
        description="Verification added in debug mode",
        color=discord.Color(0xFFFF00),
    )
    embed.add_field(name="Discord ID", value=str(interaction.user.id), inline=True)
    embed.add_field(name="CKEY", value=ckey, inline=True)
    embed.add_field(name="Mode", value="DEBUG", inline=True)
    await interaction.followup.send(embed=embed, ephemeral=True)


@tree.command(
    name="test-verify",
    description="Create an iDenfy dummy session that auto-completes (admin only)",
)
@app_commands.describe(ckey="BYOND ckey to verify", status="Status the session ends with")
@app_commands.choices(
    status=[app_commands.Choice(name=value, value=value) for value in DUMMY_STATUSES]
)
async def test_verify(
    interaction: discord.Interaction,
    ckey: str,
    status: app_commands.Choice[str] | None = None,
) -> None:
    if await deny_non_admin(interaction):
        return
    if not SETTINGS.debug:
        await interaction.response.send_message(
            "Test verifications are only available in debug mode.", ephemeral=True
        )
        return
    await interaction.response.defer(ephemeral=True)

    dummy_status = status.value if status is not None else "APPROVED"
    try:
        disposition = await coordinator.start_test_session(
            str(interaction.user.id),
            normalize_ckey(ckey),
            dummy_status,
            display_name=interaction.user.name,
        )
    except AlreadyPendingError:
        await interaction.followup.send(
            "You already have a pending verification. Please complete it first.",
            ephemeral=True,
        )
        return
    except ProviderError as exc:
        await interaction.followup.send(
            f"Failed to create test verification: {exc}", ephemeral=True
        )
        return

    schedule_simulated_callback(disposition.token, dummy_status)
    await interaction.followup.send(
        f"🧪 Dummy session `{disposition.token}` will complete as **{dummy_status}**: "
        f"{disposition.redirect_url}",
        ephemeral=True,
    )


# ---------- Simulated callbacks (debug) ----------
_simulations: set[asyncio.Task[None]] = set()


async def _simulate_callback_later(scan_ref: str, status: str) -> None:
    await asyncio.sleep(SIMULATED_CALLBACK_DELAY_SECONDS)
    try:
        outcome = await processor.handle_disposition(scan_ref, status, [])
    except Exception:  # pylint: disable=broad-except
        log.exception("Simulated callback for %s failed", scan_ref)
        return
    log.info("Simulated %s callback for %s: %s", status, scan_ref, outcome.action)


def schedule_simulated_callback(scan_ref: str, status: str) -> asyncio.Task[None]:
    task = asyncio.create_task(
        _simulate_callback_later(scan_ref, status), name=f"simulate-{scan_ref}"
    )
    _simulations.add(task)
    task.add_done_callback(_simulations.discard)
    return task


@tree.command(
    name="simulate-webhook",
    description="Feed a fake iDenfy callback to the bot (admin only)",
)
@app_commands.describe(
    scan_ref="Scan reference of a pending verification", status="Callback status"
)
@app_commands.choices(
    status=[app_commands.Choice(name=value, value=value) for value in SIMULATED_STATUSES]
)
async def simulate_webhook(
    interaction: discord.Interaction,
    scan_ref: str,
    status: app_commands.Choice[str],
) -> None:
    if await deny_non_admin(interaction):
        return
    if not SETTINGS.debug:
        await interaction.response.send_message(
            "Webhook simulation is only available in debug mode.", ephemeral=True
        )
        return
    await interaction.response.defer(ephemeral=True)

    outcome = await processor.handle_disposition(scan_ref.strip(), status.value, [])
    if outcome.action == "ignored_unknown":
        await interaction.followup.send(
            f"No pending verification found for scan reference: {outcome.session_key}",
            ephemeral=True,
        )
        return
    await interaction.followup.send(
        f"Simulated **{status.value}** callback for `{outcome.session_key}`: "
        f"{outcome.action}",
        ephemeral=True,
    )


@tree.error
async def on_app_command_error(
    interaction: discord.Interaction, error: app_commands.AppCommandError
) -> None:
    command = interaction.command.name if interaction.command else "unknown"
    log.error("Error handling command %s", command, exc_info=error)
    message = "An error occurred while processing your request."
    try:
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)
    except discord.HTTPException as exc:
        log.warning("Failed to report command error: %s", exc)


# ---------- Expiry sweep ----------
@tasks.loop(hours=EXPIRY_SWEEP_INTERVAL_HOURS)
async def expiry_sweep() -> None:
    expired = await coordinator.sweep_expired()
    if expired:
        log.info("Expiry sweep removed %d verification(s)", len(expired))


# ---------- Lifecycle ----------
@bot.event
async def on_ready() -> None:
    await tree.sync()

    try:
        await backend.authenticate()
    except BackendError as exc:
        log.error("Failed to authenticate with API. Bot will not function: %s", exc)
        await bot.close()
        return

    await coordinator.sweep_expired()
    if not expiry_sweep.is_running():
        expiry_sweep.start()
    log.info("Bot ready as %s (%s)", bot.user, bot.user.id)


async def shutdown(server: uvicorn.Server | None = None) -> None:
    """Stop accepting callbacks, persist the ledger and close the client.

    In-flight deletion retries are abandoned.
    """
    log.info("Shutting down gracefully...")
    if server is not None:
        server.should_exit = True
    if expiry_sweep.is_running():
        expiry_sweep.cancel()
    for task in list(_simulations):
        task.cancel()

    try:
        await ledger.force_flush()
        log.info("Final save of pending verifications completed")
    except PersistenceError as exc:
        log.error("Failed to save pending verifications during shutdown: %s", exc)

    if not bot.is_closed():
        await bot.close()
    backend.close()
    provider.close()
    log.info("Shutdown complete")


def install_shutdown_handlers(stop: asyncio.Event) -> list[signal.Signals]:
    """Route SIGINT/SIGTERM to ``stop`` so ``main`` can run its shutdown."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            log.debug("Signal handler for %s not supported here", sig.name)
            continue
        installed.append(sig)
    return installed


def remove_shutdown_handlers(installed: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        with contextlib.suppress(ValueError, RuntimeError):
            loop.remove_signal_handler(sig)


async def main() -> None:
    configure_logging(SETTINGS.debug)
    missing = missing_vars()
    if missing:
        raise RuntimeError(f"Missing env vars: {', '.join(missing)}")

    log.info("Loading pending verifications...")
    await ledger.load_from_storage()

    server = build_webhook_server(
        webhook_app, SETTINGS.webhook_host, SETTINGS.webhook_port
    )
    stop = asyncio.Event()
    installed = install_shutdown_handlers(stop)
    async with bot:
        bot_task = asyncio.create_task(
            bot.start(SETTINGS.discord_token),  # type: ignore[arg-type]
            name="discord-client",
        )
        server_task = asyncio.create_task(server.serve(), name="webhook-server")
        stop_task = asyncio.create_task(stop.wait(), name="shutdown-signal")
        log.info("iDenfy webhook server listening on port %s", SETTINGS.webhook_port)
        try:
            done, _pending = await asyncio.wait(
                {bot_task, server_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.error(
                        "%s stopped with an error",
                        task.get_name(),
                        exc_info=task.exception(),
                    )
        finally:
            remove_shutdown_handlers(installed)
            await shutdown(server)
            for task in (bot_task, server_task, stop_task):
                if not task.done():
                    task.cancel()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
