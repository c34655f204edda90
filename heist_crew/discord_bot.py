"""Discord bot entry point for the heist crew."""
from __future__ import annotations

import asyncio
import atexit
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .errors import (
    HeistError,
    InvalidVoteError,
    NotFoundError,
    PermissionDeniedError,
    WrongPhaseError,
)
from .models import HeistStatus
from .service import HeistService
from .telemetry_decorator import REJECTED_EXTRA, track_command

logger = logging.getLogger(__name__)

_CHANNEL_PREFIX = "HEIST_CHANNEL_"

# surfaced to the user verbatim; anything else gets the generic notice
_PARTICIPANT_ERRORS = (
    WrongPhaseError,
    InvalidVoteError,
    PermissionDeniedError,
    NotFoundError,
    ValueError,
)
_GENERIC_FAILURE = "Something went wrong with the heist. Try again shortly."


@dataclass(frozen=True)
class ChannelRouter:
    """Maps heist rooms to Discord channels.

    ``HEIST_CHANNEL_<ROOM>=<channel id>`` names a room. When no room is
    configured every channel is its own room keyed by the channel id.
    """

    rooms: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def from_env(environ: Optional[Dict[str, str]] = None) -> "ChannelRouter":
        env = os.environ if environ is None else environ
        rooms: Dict[str, int] = {}
        for key, value in env.items():
            if not key.startswith(_CHANNEL_PREFIX) or not value:
                continue
            room = key[len(_CHANNEL_PREFIX):].lower()
            try:
                rooms[room] = int(value)
            except ValueError:
                logger.warning("Invalid channel id %s for %s", value, key)
        return ChannelRouter(rooms=rooms)

    def channel_for(self, room_id: str) -> Optional[int]:
        if room_id in self.rooms:
            return self.rooms[room_id]
        if room_id.isdigit():
            return int(room_id)
        return None

    def room_for(self, channel_id: Optional[int]) -> Optional[str]:
        if channel_id is None:
            return None
        for room, mapped in self.rooms.items():
            if mapped == channel_id:
                return room
        if self.rooms:
            return None
        return str(channel_id)


async def _post_to_channel(
    bot: commands.Bot,
    channel_id: Optional[int],
    content: str,
    *,
    purpose: str,
) -> None:
    """Send content to a configured channel if possible."""

    if channel_id is None:
        logger.debug("Skipping %s post; channel not configured", purpose)
        return
    channel = bot.get_channel(channel_id)
    if channel is None:
        logger.warning("Failed to locate %s channel with id %s", purpose, channel_id)
        return
    try:
        await channel.send(content)
    except Exception:  # pragma: no cover - logging only
        logger.exception("Failed to send %s message", purpose)


_MAX_MESSAGE_LENGTH = 1900


def _clamp_text(text: str) -> str:
    """Ensure Discord-compatible message length."""

    if len(text) <= _MAX_MESSAGE_LENGTH:
        return text
    return text[: _MAX_MESSAGE_LENGTH - 1].rstrip() + "…"


def _format_message(lines: Iterable[str]) -> str:
    message = "\n".join(line for line in lines if line is not None)
    return _clamp_text(message)


def _format_status(status: HeistStatus) -> str:
    lines = [f"Heist status: {status.state.value.replace('_', ' ').lower()}"]
    if status.halted:
        lines.append("Heists are halted in this room until an admin runs /heist_recover.")
    if status.next_event_time is not None:
        lines.append(f"Next event: <t:{int(status.next_event_time.timestamp())}:R>")
    if status.offered_crimes:
        tally = ", ".join(
            f"{crime_id} ({status.votes.get(crime_id, 0)})" for crime_id in status.offered_crimes
        )
        lines.append(f"Votes: {tally}")
    return _format_message(lines)


class DiscordTransport:
    """Delivers heist messages from any thread onto the bot's event loop."""

    def __init__(self, bot: commands.Bot, router: ChannelRouter) -> None:
        self._bot = bot
        self._router = router

    def send(self, room_id: str, text: str) -> None:
        loop = getattr(self._bot, "loop", None)
        if loop is None or not loop.is_running():
            logger.info("[%s] %s (bot offline)", room_id, text)
            return
        asyncio.run_coroutine_threadsafe(
            _post_to_channel(
                self._bot,
                self._router.channel_for(room_id),
                _clamp_text(text),
                purpose=f"heist:{room_id}",
            ),
            loop,
        )


def build_bot(db_path: Path, intents: Optional[discord.Intents] = None) -> commands.Bot:
    intents = intents or discord.Intents.default()
    app_id_raw = os.environ.get("DISCORD_APP_ID")
    application_id: Optional[int] = None
    if app_id_raw:
        try:
            application_id = int(app_id_raw)
        except ValueError:
            logger.warning("Invalid DISCORD_APP_ID: %s", app_id_raw)
    bot = commands.Bot(command_prefix="/", intents=intents, application_id=application_id)
    router = ChannelRouter.from_env()
    service = HeistService(db_path, transport=DiscordTransport(bot, router))
    setattr(bot, "heist_service", service)
    setattr(bot, "heist_router", router)
    started = False

    def _shutdown_service() -> None:  # pragma: no cover - process shutdown hook
        service.shutdown()

    atexit.register(_shutdown_service)

    def _room(interaction: discord.Interaction) -> Optional[str]:
        return router.room_for(getattr(interaction, "channel_id", None))

    def _is_guild_admin(interaction: discord.Interaction) -> bool:
        permissions = getattr(interaction.user, "guild_permissions", None)
        return bool(permissions and permissions.administrator)

    async def _reject(interaction: discord.Interaction, exc: Exception) -> None:
        if isinstance(exc, _PARTICIPANT_ERRORS):
            message = str(exc)
        else:
            logger.error("Heist command failed: %s", exc)
            message = _GENERIC_FAILURE
        interaction.extras[REJECTED_EXTRA] = type(exc).__name__
        await interaction.response.send_message(message, ephemeral=True)

    @bot.event
    async def on_ready() -> None:
        nonlocal started
        logger.info("Heist bot connected as %s", bot.user)
        try:
            synced = await bot.tree.sync()
            logger.info("Synced %d commands", len(synced))
        except Exception as exc:  # pragma: no cover - logging only
            logger.exception("Failed to sync commands: %s", exc)
        if not started:
            service.start(list(router.rooms))
            started = True

    @bot.event
    async def on_message(message: discord.Message) -> None:
        if message.author.bot:
            return
        room = router.room_for(message.channel.id)
        if room is None:
            return
        try:
            service.record_activity(room, str(message.author.display_name))
        except HeistError as exc:
            logger.warning("Failed to record activity in %s: %s", room, exc)

    @app_commands.command(name="heist_vote", description="Vote for tonight's job")
    @track_command
    @app_commands.describe(crime="Crime name, alias or number from the announcement")
    async def heist_vote(interaction: discord.Interaction, crime: str) -> None:
        room = _room(interaction)
        if room is None:
            await interaction.response.send_message("Heists run in channels only.", ephemeral=True)
            return
        try:
            crime_id = service.cast_vote(room, str(interaction.user.display_name), crime)
        except (HeistError, ValueError) as exc:
            await _reject(interaction, exc)
            return
        await interaction.response.send_message(f"Vote counted for {crime_id}.", ephemeral=True)

    @app_commands.command(name="heist_status", description="Show this room's heist status")
    @track_command
    async def heist_status(interaction: discord.Interaction) -> None:
        room = _room(interaction)
        if room is None:
            await interaction.response.send_message("Heists run in channels only.", ephemeral=True)
            return
        try:
            status = service.get_status(room)
        except HeistError as exc:
            await _reject(interaction, exc)
            return
        await interaction.response.send_message(_format_status(status), ephemeral=True)

    @app_commands.command(name="heist_advance", description="Skip the current heist wait (admin)")
    @track_command
    async def heist_advance(interaction: discord.Interaction) -> None:
        room = _room(interaction)
        if room is None:
            await interaction.response.send_message("Heists run in channels only.", ephemeral=True)
            return
        try:
            status = service.force_advance(
                room,
                str(interaction.user.display_name),
                override=_is_guild_admin(interaction),
            )
        except HeistError as exc:
            await _reject(interaction, exc)
            return
        await interaction.response.send_message(_format_status(status), ephemeral=True)

    @app_commands.command(name="heist_start", description="Start a heist now (admin)")
    @track_command
    async def heist_start(interaction: discord.Interaction) -> None:
        room = _room(interaction)
        if room is None:
            await interaction.response.send_message("Heists run in channels only.", ephemeral=True)
            return
        try:
            status = service.force_start(
                room,
                str(interaction.user.display_name),
                override=_is_guild_admin(interaction),
            )
        except HeistError as exc:
            await _reject(interaction, exc)
            return
        await interaction.response.send_message(_format_status(status), ephemeral=True)

    @app_commands.command(name="heist_recover", description="Resume a halted heist room (admin)")
    @track_command
    async def heist_recover(interaction: discord.Interaction) -> None:
        room = _room(interaction)
        if room is None:
            await interaction.response.send_message("Heists run in channels only.", ephemeral=True)
            return
        try:
            status = service.recover(
                room,
                str(interaction.user.display_name),
                override=_is_guild_admin(interaction),
            )
        except HeistError as exc:
            await _reject(interaction, exc)
            return
        await interaction.response.send_message(_format_status(status), ephemeral=True)

    @app_commands.command(name="heist_trust", description="Show trust standing")
    @track_command
    @app_commands.describe(user="Whose trust to show (defaults to you)")
    async def heist_trust(interaction: discord.Interaction, user: Optional[str] = None) -> None:
        name = user or str(interaction.user.display_name)
        try:
            info = service.trust_status(name)
        except HeistError as exc:
            await _reject(interaction, exc)
            return
        lines = [
            f"{info['username']}: {info['trust']} trust ({info['title']})",
            f"Heists: {info['heists_participated']} | Balance: ${info['balance']}",
        ]
        await interaction.response.send_message(_format_message(lines), ephemeral=True)

    @app_commands.command(name="heist_vouch", description="Give some of your standing to another crim")
    @track_command
    @app_commands.describe(user="Who to vouch for", amount="Trust to give (1-5)")
    async def heist_vouch(interaction: discord.Interaction, user: str, amount: int) -> None:
        giver = str(interaction.user.display_name)
        try:
            record = service.vouch(giver, user, amount)
        except (HeistError, ValueError) as exc:
            await _reject(interaction, exc)
            return
        message = f"{giver} vouched for {record.username} (+{amount} trust)"
        await interaction.response.send_message(message)

    @app_commands.command(name="heist_balance", description="Show a heist balance")
    @track_command
    @app_commands.describe(user="Whose balance to show (defaults to you)")
    async def heist_balance(interaction: discord.Interaction, user: Optional[str] = None) -> None:
        name = user or str(interaction.user.display_name)
        try:
            balance = service.balance(name)
        except HeistError as exc:
            await _reject(interaction, exc)
            return
        await interaction.response.send_message(f"{name}: ${balance}", ephemeral=True)

    @app_commands.command(name="heist_report", description="Heist telemetry for the last day (admin)")
    @track_command
    async def heist_report(interaction: discord.Interaction) -> None:
        if not _is_guild_admin(interaction):
            await interaction.response.send_message(
                "This command requires administrator permissions.",
                ephemeral=True,
            )
            return
        report = service.telemetry_report()
        payouts = report["payouts_24h"]
        lines = [
            f"Uptime: {int(report['uptime_seconds'])}s",
            f"Payouts: {payouts['distributions']} runs, ${payouts['total_paid']} paid",
            f"Errors: {report['errors_24h'] or 'none'}",
        ]
        for room, phases in sorted(report["phases_24h"].items()):
            lines.append(f"{room}: {phases}")
        for operation, timing in sorted(report["performance_24h"].items()):
            lines.append(f"{operation}: avg {timing['avg_ms']}ms over {timing['count']}")
        await interaction.response.send_message(_format_message(lines), ephemeral=True)

    bot.tree.add_command(heist_vote)
    bot.tree.add_command(heist_status)
    bot.tree.add_command(heist_advance)
    bot.tree.add_command(heist_start)
    bot.tree.add_command(heist_recover)
    bot.tree.add_command(heist_trust)
    bot.tree.add_command(heist_vouch)
    bot.tree.add_command(heist_balance)
    bot.tree.add_command(heist_report)
    return bot


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    token = os.environ.get("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    db_path = Path(os.environ.get("HEIST_DB", "heist.db"))
    bot = build_bot(db_path)
    bot.run(token)


__all__ = ["ChannelRouter", "DiscordTransport", "build_bot", "main"]
