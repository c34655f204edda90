"""Discord command telemetry decorator."""
from __future__ import annotations

import functools
import time
from typing import Any, Callable

import discord

from .telemetry import get_telemetry
from .votes import normalize_username

# set by the command body when it answered with a heist error
REJECTED_EXTRA = "rejected"


def _room_id(interaction: discord.Interaction) -> str:
    """Heist room the command ran in, falling back to the raw channel id."""
    channel_id = getattr(interaction, "channel_id", None)
    router = getattr(getattr(interaction, "client", None), "heist_router", None)
    room = router.room_for(channel_id) if router is not None else None
    if room is not None:
        return room
    return str(channel_id) if channel_id is not None else "dm"


def _player_id(interaction: discord.Interaction) -> str:
    name = getattr(interaction.user, "display_name", None)
    return normalize_username(str(name)) if name else str(interaction.user.id)


def track_command(func: Callable) -> Callable:
    """Decorator to track heist command usage, rejections and latency."""

    @functools.wraps(func)
    async def wrapper(interaction: discord.Interaction, *args, **kwargs) -> Any:
        telemetry = get_telemetry()
        command_name = func.__name__
        player_id = _player_id(interaction)
        room_id = _room_id(interaction)
        start_time = time.time()
        success = False

        try:
            result = await func(interaction, *args, **kwargs)
            rejected = getattr(interaction, "extras", {}).get(REJECTED_EXTRA)
            if rejected:
                telemetry.track_error(rejected, command=command_name, room_id=room_id)
            else:
                success = True
            return result

        except Exception as e:
            telemetry.track_error(
                type(e).__name__,
                command=command_name,
                room_id=room_id,
                error_details=str(e)
            )
            raise

        finally:
            duration_ms = (time.time() - start_time) * 1000
            telemetry.track_command(
                command_name,
                player_id,
                room_id,
                success=success,
                duration_ms=duration_ms,
            )

    return wrapper
