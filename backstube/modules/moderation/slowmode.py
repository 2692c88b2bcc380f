"""
Slowmode command
================

`/slowmode duration:<seconds> [channel:<text channel>]`

Sets `rate_limit_per_user` on a text channel. Requires MANAGE_CHANNELS,
answers ephemerally, and refuses durations above six hours.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import discord

from backstube.core.config.manager import ConfigManager
from backstube.core.event.registry import CommandRegistry
from backstube.core.event.types import GatewayEvent
from backstube.core.exceptions import Forbidden
from backstube.core.gateway.session import Session
from backstube.core.http.client import RestClient
from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)

# Interaction callback / option / flag constants from the API reference
CHANNEL_MESSAGE_WITH_SOURCE = 4
EPHEMERAL = 1 << 6
OPTION_INTEGER = 4
OPTION_CHANNEL = 7
GUILD_TEXT = 0
CHAT_INPUT = 1

DURATION_CEILING = 65535


class SlowmodeCommand:
    """
    Example
    -------
    >>> slowmode = SlowmodeCommand(rest, runtime.session)
    >>> slowmode.register(registry)
    """

    name = "slowmode"

    def __init__(self, rest: RestClient, session: Session, max_seconds: Optional[int] = None) -> None:
        self.rest = rest
        self.session = session
        self.max_seconds = (
            max_seconds
            if max_seconds is not None
            else int(ConfigManager.get("moderation.slowmode_max_seconds", 21600))
        )
        self._synced_application_id: Optional[int] = None

    def register(self, registry: CommandRegistry) -> None:
        registry.register("READY", self.sync_commands)
        registry.command(self.name)(self.handle)

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": CHAT_INPUT,
            "description": "Set the slowmode of a channel",
            "default_member_permissions": str(discord.Permissions(manage_channels=True).value),
            "dm_permission": False,
            "options": [
                {
                    "type": OPTION_INTEGER,
                    "name": "duration",
                    "description": "Duration in seconds (0 to disable)",
                    "required": True,
                    "min_value": 0,
                    "max_value": DURATION_CEILING,
                },
                {
                    "type": OPTION_CHANNEL,
                    "name": "channel",
                    "description": "Channel to be updated",
                    "required": False,
                    "channel_types": [GUILD_TEXT],
                },
            ],
        }

    async def sync_commands(self, event: GatewayEvent) -> None:
        """Overwrite the global command list once per application."""
        application = event.payload.get("application") or {}
        application_id = self.session.application_id or _snowflake(application.get("id"))
        if application_id is None:
            logger.warning("READY without application id; commands not registered")
            return
        if application_id == self._synced_application_id:
            return

        registered = await self.rest.bulk_overwrite_global_commands(application_id, [self.definition()])
        self._synced_application_id = application_id
        logger.info(
            "Application commands registered",
            extra={
                "application_id": application_id,
                "commands": [command.get("name") for command in registered or []],
            },
        )

    async def handle(self, event: GatewayEvent) -> None:
        interaction = event.payload
        options = _options(interaction)
        duration = options.get("duration")
        channel_id = _snowflake(options.get("channel")) or event.channel_id

        if not _has_manage_channels(interaction):
            await self._reply(interaction, "You need the **Manage Channels** permission to do that.")
            return

        if not isinstance(duration, int) or duration < 0 or channel_id is None:
            await self._reply(interaction, "Please give a duration in seconds.")
            return

        if duration > self.max_seconds:
            await self._reply(
                interaction,
                f"Slowmode duration **cannot** exceed **{self.max_seconds // 3600}** hours "
                f"({self.max_seconds} seconds).",
            )
            return

        try:
            await self.rest.modify_channel(
                channel_id,
                rate_limit_per_user=duration,
                reason=f"Slowmode set by {event.user_id}",
            )
        except Forbidden:
            logger.warning("Missing permission to edit channel", extra={"channel_id": channel_id})
            await self._reply(interaction, f"I am not allowed to edit <#{channel_id}>.")
            return

        if duration == 0:
            message = f"Disabled slowmode for channel <#{channel_id}>."
        else:
            message = f"Updated slowmode for channel <#{channel_id}> to **{duration}** seconds."
        await self._reply(interaction, message)
        logger.info(
            "Slowmode updated",
            extra={"channel_id": channel_id, "duration_seconds": duration},
        )

    async def _reply(self, interaction: Mapping[str, Any], content: str) -> None:
        await self.rest.create_interaction_response(
            int(interaction["id"]),
            str(interaction["token"]),
            {
                "type": CHANNEL_MESSAGE_WITH_SOURCE,
                "data": {"content": content, "flags": EPHEMERAL},
            },
        )


def _options(interaction: Mapping[str, Any]) -> Dict[str, Any]:
    data = interaction.get("data") or {}
    raw: List[Mapping[str, Any]] = data.get("options") or []
    return {option.get("name"): option.get("value") for option in raw}


def _has_manage_channels(interaction: Mapping[str, Any]) -> bool:
    member = interaction.get("member") or {}
    raw = member.get("permissions")
    if raw is None:
        return False
    try:
        permissions = discord.Permissions(int(raw))
    except (TypeError, ValueError):
        return False
    return permissions.manage_channels or permissions.administrator


def _snowflake(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
