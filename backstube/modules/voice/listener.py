"""
Gateway listeners for the voice channel manager.

READY           -> load and normalise the managed category
GUILD_CREATE    -> seed the voice state cache
VOICE_STATE_UPDATE -> update the cache, then scale channels
"""

from __future__ import annotations

from backstube.core.event.registry import CommandRegistry
from backstube.core.event.types import GatewayEvent
from backstube.core.http.client import RestClient
from backstube.core.logging.logger import get_logger
from backstube.modules.voice.service import VoiceChannelManager
from backstube.modules.voice.state import VoiceStateCache

logger = get_logger(__name__)


class VoiceListener:
    def __init__(self, manager: VoiceChannelManager, states: VoiceStateCache) -> None:
        self.manager = manager
        self.states = states

    def register(self, registry: CommandRegistry) -> None:
        registry.register("READY", self.on_ready)
        registry.register("GUILD_CREATE", self.on_guild_create)
        registry.register("VOICE_STATE_UPDATE", self.on_voice_state_update)

    async def on_ready(self, event: GatewayEvent) -> None:
        user = event.payload.get("user") or {}
        logger.info("Bot is ready", extra={"bot_user": user.get("username")})
        await self.manager.initialize()

    async def on_guild_create(self, event: GatewayEvent) -> None:
        guild_id = event.payload.get("id")
        if guild_id is None:
            return
        self.states.load_guild(int(guild_id), event.payload.get("voice_states") or ())

    async def on_voice_state_update(self, event: GatewayEvent) -> None:
        left, joined = self.states.apply_update(event.payload)
        if left == joined:
            return
        logger.debug(
            "Voice state update",
            extra={"joined_channel": joined, "left_channel": left, "user_id": event.user_id},
        )
        await self.manager.on_voice_state(left, joined)


def setup_voice(registry: CommandRegistry, rest: RestClient, category_id: int) -> VoiceListener:
    """Build the voice manager for `category_id` and register its listeners."""
    states = VoiceStateCache()
    manager = VoiceChannelManager(rest, states, category_id)
    listener = VoiceListener(manager, states)
    listener.register(registry)
    return listener
