"""
VoiceChannelManager - auto-scaling voice channels in one category
=================================================================

Handles:
- Loading the managed category's voice channels on READY
- Ensuring at least one channel of every kind exists
- Adding a channel when every channel of a kind is occupied
- Removing surplus empty channels when users leave
- Keeping the category sorted by user limit (unlimited first)

Channel kinds are identified by the last character of the channel name:
"∞" (no limit), "2", "3", "4", "5" (user limit). Channels are created as
"<prefix> <identifier>", e.g. "🔊voice 3".

Occupancy comes from `VoiceStateCache`; channel layout is read from and
written to the REST API. All mutations run under one `asyncio.Lock` so
concurrent handler invocations cannot double-create or double-delete.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from backstube.core.config.manager import ConfigManager
from backstube.core.exceptions import HTTPException, NotFound
from backstube.core.http.client import RestClient
from backstube.core.logging.logger import get_logger
from backstube.modules.voice.state import VoiceStateCache

logger = get_logger(__name__)

GUILD_VOICE = 2
AUDIT_REASON = "Voice channel auto-scaling"


class VoiceKind(Enum):
    UNLIMITED = "∞"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    FIVE = "5"

    @property
    def identifier(self) -> str:
        return self.value

    @property
    def user_limit(self) -> Optional[int]:
        return None if self is VoiceKind.UNLIMITED else int(self.value)

    @classmethod
    def from_name(cls, name: str) -> Optional["VoiceKind"]:
        if not name:
            return None
        try:
            return cls(name[-1])
        except ValueError:
            return None


class VoiceChannelManager:
    """
    Keeps one category of voice channels sized to demand.

    Business Logic:
    - Every kind has at least one channel
    - A kind gains a channel when none of its channels is empty, up to
      `voice.max_channels_per_kind`
    - An empty channel is deleted when its kind still has another channel
    """

    def __init__(
        self,
        rest: RestClient,
        states: VoiceStateCache,
        category_id: int,
        *,
        max_channels_per_kind: Optional[int] = None,
        name_prefix: Optional[str] = None,
    ) -> None:
        self.rest = rest
        self.states = states
        self.category_id = category_id
        self.guild_id: Optional[int] = None
        self.max_channels_per_kind = (
            max_channels_per_kind
            if max_channels_per_kind is not None
            else int(ConfigManager.get("voice.max_channels_per_kind", 6))
        )
        self.name_prefix = (
            name_prefix
            if name_prefix is not None
            else str(ConfigManager.get("voice.channel_name_prefix", "\U0001f50avoice"))
        )
        self.channels: Dict[VoiceKind, List[int]] = {kind: [] for kind in VoiceKind}
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def kind_of(self, channel_id: int) -> Optional[VoiceKind]:
        for kind, channel_ids in self.channels.items():
            if channel_id in channel_ids:
                return kind
        return None

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load the category, create missing kinds and sort.

        Raises:
            NotFound: The category does not exist or is not visible.
            HTTPException: Any other REST failure.
        """
        async with self._lock:
            category = await self.rest.get_channel(self.category_id)
            guild_id = int(category["guild_id"])
            self.guild_id = guild_id

            channels: Dict[VoiceKind, List[int]] = {kind: [] for kind in VoiceKind}
            for channel in self._category_voice_channels(
                await self.rest.get_guild_channels(guild_id)
            ):
                kind = VoiceKind.from_name(channel.get("name", ""))
                if kind is not None:
                    channels[kind].append(int(channel["id"]))
            self.channels = channels

            logger.info(
                "Voice category loaded",
                extra={
                    "guild_id": guild_id,
                    "category_id": self.category_id,
                    "channels": {kind.identifier: len(ids) for kind, ids in channels.items()},
                },
            )

            for kind in VoiceKind:
                if not self.channels[kind]:
                    await self._create_channel(kind)

            await self._sort_channels()
            self._initialized = True

        logger.info("Voice channel manager initialized", extra={"guild_id": self.guild_id})

    # -------------------------------------------------------------------------
    # Occupancy changes
    # -------------------------------------------------------------------------

    async def check_joined(self, channel_id: int) -> bool:
        """Create another channel of this kind if all of them are occupied. Returns True if created."""
        async with self._lock:
            kind = self.kind_of(channel_id)
            if kind is None or not self._initialized:
                return False

            current = self.channels[kind]
            if len(current) >= self.max_channels_per_kind:
                return False
            if any(self.states.is_empty(existing) for existing in current):
                return False

            created = await self._create_channel(kind)
            await self._sort_channels()
            logger.info(
                "Created voice channel due to full occupancy",
                extra={"channel_id": created, "kind": kind.identifier, "count": len(current)},
            )
            return True

    async def check_left(self, channel_id: int) -> bool:
        """Delete `channel_id` if it is empty and its kind has another channel. Returns True if deleted."""
        async with self._lock:
            kind = self.kind_of(channel_id)
            if kind is None or not self._initialized:
                return False
            if not self.states.is_empty(channel_id):
                return False

            current = self.channels[kind]
            if len(current) <= 1:
                return False

            current.remove(channel_id)
            try:
                await self.rest.delete_channel(channel_id, reason=AUDIT_REASON)
            except NotFound:
                logger.info("Empty voice channel already gone", extra={"channel_id": channel_id})
            except HTTPException as exc:
                current.append(channel_id)
                logger.error(
                    "Failed to delete empty voice channel",
                    extra={"channel_id": channel_id, "error": exc.to_dict()},
                )
                return False

            await self._sort_channels()
            logger.info(
                "Deleted empty voice channel",
                extra={"channel_id": channel_id, "kind": kind.identifier},
            )
            return True

    async def on_voice_state(self, left: Optional[int], joined: Optional[int]) -> None:
        if joined is not None:
            await self.check_joined(joined)
        if left is not None and left != joined:
            await self.check_left(left)

    # -------------------------------------------------------------------------
    # REST helpers
    # -------------------------------------------------------------------------

    async def _create_channel(self, kind: VoiceKind) -> int:
        assert self.guild_id is not None
        created = await self.rest.create_guild_channel(
            self.guild_id,
            name=f"{self.name_prefix} {kind.identifier}",
            channel_type=GUILD_VOICE,
            parent_id=self.category_id,
            user_limit=kind.user_limit,
            reason=AUDIT_REASON,
        )
        channel_id = int(created["id"])
        self.channels[kind].append(channel_id)
        return channel_id

    async def _sort_channels(self) -> None:
        assert self.guild_id is not None
        try:
            voice_channels = self._category_voice_channels(
                await self.rest.get_guild_channels(self.guild_id)
            )
            # Stable sort: unlimited (0 / missing) first, then ascending limit
            voice_channels.sort(key=lambda channel: channel.get("user_limit") or 0)
            positions = [
                {"id": str(channel["id"]), "position": index}
                for index, channel in enumerate(voice_channels)
            ]
            if positions:
                await self.rest.modify_guild_channel_positions(
                    self.guild_id, positions, reason=AUDIT_REASON
                )
        except HTTPException as exc:
            logger.warning(
                "Failed to sort voice channels",
                extra={"guild_id": self.guild_id, "error": exc.to_dict()},
            )

    def _category_voice_channels(self, channels: List[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        return [
            channel
            for channel in channels
            if channel.get("type") == GUILD_VOICE
            and str(channel.get("parent_id")) == str(self.category_id)
        ]
