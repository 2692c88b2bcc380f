"""
VoiceStateCache - who is connected to which voice channel.

Fed by GUILD_CREATE (initial `voice_states` snapshot) and
VOICE_STATE_UPDATE (incremental). Only ids are stored.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Iterable, Mapping, Optional

from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)


def _snowflake(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class VoiceStateCache:
    def __init__(self) -> None:
        # guild_id -> user_id -> channel_id
        self._guilds: Dict[int, Dict[int, int]] = {}
        self._occupancy: Counter[int] = Counter()

    def load_guild(self, guild_id: int, voice_states: Iterable[Mapping[str, Any]]) -> int:
        """Replace everything known about `guild_id`. Returns the number of states loaded."""
        self.forget_guild(guild_id)
        members: Dict[int, int] = {}
        for state in voice_states:
            user_id = _snowflake(state.get("user_id"))
            channel_id = _snowflake(state.get("channel_id"))
            if user_id is None or channel_id is None:
                continue
            members[user_id] = channel_id
            self._occupancy[channel_id] += 1
        self._guilds[guild_id] = members
        logger.debug(
            "Voice states loaded",
            extra={"guild_id": guild_id, "voice_states": len(members)},
        )
        return len(members)

    def forget_guild(self, guild_id: int) -> None:
        for channel_id in self._guilds.pop(guild_id, {}).values():
            self._decrement(channel_id)

    def apply(self, guild_id: int, user_id: int, channel_id: Optional[int]) -> Optional[int]:
        """
        Record that `user_id` is now in `channel_id` (None = disconnected).

        Returns the channel the user was in before, if any.
        """
        members = self._guilds.setdefault(guild_id, {})
        previous = members.pop(user_id, None)
        if previous is not None:
            self._decrement(previous)
        if channel_id is not None:
            members[user_id] = channel_id
            self._occupancy[channel_id] += 1
        return previous

    def apply_update(self, payload: Mapping[str, Any]) -> tuple[Optional[int], Optional[int]]:
        """Apply a VOICE_STATE_UPDATE payload; returns `(left, joined)` channel ids."""
        guild_id = _snowflake(payload.get("guild_id"))
        user_id = _snowflake(payload.get("user_id"))
        joined = _snowflake(payload.get("channel_id"))
        if guild_id is None or user_id is None:
            return None, None
        left = self.apply(guild_id, user_id, joined)
        return left, joined

    def occupants(self, channel_id: int) -> int:
        return self._occupancy.get(channel_id, 0)

    def is_empty(self, channel_id: int) -> bool:
        return self.occupants(channel_id) == 0

    def channel_of(self, guild_id: int, user_id: int) -> Optional[int]:
        return self._guilds.get(guild_id, {}).get(user_id)

    def _decrement(self, channel_id: int) -> None:
        self._occupancy[channel_id] -= 1
        if self._occupancy[channel_id] <= 0:
            del self._occupancy[channel_id]
