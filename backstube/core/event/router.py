"""
Wildcard event-name matching.

Supported Patterns
------------------
- Exact:     "VOICE_STATE_UPDATE" matches only itself
- Global:    "*" matches any event
- Prefix:    "GUILD_*" matches "GUILD_CREATE", "GUILD_UPDATE", ...
- Suffix:    "*_CREATE" matches "MESSAGE_CREATE", "CHANNEL_CREATE", ...
- Sandwich:  "GUILD_*_UPDATE" matches "GUILD_ROLE_UPDATE", ...

Matching is case-sensitive; repeated wildcards ("**") collapse to one.
"""

from __future__ import annotations


class EventRouter:
    """
    Stateless wildcard matcher.

    Examples
    --------
    >>> router = EventRouter()
    >>> router.matches("VOICE_STATE_UPDATE", "VOICE_*")
    True
    >>> router.matches("VOICE_STATE_UPDATE", "GUILD_*")
    False
    >>> router.matches("GUILD_ROLE_UPDATE", "GUILD_*_UPDATE")
    True
    """

    def matches(self, event_name: str, pattern: str) -> bool:
        if pattern == "*":
            return True

        if "*" not in pattern:
            return event_name == pattern

        while "**" in pattern:
            pattern = pattern.replace("**", "*")

        parts = pattern.split("*")
        head, tail = parts[0], parts[-1]

        # Prefix and suffix must not overlap inside a short name
        if len(event_name) < len(head) + len(tail):
            return False
        if not event_name.startswith(head) or not event_name.endswith(tail):
            return False

        idx = len(head)
        end = len(event_name) - len(tail)
        for mid in parts[1:-1]:
            next_idx = event_name.find(mid, idx, end)
            if next_idx == -1:
                return False
            idx = next_idx + len(mid)

        return True

    @staticmethod
    def is_pattern(trigger: str) -> bool:
        return "*" in trigger
