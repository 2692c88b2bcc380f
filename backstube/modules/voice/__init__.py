"""
Voice Module
============

Auto-scaling voice channels for one managed category.

Exports:
- VoiceChannelManager: channel creation, deletion and ordering
- VoiceKind: channel kinds keyed by the last character of the name
- VoiceStateCache: voice channel occupancy
- VoiceListener / setup_voice: gateway wiring
"""

from .listener import VoiceListener, setup_voice
from .service import VoiceChannelManager, VoiceKind
from .state import VoiceStateCache

__all__ = [
    "VoiceChannelManager",
    "VoiceKind",
    "VoiceListener",
    "VoiceStateCache",
    "setup_voice",
]
