"""
Moderation Module
=================

Exports:
- SlowmodeCommand: `/slowmode` application command
"""

from .slowmode import SlowmodeCommand

__all__ = ["SlowmodeCommand"]
