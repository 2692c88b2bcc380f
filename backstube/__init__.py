"""
Backstube Bot.

Gateway runtime for a Discord community bot: a durable, resumable gateway
session, a rate-limited REST client, an event dispatcher with a bounded
handler pool, and the feature modules built on top of it.
"""

__version__ = "1.0.0"
