"""Feature modules: voice channel scaling and moderation commands."""
