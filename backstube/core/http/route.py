"""
REST route descriptor.

A route pairs a method with a path template; its rate-limit bucket key is
the template plus the "major parameter" (channel, guild, webhook or
interaction id), because Discord scopes per-route limits to that resource.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

MAJOR_PARAMETERS = ("channel_id", "guild_id", "webhook_id", "interaction_id", "application_id")


class Route:
    __slots__ = ("method", "path", "params")

    def __init__(self, method: str, path: str, **params: Any) -> None:
        self.method = method.upper()
        self.path = path
        self.params = params

    @property
    def url_path(self) -> str:
        if not self.params:
            return self.path
        return self.path.format(
            **{key: quote(str(value), safe="") for key, value in self.params.items()}
        )

    @property
    def major_parameter(self) -> Optional[str]:
        for name in MAJOR_PARAMETERS:
            if name in self.params:
                return str(self.params[name])
        return None

    @property
    def bucket_key(self) -> str:
        return f"{self.method} {self.path}:{self.major_parameter or '-'}"

    def __repr__(self) -> str:
        return f"Route({self.method} {self.url_path})"
