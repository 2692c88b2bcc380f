"""
Core types for the event dispatcher.

Purpose
-------
Define the values that flow from the gateway to business logic:

- `GatewayEvent`: one decoded DISPATCH frame, plus the command name when the
  event is an application command or a prefixed text message.
- `RegisteredHandler`: a callback bound to a trigger, owned by the registry.
- `Invocation` / `HandlerResult`: the messages exchanged with the handler
  pool.

Design Decisions
----------------
- Frozen, slotted dataclasses: handlers and events are shared between the
  dispatcher and pool workers and must not be mutated after creation.
- `RegisteredHandler.from_callback` auto-generates a stable identifier from
  the callback's module and qualified name, so error reports name the code
  that failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from backstube.core.exceptions import HandlerError
from backstube.core.gateway.protocol import GatewayFrame

EventPayload = Mapping[str, Any]

# Interaction type for application (slash) commands.
APPLICATION_COMMAND_INTERACTION = 2


class TriggerKind(Enum):
    COMMAND = "command"
    EVENT = "event"


@dataclass(frozen=True, slots=True)
class GatewayEvent:
    """
    A dispatchable gateway event.

    Attributes
    ----------
    name:
        Event name (`t`), e.g. "VOICE_STATE_UPDATE".
    sequence:
        Sequence number (`s`); None only for synthetic events.
    payload:
        Event data (`d`).
    command:
        Command name for application-command interactions and prefixed
        messages, else None.
    args:
        Whitespace-split arguments following a prefixed text command.
    """

    name: str
    sequence: Optional[int]
    payload: EventPayload = field(default_factory=dict)
    command: Optional[str] = None
    args: Tuple[str, ...] = ()

    @classmethod
    def from_frame(cls, frame: GatewayFrame, command_prefix: Optional[str] = None) -> "GatewayEvent":
        payload = frame.d if isinstance(frame.d, dict) else {}
        command: Optional[str] = None
        args: Tuple[str, ...] = ()

        if frame.t == "INTERACTION_CREATE":
            if payload.get("type") == APPLICATION_COMMAND_INTERACTION:
                data = _mapping(payload.get("data"))
                name = data.get("name")
                if isinstance(name, str):
                    command = name
        elif frame.t == "MESSAGE_CREATE" and command_prefix:
            author = _mapping(payload.get("author"))
            content = payload.get("content")
            if (
                isinstance(content, str)
                and content.startswith(command_prefix)
                and not author.get("bot", False)
            ):
                parts = content[len(command_prefix):].split()
                if parts:
                    command = parts[0].lower()
                    args = tuple(parts[1:])

        return cls(
            name=frame.t or "",
            sequence=frame.s,
            payload=payload,
            command=command,
            args=args,
        )

    @property
    def guild_id(self) -> Optional[int]:
        return _snowflake(self.payload.get("guild_id"))

    @property
    def channel_id(self) -> Optional[int]:
        return _snowflake(self.payload.get("channel_id"))

    @property
    def user_id(self) -> Optional[int]:
        if "user_id" in self.payload:
            return _snowflake(self.payload.get("user_id"))
        member = _mapping(self.payload.get("member"))
        for candidate in (member.get("user"), self.payload.get("user"), self.payload.get("author")):
            if isinstance(candidate, dict) and candidate:
                return _snowflake(candidate.get("id"))
        return None


HandlerCallback = Union[
    Callable[[GatewayEvent], Awaitable[Any]],
    Callable[[GatewayEvent], Any],
]


@dataclass(frozen=True, slots=True)
class RegisteredHandler:
    """
    A callback bound to a trigger.

    For `TriggerKind.EVENT` the trigger is an event name or wildcard pattern
    ("VOICE_*", "*"); for `TriggerKind.COMMAND` it is a command name.
    """

    trigger: str
    kind: TriggerKind
    callback: HandlerCallback
    identifier: str

    @classmethod
    def from_callback(
        cls,
        trigger: str,
        kind: TriggerKind,
        callback: HandlerCallback,
        identifier: Optional[str] = None,
    ) -> "RegisteredHandler":
        if identifier is None:
            module = getattr(callback, "__module__", "unknown")
            qualname = getattr(
                callback, "__qualname__", getattr(callback, "__name__", "callback")
            )
            identifier = f"{module}.{qualname}@{kind.value}:{trigger}"
        return cls(trigger=trigger, kind=kind, callback=callback, identifier=identifier)


@dataclass(frozen=True, slots=True)
class Invocation:
    handler: RegisteredHandler
    event: GatewayEvent
    enqueued_at: float = 0.0


@dataclass(frozen=True, slots=True)
class HandlerResult:
    handler_id: str
    event_name: str
    sequence: Optional[int]
    value: Any = None
    error: Optional[HandlerError] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def _snowflake(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}
