"""
CommandRegistry: handler storage and lookup for the dispatcher.

Purpose
-------
Hold every `RegisteredHandler` the bot knows about and answer "which
handlers match this event?" for the dispatcher.

Responsibilities
----------------
- Register event listeners by exact name or wildcard pattern
- Register command handlers by command name
- Freeze registration before the first gateway connection
- Return matching handlers in registration order

Thread Safety
-------------
Not thread-safe. Registration happens before `freeze()`, on the event loop,
and lookups never mutate, so no locking is needed.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

from backstube.core.event.router import EventRouter
from backstube.core.event.types import (
    GatewayEvent,
    HandlerCallback,
    RegisteredHandler,
    TriggerKind,
)
from backstube.core.exceptions import RegistryFrozenError
from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)


class CommandRegistry:
    """
    Registry of command handlers and event listeners.

    Examples
    --------
    >>> registry = CommandRegistry()
    >>> @registry.command("ping")
    ... async def ping(event):
    ...     ...
    >>> @registry.listener("VOICE_*")
    ... async def on_voice(event):
    ...     ...
    >>> registry.freeze()
    """

    def __init__(self) -> None:
        self._router = EventRouter()
        # (registration order, handler)
        self._exact: Dict[str, List[Tuple[int, RegisteredHandler]]] = {}
        self._wildcards: List[Tuple[int, RegisteredHandler]] = []
        self._commands: Dict[str, List[Tuple[int, RegisteredHandler]]] = {}
        self._counter = 0
        self._frozen = False

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        if not self._frozen:
            self._frozen = True
            logger.info(
                "Command registry frozen",
                extra={
                    "commands": self.command_names(),
                    "handler_count": len(self),
                },
            )

    def register(
        self,
        trigger: str,
        callback: HandlerCallback,
        kind: TriggerKind = TriggerKind.EVENT,
        identifier: Optional[str] = None,
    ) -> Optional[RegisteredHandler]:
        """
        Register `callback` for `trigger`.

        Returns the new handler, or None when a handler with the same
        identifier is already registered for this trigger.

        Raises
        ------
        RegistryFrozenError
            If called after `freeze()`.
        ValueError
            If `trigger` is empty or a command name contains a wildcard.
        """
        if self._frozen:
            raise RegistryFrozenError(trigger)
        if not trigger:
            raise ValueError("trigger must be a non-empty string")
        if kind is TriggerKind.COMMAND and self._router.is_pattern(trigger):
            raise ValueError(f"command name cannot be a pattern: {trigger!r}")

        handler = RegisteredHandler.from_callback(trigger, kind, callback, identifier)

        if kind is TriggerKind.COMMAND:
            bucket = self._commands.setdefault(trigger, [])
        elif self._router.is_pattern(trigger):
            bucket = self._wildcards
        else:
            bucket = self._exact.setdefault(trigger, [])

        if any(
            existing.identifier == handler.identifier and existing.trigger == trigger
            for _, existing in bucket
        ):
            logger.debug(
                "Duplicate handler registration ignored",
                extra={"handler_id": handler.identifier},
            )
            return None

        self._counter += 1
        bucket.append((self._counter, handler))
        return handler

    def command(
        self, name: str, *, identifier: Optional[str] = None
    ) -> Callable[[HandlerCallback], HandlerCallback]:
        def decorator(callback: HandlerCallback) -> HandlerCallback:
            self.register(name, callback, TriggerKind.COMMAND, identifier)
            return callback

        return decorator

    def listener(
        self, pattern: str = "*", *, identifier: Optional[str] = None
    ) -> Callable[[HandlerCallback], HandlerCallback]:
        def decorator(callback: HandlerCallback) -> HandlerCallback:
            self.register(pattern, callback, TriggerKind.EVENT, identifier)
            return callback

        return decorator

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def lookup(self, event: GatewayEvent) -> List[RegisteredHandler]:
        """All handlers matching `event`, in registration order."""
        matched: List[Tuple[int, RegisteredHandler]] = list(self._exact.get(event.name, ()))
        matched.extend(
            entry
            for entry in self._wildcards
            if self._router.matches(event.name, entry[1].trigger)
        )
        if event.command is not None:
            matched.extend(self._commands.get(event.command, ()))

        matched.sort(key=lambda entry: entry[0])
        return [handler for _, handler in matched]

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def command_names(self) -> List[str]:
        return sorted(self._commands)

    def handlers(self) -> List[RegisteredHandler]:
        entries = [entry for group in self._exact.values() for entry in group]
        entries.extend(self._wildcards)
        entries.extend(entry for group in self._commands.values() for entry in group)
        entries.sort(key=lambda entry: entry[0])
        return [handler for _, handler in entries]

    def __len__(self) -> int:
        return (
            sum(len(group) for group in self._exact.values())
            + len(self._wildcards)
            + sum(len(group) for group in self._commands.values())
        )
