"""
Gateway wire protocol (Discord gateway v10, JSON encoding).

Every frame is a JSON object `{"op": int, "d": any, "s": int?, "t": str?}`.
Only DISPATCH frames carry `s` (sequence) and `t` (event name).

This module is a pure codec: it knows opcodes and frame shapes, never
sockets or session state.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional

import discord

from backstube.core.exceptions import ProtocolError


class Opcode(IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


# Close codes after which reconnecting cannot succeed.
FATAL_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})

# Close codes after which the session cannot be resumed.
SESSION_RESET_CLOSE_CODES = frozenset({4007, 4009})

CLOSE_CODE_NAMES: Dict[int, str] = {
    4000: "unknown error",
    4001: "unknown opcode",
    4002: "decode error",
    4003: "not authenticated",
    4004: "authentication failed",
    4005: "already authenticated",
    4007: "invalid seq",
    4008: "rate limited",
    4009: "session timed out",
    4010: "invalid shard",
    4011: "sharding required",
    4012: "invalid API version",
    4013: "invalid intents",
    4014: "disallowed intents",
}

# Client-initiated close that keeps the session resumable on the server.
RECONNECT_CLOSE_CODE = 4000
NORMAL_CLOSE_CODE = 1000

GATEWAY_QUERY = "?v=10&encoding=json"


def default_intents() -> discord.Intents:
    """Capabilities declared in IDENTIFY."""
    intents = discord.Intents.none()
    intents.guilds = True
    intents.voice_states = True
    intents.guild_messages = True
    return intents


@dataclass(frozen=True, slots=True)
class GatewayFrame:
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    @property
    def is_dispatch(self) -> bool:
        return self.op == Opcode.DISPATCH

    def to_dict(self) -> Dict[str, Any]:
        return {"op": int(self.op), "d": self.d, "s": self.s, "t": self.t}


def decode_frame(raw: str | bytes) -> GatewayFrame:
    """
    Parse one text frame.

    Raises
    ------
    ProtocolError
        When the payload is not a JSON object, lacks an integer `op`, uses an
        unknown opcode, or is a DISPATCH without an event name.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(
            "Frame is not valid JSON",
            details={"error": str(exc), "frame_prefix": str(raw)[:120]},
        ) from exc

    if not isinstance(data, dict):
        raise ProtocolError(
            "Frame is not a JSON object", details={"type": type(data).__name__}
        )

    op = data.get("op")
    if not isinstance(op, int) or isinstance(op, bool):
        raise ProtocolError("Frame has no integer opcode", details={"op": op})

    try:
        opcode = Opcode(op)
    except ValueError as exc:
        raise ProtocolError("Unknown opcode", details={"op": op}) from exc

    seq = data.get("s")
    if seq is not None and not isinstance(seq, int):
        raise ProtocolError("Sequence is not an integer", details={"s": seq})

    event_name = data.get("t")
    if opcode is Opcode.DISPATCH and not isinstance(event_name, str):
        raise ProtocolError("Dispatch frame without event name", details={"t": event_name})

    return GatewayFrame(op=opcode, d=data.get("d"), s=seq, t=event_name)


def encode_frame(op: Opcode, d: Any) -> str:
    return json.dumps({"op": int(op), "d": d}, separators=(",", ":"))


# ============================================================================
# Outbound frame builders
# ============================================================================


def identify_frame(
    token: str,
    intents: discord.Intents,
    properties: Optional[Mapping[str, str]] = None,
) -> str:
    props = {
        "os": sys.platform,
        "browser": "backstube",
        "device": "backstube",
    }
    if properties:
        props.update(properties)
    return encode_frame(
        Opcode.IDENTIFY,
        {
            "token": token,
            "intents": intents.value,
            "properties": props,
        },
    )


def resume_frame(token: str, session_id: str, seq: Optional[int]) -> str:
    return encode_frame(
        Opcode.RESUME,
        {"token": token, "session_id": session_id, "seq": seq},
    )


def heartbeat_frame(seq: Optional[int]) -> str:
    return encode_frame(Opcode.HEARTBEAT, seq)


def gateway_endpoint(base_url: str) -> str:
    """Append the version/encoding query unless the URL already has one."""
    if "?" in base_url:
        return base_url
    return base_url.rstrip("/") + "/" + GATEWAY_QUERY


def describe_close_code(code: Optional[int]) -> str:
    if code is None:
        return "no close code"
    return CLOSE_CODE_NAMES.get(code, "unknown")
