"""
Gateway session records.

These records are owned by the session state machine task; the dispatcher
advances the sequence watermark inline from that same task. Nothing here is
shared across tasks without that ownership.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDENTIFYING = "identifying"
    READY = "ready"
    RECONNECTING = "reconnecting"
    RESUMING = "resuming"
    CLOSING = "closing"


@dataclass(slots=True)
class Session:
    """
    Resumable gateway session.

    Populated on READY; `sequence_watermark` is the highest sequence number
    observed and only ever moves forward.
    """

    session_id: Optional[str] = None
    sequence_watermark: Optional[int] = None
    resume_url: Optional[str] = None
    state: SessionState = SessionState.DISCONNECTED
    application_id: Optional[int] = None
    user_id: Optional[int] = None

    @property
    def resumable(self) -> bool:
        return self.session_id is not None

    def observe_sequence(self, seq: Optional[int]) -> bool:
        """Advance the watermark to `max(current, seq)`. Returns True if it moved."""
        if seq is None:
            return False
        if self.sequence_watermark is None or seq > self.sequence_watermark:
            self.sequence_watermark = seq
            return True
        return False

    def establish(
        self,
        session_id: str,
        resume_url: str,
        application_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> None:
        self.session_id = session_id
        self.resume_url = resume_url
        self.application_id = application_id
        self.user_id = user_id

    def clear(self) -> None:
        """Forget the session; the next connection identifies from scratch."""
        self.session_id = None
        self.sequence_watermark = None
        self.resume_url = None


@dataclass(slots=True)
class ConnectionAttempt:
    attempt_count: int = 0
    backoff_deadline: Optional[float] = None

    def record_failure(self) -> int:
        self.attempt_count += 1
        return self.attempt_count

    def reset(self) -> None:
        self.attempt_count = 0
        self.backoff_deadline = None


@dataclass(slots=True)
class HeartbeatRecord:
    interval: float = 0.0
    last_sent: Optional[float] = None
    ack_pending: bool = False
    last_ack: Optional[float] = None
    latency: Optional[float] = None
    beats_sent: int = 0
    acks_received: int = 0
