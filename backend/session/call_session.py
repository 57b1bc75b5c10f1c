"""
Call session container.

- One CallSession per live call
- Owned and mutated by CallSessionManager only
- NOT a state machine: transitions happen in the manager
- Contains no orchestration logic
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from audio.frames import Channel
from session.events import SessionEvent, TranscriptEvent


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.STOPPED, SessionState.FAILED)


def new_session_id() -> str:
    return f"call_{uuid4().hex[:12]}"


@dataclass(frozen=True)
class FailureRecord:
    """One failure that affected the session (kept for diagnostics)."""
    kind: str
    message: str
    channel: Optional[Channel] = None
    fatal: bool = False
    ts: float = field(default_factory=time.time)


@dataclass
class CallSession:
    """Mutable runtime container for a single call."""

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    session_id: str
    mode: str
    lead_id: Optional[str] = None
    state: SessionState = SessionState.IDLE
    started_at: float = field(default_factory=time.time)
    stop_reason: Optional[str] = None

    # ------------------------------------------------------------------
    # Delivery channel (back-reference, not owned)
    # ------------------------------------------------------------------

    delivery: Any = None  # Type: DeliveryChannel in practice

    # ------------------------------------------------------------------
    # Owned resources
    # ------------------------------------------------------------------

    source: Any = None  # Type: AudioSource in practice
    adapters: dict[Channel, Any] = field(default_factory=dict)
    healthy_channels: set[Channel] = field(default_factory=set)
    failures: list[FailureRecord] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Conversation (role-labeled finals, oldest first)
    # ------------------------------------------------------------------

    transcript_lines: list[str] = field(default_factory=list)
    last_final: Optional[TranscriptEvent] = None

    # ------------------------------------------------------------------
    # Internal tasks / event queue
    # ------------------------------------------------------------------

    events: asyncio.Queue[SessionEvent] = field(default_factory=asyncio.Queue)
    pump_task: Optional[asyncio.Task[None]] = None
    consumer_task: Optional[asyncio.Task[None]] = None
    assistance_tasks: set[asyncio.Task[None]] = field(default_factory=set)
    stop_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Observability helpers (read-only)
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for this session."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "mode": self.mode,
        }
