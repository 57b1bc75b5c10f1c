"""
Transcription engine contract.

This module defines the *interface only*: no buffering, restarts, timers or
session-manager decisions live here (see adapters.asr.stream).

An engine hands out sessions. One session is one streaming connection with
the external speech-to-text service and is never reused after close().

Key invariants:
- Results are yielded in the order the engine produced them.
- results() ends normally only after the engine has flushed everything it
  will ever send for this session (normally after finalize()).
- A duration or idle limit imposed by the engine surfaces as
  EngineLimitExceeded; every other transport failure surfaces as
  EngineConnectError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineResult:
    """
    One recognition result as reported by the engine.

    start_s is relative to the beginning of the engine session that
    produced it.
    """
    text: str
    is_final: bool
    confidence: float
    start_s: float


class EngineSession(ABC):
    """
    One live streaming session with the engine.

    Implementations are responsible for:
    - Accepting mono PCM16 audio via send_audio()
    - Yielding EngineResult objects from results()
    - Flushing pending hypotheses on finalize()

    Non-responsibilities:
    - No reconnects (a failed session is simply discarded)
    - No buffering across sessions
    """

    @abstractmethod
    async def send_audio(self, pcm_bytes: bytes) -> None:
        """
        Send one mono PCM16 chunk.

        Raises:
            EngineConnectError if the session can no longer accept audio.
        """
        raise NotImplementedError

    @abstractmethod
    def results(self) -> AsyncIterator[EngineResult]:
        """
        Async iterator of results for this session.

        Raises (from iteration):
            EngineLimitExceeded / EngineConnectError
        """
        raise NotImplementedError

    @abstractmethod
    async def finalize(self) -> None:
        """Ask the engine to flush pending audio and finish the stream."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Idempotent; never raises for a dead transport."""
        raise NotImplementedError


class TranscriptionEngine(ABC):
    """Factory for engine sessions (one per connection)."""

    @abstractmethod
    async def open_session(self, *, channels: int = 1) -> EngineSession:
        """
        Open a new streaming session for `channels` interleaved PCM16
        channels (1 for a mono call party).

        Raises:
            EngineConnectError
        """
        raise NotImplementedError
