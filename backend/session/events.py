"""
Typed events flowing from pipeline components to the call session manager.

Adapters and the audio pump never touch session state; they put one of
these on the session's event queue and the consumer task reacts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from audio.frames import Channel
from errors import PipelineError


@dataclass(frozen=True)
class TranscriptEvent:
    """
    One transcript update for one channel.

    event_id:
        Stable correlation ID "<channel>-<segment>". Partials and the final
        of the same segment share it; the final is emitted exactly once.

    stream_ts_s:
        Engine-reported start of the segment, in seconds since the first
        audio of the channel (monotonic across engine restarts).
    """
    event_id: str
    channel: Channel
    text: str
    is_final: bool
    confidence: float
    stream_ts_s: float


@dataclass(frozen=True)
class StreamFailure:
    """
    A transcription stream hit an engine error.

    fatal=False: the stream is reconnecting on its own.
    fatal=True: the stream is FAILED and its channel must be disabled.
    """
    channel: Channel
    error: PipelineError
    fatal: bool


@dataclass(frozen=True)
class StreamRestarted:
    """The engine session behind a channel was replaced without data loss."""
    channel: Channel
    reason: str


@dataclass(frozen=True)
class SourceFailed:
    """The audio source (or its frame layout) broke while the call was live."""
    error: PipelineError


@dataclass(frozen=True)
class EndOfEvents:
    """Put last on the queue during stop; the consumer exits after it."""


SessionEvent = Union[TranscriptEvent, StreamFailure, StreamRestarted, SourceFailed, EndOfEvents]
